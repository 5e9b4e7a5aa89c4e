from __future__ import annotations

import io
import subprocess
from pathlib import Path

import pytest

from hostdeploy import remote
from hostdeploy.errors import ConnectivityError, RemoteCommandError, ScriptRenderError
from hostdeploy.remote import (
    RemoteExecutor,
    RemoteScript,
    RemoteTarget,
    ScriptMode,
    build_rsync_cmd,
    build_ssh_cmd,
    build_ssh_connectivity_cmd,
    render_script,
)


TARGET = RemoteTarget(user="deploy", host="203.0.113.10", key_path=Path("/keys/id_rsa"))


class _KeptStdin(io.StringIO):
    def close(self):
        pass


class FakePopen:
    instances: list["FakePopen"] = []

    def __init__(self, cmd, **kwargs):
        self.cmd = cmd
        self.stdin = _KeptStdin()
        self.stdout = io.StringIO(self.output)
        FakePopen.instances.append(self)

    output = ""
    returncode = 0

    def wait(self):
        return self.returncode

    def kill(self):
        pass


@pytest.fixture
def fake_popen(monkeypatch):
    FakePopen.instances = []
    FakePopen.output = ""
    FakePopen.returncode = 0

    monkeypatch.setattr(remote.subprocess, "Popen", FakePopen)
    return FakePopen


def test_ssh_cmd_uses_key_batch_mode_and_connect_timeout():
    cmd = build_ssh_cmd(target=TARGET, remote_command="echo hi")
    assert cmd[0] == "ssh"
    assert cmd[-2:] == ["deploy@203.0.113.10", "echo hi"]
    assert ["-i", "/keys/id_rsa"] == cmd[1:3]
    assert "BatchMode=yes" in cmd
    assert "ConnectTimeout=10" in cmd


def test_connectivity_cmd_echoes_token():
    assert build_ssh_connectivity_cmd(target=TARGET)[-1] == "echo SSH_OK"


def test_rsync_cmd_excludes_vcs_and_dependency_dirs():
    cmd = build_rsync_cmd(target=TARGET, local_root=Path("/work/shop-api"), remote_root="/home/deploy/app/shop-api")
    assert cmd[:3] == ["rsync", "-az", "--delete"]
    assert cmd[cmd.index("--exclude") + 1] == ".git"
    assert "node_modules" in cmd
    assert cmd[-2:] == ["/work/shop-api/", "deploy@203.0.113.10:/home/deploy/app/shop-api/"]
    ssh_transport = cmd[cmd.index("-e") + 1]
    assert ssh_transport.startswith("ssh -i /keys/id_rsa")


def test_app_root_is_per_login():
    assert TARGET.app_root("shop-api") == "/home/deploy/app/shop-api"
    root = RemoteTarget(user="root", host="h", key_path=Path("k"))
    assert root.app_root("shop-api") == "/root/app/shop-api"


def test_literal_script_is_sent_verbatim():
    script = RemoteScript(name="s", body='echo "$USER" {{.Names}} {{identity}}\n')
    assert render_script(script) == script.body
    with pytest.raises(ValueError):
        render_script(script, {"identity": "x"})


def test_interpolated_script_substitutes_only_named_placeholders():
    script = RemoteScript(
        name="s",
        mode=ScriptMode.INTERPOLATED,
        body="docker ps --format '{{.Names}}' --filter name={{identity}}; echo $HOME\n",
    )
    out = render_script(script, {"identity": "shop-api"})
    assert out == "docker ps --format '{{.Names}}' --filter name=shop-api; echo $HOME\n"


def test_interpolated_script_rejects_unsafe_missing_and_unknown_values():
    script = RemoteScript(name="s", mode=ScriptMode.INTERPOLATED, body="echo {{identity}}\n")
    with pytest.raises(ScriptRenderError, match="Unsafe value"):
        render_script(script, {"identity": "x; rm -rf /"})
    with pytest.raises(ScriptRenderError, match="missing a value"):
        render_script(script, {})
    with pytest.raises(ScriptRenderError, match="no placeholder"):
        render_script(script, {"identity": "x", "domain": "example.com"})


def test_execute_streams_script_over_bash_stdin(fake_popen, caplog):
    fake_popen.output = "line one\nline two\n"
    script = RemoteScript(name="hello", mode=ScriptMode.INTERPOLATED, body="echo {{word}}\n")

    with caplog.at_level("INFO", logger="hostdeploy"):
        output, status = remote.execute(TARGET, script, {"word": "hi"})

    assert (output, status) == ("line one\nline two\n", 0)
    proc = fake_popen.instances[0]
    assert proc.cmd[-1] == "bash -s"
    assert proc.stdin.getvalue() == "echo hi\n"
    assert "line two" in caplog.text


def test_executor_run_joins_argv_and_raises_on_failure(fake_popen):
    fake_popen.output = "mkdir: permission denied\n"
    fake_popen.returncode = 1
    executor = RemoteExecutor(TARGET)

    with pytest.raises(RemoteCommandError) as excinfo:
        executor.run(["mkdir", "-p", "/srv/my app"], action="Failed to create dir")

    assert fake_popen.instances[0].cmd[-1] == "mkdir -p '/srv/my app'"
    assert excinfo.value.exit_status == 1
    assert "permission denied" in excinfo.value.output_tail()

    result = executor.run(["false"], check=False)
    assert result.ok is False


def test_probe_raises_connectivity_error_with_hint(monkeypatch):
    def fake_run(cmd, **kwargs):
        assert kwargs["timeout"] == 15
        return subprocess.CompletedProcess(cmd, 255, stdout="", stderr="ssh: connect to host: Connection refused")

    monkeypatch.setattr(remote.subprocess, "run", fake_run)
    with pytest.raises(ConnectivityError) as excinfo:
        RemoteExecutor(TARGET).probe()
    assert "SSH connection refused" in str(excinfo.value)


def test_probe_times_out(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr(remote.subprocess, "run", fake_run)
    with pytest.raises(ConnectivityError, match="timed out"):
        RemoteExecutor(TARGET).probe()


def test_probe_succeeds(monkeypatch):
    monkeypatch.setattr(
        remote.subprocess,
        "run",
        lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 0, stdout="SSH_OK\n", stderr=""),
    )
    RemoteExecutor(TARGET).probe()


def test_sync_tree_creates_remote_root_then_rsyncs(fake_executor, monkeypatch):
    seen: list[list[str]] = []

    def fake_stream(cmd, **kwargs):
        seen.append(cmd)
        return "", 0

    monkeypatch.setattr(remote, "_run_streaming", fake_stream)
    remote.sync_tree(fake_executor, Path("/work/shop-api"), "/home/deploy/app/shop-api")

    assert fake_executor.commands == ["mkdir -p /home/deploy/app/shop-api"]
    assert seen[0][0] == "rsync"


def test_sync_tree_fails_on_rsync_error(fake_executor, monkeypatch):
    monkeypatch.setattr(remote, "_run_streaming", lambda cmd, **kwargs: ("rsync error: some files vanished\n", 23))
    with pytest.raises(RemoteCommandError) as excinfo:
        remote.sync_tree(fake_executor, Path("/work/shop-api"), "/home/deploy/app/shop-api")
    assert excinfo.value.exit_status == 23


def test_sync_tree_fails_when_remote_root_cannot_be_created(fake_executor, monkeypatch):
    fake_executor.respond("mkdir -p", status=1, output="Permission denied")
    monkeypatch.setattr(remote, "_run_streaming", lambda cmd, **kwargs: pytest.fail("rsync must not run"))
    with pytest.raises(RemoteCommandError, match="Failed to create remote directory"):
        remote.sync_tree(fake_executor, Path("/work/shop-api"), "/home/deploy/app/shop-api")


def test_remove_tree_refuses_paths_outside_app_dir(fake_executor):
    remote.remove_tree(fake_executor, "/home/deploy/app/shop-api")
    assert fake_executor.commands == ["rm -rf /home/deploy/app/shop-api"]
    with pytest.raises(ValueError):
        remote.remove_tree(fake_executor, "/home/deploy")
    with pytest.raises(ValueError):
        remote.remove_tree(fake_executor, "/home/deploy/app/")


def test_undecodable_output_bytes_are_replaced():
    output, status = remote._run_streaming(["printf", "ok\\n\\377\\376 bad\\n"])
    assert status == 0
    assert output == "ok\n\ufffd\ufffd bad\n"


def test_rendered_values_may_not_end_in_newline():
    with pytest.raises(ScriptRenderError):
        remote.validate_value("identity", "shop\n")


def test_streaming_reaps_child_when_reading_fails(fake_popen, monkeypatch):
    events: list[str] = []

    class BrokenStdout:
        def __iter__(self):
            raise KeyboardInterrupt

        def close(self):
            events.append("close")

    def fake_init(self, cmd, **kwargs):
        self.cmd = cmd
        self.stdin = None
        self.stdout = BrokenStdout()

    monkeypatch.setattr(fake_popen, "__init__", fake_init)
    monkeypatch.setattr(fake_popen, "kill", lambda self: events.append("kill"))
    monkeypatch.setattr(fake_popen, "wait", lambda self: events.append("wait") or -9)

    with pytest.raises(KeyboardInterrupt):
        remote._run_streaming(["ssh", "host", "bash -s"])
    assert events == ["kill", "close", "wait"]
