"""Run commands and scripts on the target host over SSH, and mirror files to it.

Security note: this module shells out to ``ssh`` and ``rsync``. Structured
commands are sent as ``shlex.join`` of an argv list; multi-line procedures are
sent as :class:`RemoteScript` bodies on stdin to ``bash -s`` after an explicit
render step.
"""
from __future__ import annotations

import enum
import logging
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from .errors import ConnectivityError, RemoteCommandError, ScriptRenderError, ssh_failure_hint


LOG_PREFIX = "[REMOTE]"
DEFAULT_CONNECT_TIMEOUT = 10
PROBE_TIMEOUT_SECONDS = 15
PROBE_TOKEN = "SSH_OK"

# Version-control metadata and dependency caches never leave the local tree.
DEFAULT_EXCLUDES = (".git", "node_modules")

logger = logging.getLogger(__name__)

# ``{{name}}`` placeholders; docker's ``{{.Names}}`` and shell ``$VAR`` never match.
_PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([a-z_][a-z0-9_]*)\s*\}\}")
_SAFE_VALUE_PATTERN = re.compile(r"^[A-Za-z0-9._@:/+=-]+$")


@dataclass(frozen=True)
class RemoteTarget:
    user: str
    host: str
    key_path: Path
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}"

    @property
    def home_dir(self) -> str:
        return "/root" if self.user == "root" else f"/home/{self.user}"

    def app_root(self, identity: str) -> str:
        return f"{self.home_dir}/app/{identity}"

    def ssh_options(self) -> list[str]:
        return [
            "-i", str(self.key_path),
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"ConnectTimeout={int(self.connect_timeout)}",
        ]


@dataclass(frozen=True)
class RemoteResult:
    output: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class ScriptMode(enum.Enum):
    LITERAL = "literal"
    INTERPOLATED = "interpolated"


@dataclass(frozen=True)
class RemoteScript:
    """A multi-line procedure executed by ``bash -s`` on the remote host."""

    name: str
    body: str
    mode: ScriptMode = ScriptMode.LITERAL

    @property
    def placeholders(self) -> set[str]:
        return set(_PLACEHOLDER_PATTERN.findall(self.body))


def validate_value(key: str, value: object) -> str:
    """Return *value* as text if it is safe to splice into a script or config file."""
    text = str(value)
    if not _SAFE_VALUE_PATTERN.fullmatch(text):
        raise ScriptRenderError(f"Unsafe value for {key!r}: {text!r}")
    return text


def render_script(script: RemoteScript, params: Mapping[str, object] | None = None) -> str:
    """Substitute ``{{name}}`` placeholders, validating each value.

    LITERAL scripts are returned verbatim and accept no parameters.
    """
    if script.mode is ScriptMode.LITERAL:
        if params:
            raise ValueError(f"Literal script {script.name!r} does not take parameters")
        return script.body

    values = dict(params or {})
    unknown = sorted(set(values) - script.placeholders)
    if unknown:
        raise ScriptRenderError(f"Script {script.name!r} has no placeholder for: {', '.join(unknown)}")

    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        if key not in values:
            raise ScriptRenderError(f"Script {script.name!r} is missing a value for {{{{{key}}}}}")
        return validate_value(key, values[key])

    return _PLACEHOLDER_PATTERN.sub(_substitute, script.body)


def build_ssh_cmd(*, target: RemoteTarget, remote_command: str) -> list[str]:
    return ["ssh", *target.ssh_options(), target.destination, remote_command]


def build_ssh_connectivity_cmd(*, target: RemoteTarget) -> list[str]:
    return build_ssh_cmd(target=target, remote_command=f"echo {PROBE_TOKEN}")


def build_rsync_cmd(
    *,
    target: RemoteTarget,
    local_root: Path,
    remote_root: str,
    excludes: Sequence[str] = DEFAULT_EXCLUDES,
) -> list[str]:
    cmd = ["rsync", "-az", "--delete"]
    for pattern in excludes:
        cmd.extend(["--exclude", pattern])
    cmd.extend(["-e", shlex.join(["ssh", *target.ssh_options()])])
    # Trailing slashes copy the contents of local_root into remote_root.
    cmd.append(f"{str(local_root).rstrip('/')}/")
    cmd.append(f"{target.destination}:{remote_root.rstrip('/')}/")
    return cmd


def _run_streaming(
    cmd: list[str],
    *,
    input_text: str | None = None,
    log_level: int = logging.INFO,
) -> tuple[str, int]:
    """Run *cmd*, logging combined output line by line as it arrives."""
    try:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as exc:
        message = f"Could not start {cmd[0]}: {exc}"
        logger.error("%s %s", LOG_PREFIX, message)
        return message, 127

    lines: list[str] = []
    try:
        if input_text is not None:
            process.stdin.write(input_text)
            process.stdin.close()
        for line in process.stdout:
            lines.append(line)
            logger.log(log_level, "%s %s", LOG_PREFIX, line.rstrip("\n"))
    except BaseException:
        process.kill()
        raise
    finally:
        process.stdout.close()
        status = process.wait()
    return "".join(lines), status


def execute(
    target: RemoteTarget,
    script: RemoteScript,
    params: Mapping[str, object] | None = None,
) -> tuple[str, int]:
    """Render *script* and run it on *target*; returns (combined output, exit status)."""
    rendered = render_script(script, params)
    logger.debug("%s Running script %s on %s", LOG_PREFIX, script.name, target.destination)
    return _run_streaming(build_ssh_cmd(target=target, remote_command="bash -s"), input_text=rendered)


class RemoteExecutor:
    """Binds a :class:`RemoteTarget` for the components of one run."""

    def __init__(self, target: RemoteTarget):
        self.target = target

    def run(
        self,
        argv: Sequence[object],
        *,
        input_text: str | None = None,
        check: bool = True,
        action: str | None = None,
    ) -> RemoteResult:
        remote_command = shlex.join([str(arg) for arg in argv])
        logger.debug("%s $ %s", LOG_PREFIX, remote_command)
        output, status = _run_streaming(
            build_ssh_cmd(target=self.target, remote_command=remote_command),
            input_text=input_text,
        )
        result = RemoteResult(output=output, exit_status=status)
        if check and not result.ok:
            raise RemoteCommandError(
                action or f"Remote command failed: {remote_command}",
                output=output,
                exit_status=status,
            )
        return result

    def run_script(
        self,
        script: RemoteScript,
        params: Mapping[str, object] | None = None,
        *,
        check: bool = True,
        action: str | None = None,
    ) -> RemoteResult:
        output, status = execute(self.target, script, params)
        result = RemoteResult(output=output, exit_status=status)
        if check and not result.ok:
            raise RemoteCommandError(
                action or f"Remote script {script.name} failed",
                output=output,
                exit_status=status,
            )
        return result

    def probe(self, *, timeout: int = PROBE_TIMEOUT_SECONDS) -> None:
        """Fail with :class:`ConnectivityError` unless a no-op command round-trips."""
        cmd = build_ssh_connectivity_cmd(target=self.target)
        try:
            result = subprocess.run(
                cmd, check=False, capture_output=True, encoding="utf-8", errors="replace", timeout=timeout
            )
        except subprocess.TimeoutExpired:
            raise ConnectivityError(
                f"SSH connectivity check timed out after {timeout}s. "
                "Verify the server is online and reachable on port 22."
            )
        except OSError as exc:
            raise ConnectivityError(f"Could not run ssh: {exc}")

        detail = (str(result.stderr or "").strip() or str(result.stdout or "").strip())
        if result.returncode != 0 or PROBE_TOKEN not in str(result.stdout or ""):
            message = f"Failed to connect to {self.target.destination} (exit code {result.returncode})."
            if detail:
                message = f"{message} {detail}"
            hint = ssh_failure_hint(detail)
            if hint:
                message = f"{message} {hint}"
            raise ConnectivityError(message)
        logger.info("%s SSH connection to %s established", LOG_PREFIX, self.target.destination)


def sync_tree(
    executor: RemoteExecutor,
    local_root: Path,
    remote_root: str,
    *,
    excludes: Sequence[str] = DEFAULT_EXCLUDES,
) -> None:
    """Mirror *local_root* into *remote_root* with rsync (delta transfer)."""
    executor.run(["mkdir", "-p", remote_root], action=f"Failed to create remote directory {remote_root}")

    cmd = build_rsync_cmd(target=executor.target, local_root=local_root, remote_root=remote_root, excludes=excludes)
    output, status = _run_streaming(cmd, log_level=logging.DEBUG)
    if status != 0:
        raise RemoteCommandError(
            f"Failed to sync {local_root} to {executor.target.destination}:{remote_root}",
            output=output,
            exit_status=status,
        )
    logger.info("%s Files transferred to %s", LOG_PREFIX, remote_root)


def remove_tree(executor: RemoteExecutor, remote_root: str) -> None:
    """Delete a project tree created by :func:`sync_tree`; a missing tree is fine."""
    app_dir = f"{executor.target.home_dir}/app/"
    if not remote_root.startswith(app_dir) or remote_root.rstrip("/") == app_dir.rstrip("/"):
        raise ValueError(f"Refusing to remove {remote_root!r} outside {app_dir}")
    executor.run(["rm", "-rf", remote_root], action=f"Failed to remove remote directory {remote_root}")
    logger.info("%s Removed %s", LOG_PREFIX, remote_root)
