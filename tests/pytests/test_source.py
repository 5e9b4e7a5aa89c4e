from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from hostdeploy import source
from hostdeploy.errors import InputValidationError, SourceError
from hostdeploy.source import BuildMethod, build_auth_url, compose_services, detect_build_method


class GitRecorder:
    def __init__(self, returncode: int = 0, stderr: str = ""):
        self.calls: list[list[str]] = []
        self.returncode = returncode
        self.stderr = stderr

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        if cmd[:2] == ["git", "clone"]:
            Path(cmd[-1], ".git").mkdir(parents=True)
        return subprocess.CompletedProcess(cmd, self.returncode, stdout="", stderr=self.stderr)


def test_build_auth_url_inserts_token():
    assert build_auth_url("https://github.com/acme/app.git", "tok") == "https://tok@github.com/acme/app.git"
    assert build_auth_url("https://old@github.com/acme/app.git", "tok") == "https://tok@github.com/acme/app.git"


def test_dockerfile_takes_precedence_over_compose(tmp_path: Path):
    (tmp_path / "docker-compose.yml").write_text("services: {web: {}}\n", encoding="utf-8")
    assert detect_build_method(tmp_path) is BuildMethod.COMPOSE_MANIFEST
    (tmp_path / "Dockerfile").write_text("FROM nginx\n", encoding="utf-8")
    assert detect_build_method(tmp_path) is BuildMethod.SINGLE_IMAGE


def test_missing_build_descriptor_is_rejected(tmp_path: Path):
    with pytest.raises(InputValidationError, match="No Dockerfile or docker-compose.yml found"):
        detect_build_method(tmp_path)


def test_compose_services_lists_names(tmp_path: Path):
    (tmp_path / "compose.yaml").write_text(
        "services:\n  web:\n    build: .\n  db:\n    image: postgres:16\n", encoding="utf-8"
    )
    assert compose_services(tmp_path) == ["web", "db"]


def test_compose_services_rejects_manifest_without_services(tmp_path: Path):
    (tmp_path / "docker-compose.yml").write_text("version: '3'\n", encoding="utf-8")
    with pytest.raises(InputValidationError, match="defines no services"):
        compose_services(tmp_path)
    (tmp_path / "docker-compose.yml").write_text("services: [unclosed\n", encoding="utf-8")
    with pytest.raises(InputValidationError, match="not valid YAML"):
        compose_services(tmp_path)


def test_clone_uses_branch_and_resets_origin(tmp_path: Path, make_params, monkeypatch):
    git = GitRecorder()
    monkeypatch.setattr(source.subprocess, "run", git)

    checkout = source.clone_or_update(make_params(branch="release"), tmp_path)

    assert checkout == tmp_path / "shop-api"
    clone, reset = git.calls
    assert clone[:4] == ["git", "clone", "--branch", "release"]
    assert clone[4] == "https://ghp_secret@github.com/acme/shop-api.git"
    assert reset[-4:] == ["remote", "set-url", "origin", "https://github.com/acme/shop-api.git"]


def test_existing_checkout_is_pulled(tmp_path: Path, make_params, monkeypatch):
    (tmp_path / "shop-api" / ".git").mkdir(parents=True)
    git = GitRecorder()
    monkeypatch.setattr(source.subprocess, "run", git)

    source.clone_or_update(make_params(), tmp_path)

    assert len(git.calls) == 1
    assert git.calls[0][:4] == ["git", "-C", str(tmp_path / "shop-api"), "pull"]
    assert git.calls[0][-1] == "main"


def test_directory_that_is_not_a_checkout_is_rejected(tmp_path: Path, make_params, monkeypatch):
    (tmp_path / "shop-api").mkdir()
    monkeypatch.setattr(source.subprocess, "run", lambda *a, **k: pytest.fail("git must not run"))
    with pytest.raises(SourceError, match="not a git checkout"):
        source.clone_or_update(make_params(), tmp_path)


def test_clone_failure_masks_token(tmp_path: Path, make_params, monkeypatch, caplog):
    git = GitRecorder(
        returncode=128,
        stderr="fatal: unable to access 'https://ghp_secret@github.com/acme/shop-api.git/': 403\n",
    )
    monkeypatch.setattr(source.subprocess, "run", git)

    with caplog.at_level("DEBUG", logger="hostdeploy"):
        with pytest.raises(SourceError) as excinfo:
            source.clone_or_update(make_params(), tmp_path)

    assert "exit code 128" in str(excinfo.value)
    assert "ghp_secret" not in str(excinfo.value)
    assert "ghp_secret" not in caplog.text
