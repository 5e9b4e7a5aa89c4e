"""Local checkout of the application source and build-method detection."""
from __future__ import annotations

import enum
import logging
import subprocess
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

import yaml

from .errors import InputValidationError, SourceError
from .params import DeploymentParameters


LOG_PREFIX = "[SOURCE]"
DOCKERFILE_NAME = "Dockerfile"
COMPOSE_FILE_NAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")

logger = logging.getLogger(__name__)


class BuildMethod(enum.Enum):
    SINGLE_IMAGE = "dockerfile"
    COMPOSE_MANIFEST = "compose"


def build_auth_url(repo_url: str, token: str) -> str:
    parts = urlsplit(repo_url)
    host = parts.netloc.rsplit("@", 1)[-1]
    return urlunsplit((parts.scheme, f"{token}@{host}", parts.path, parts.query, parts.fragment))


def _mask(text: str, secret: str) -> str:
    return text.replace(secret, "***") if secret else text


def _git(cmd: list[str], *, token: str, action: str) -> None:
    printable = _mask(" ".join(cmd), token)
    logger.debug("%s $ %s", LOG_PREFIX, printable)
    try:
        result = subprocess.run(cmd, check=False, capture_output=True, encoding="utf-8", errors="replace")
    except OSError as exc:
        raise SourceError(f"{action}: could not run git ({exc})")
    output = _mask(f"{result.stdout or ''}{result.stderr or ''}", token)
    for line in output.splitlines():
        logger.debug("%s %s", LOG_PREFIX, line)
    if result.returncode != 0:
        detail = output.strip().splitlines()[-1] if output.strip() else ""
        message = f"{action} (exit code {result.returncode})."
        if detail:
            message = f"{message} {detail}"
        raise SourceError(message)


def clone_or_update(params: DeploymentParameters, workdir: Path) -> Path:
    """Clone the repository into ``<workdir>/<identity>``, or pull if it exists."""
    checkout = Path(workdir) / params.identity
    auth_url = build_auth_url(params.repo_url, params.token)

    if (checkout / ".git").is_dir():
        logger.info("%s Repository already exists. Pulling latest changes...", LOG_PREFIX)
        _git(
            ["git", "-C", str(checkout), "pull", auth_url, params.branch],
            token=params.token,
            action=f"Failed to pull {params.branch} into {checkout}",
        )
    else:
        if checkout.exists():
            raise SourceError(f"{checkout} exists but is not a git checkout; move it aside and retry")
        logger.info("%s Cloning repository...", LOG_PREFIX)
        _git(
            ["git", "clone", "--branch", params.branch, auth_url, str(checkout)],
            token=params.token,
            action=f"Failed to clone {params.repo_url} ({params.branch})",
        )
        # Keep the token out of .git/config.
        _git(
            ["git", "-C", str(checkout), "remote", "set-url", "origin", params.repo_url],
            token=params.token,
            action="Failed to reset origin URL",
        )

    logger.info("%s Repository cloned/updated successfully", LOG_PREFIX)
    return checkout


def find_compose_file(root: Path) -> Path | None:
    for name in COMPOSE_FILE_NAMES:
        candidate = Path(root) / name
        if candidate.is_file():
            return candidate
    return None


def detect_build_method(root: Path) -> BuildMethod:
    if (Path(root) / DOCKERFILE_NAME).is_file():
        logger.info("%s Found Dockerfile", LOG_PREFIX)
        return BuildMethod.SINGLE_IMAGE
    compose_file = find_compose_file(root)
    if compose_file is not None:
        logger.info("%s Found %s", LOG_PREFIX, compose_file.name)
        return BuildMethod.COMPOSE_MANIFEST
    raise InputValidationError(f"No Dockerfile or docker-compose.yml found in {root}")


def compose_services(root: Path) -> list[str]:
    compose_file = find_compose_file(root)
    if compose_file is None:
        raise InputValidationError(f"No compose manifest found in {root}")
    try:
        payload = yaml.safe_load(compose_file.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise InputValidationError(f"{compose_file.name} is not valid YAML: {exc}")

    if not isinstance(payload, dict):
        raise InputValidationError(f"{compose_file.name} is not a valid mapping")
    services = payload.get("services")
    if not isinstance(services, dict) or not services:
        raise InputValidationError(f"{compose_file.name} defines no services")
    return [str(name) for name in services]
