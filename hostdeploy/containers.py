"""Build and (re)start the application containers on the remote host.

Every deploy tears down containers carrying the deployment identity before
creating new ones, so repeated runs converge on a single deployment.
"""
from __future__ import annotations

import logging
from textwrap import dedent

from .remote import RemoteExecutor, RemoteResult, RemoteScript, ScriptMode
from .source import BuildMethod


LOG_PREFIX = "[CONTAINERS]"
HOST_PORT = 8080
CONTAINER_PORT = 80
SETTLE_SECONDS = 5

logger = logging.getLogger(__name__)


_STOP_EXISTING = dedent(
    """\
    echo "Stopping existing containers..."
    docker ps -aq --filter "name=^{{identity}}$" | xargs -r docker rm -f
    docker ps -aq --filter "label=com.docker.compose.project={{identity}}" | xargs -r docker rm -f
    """
)

_EVIDENCE = dedent(
    """\
    sleep {{settle_seconds}}
    docker ps --filter "name={{identity}}"
    """
)

COMPOSE_DEPLOY_SCRIPT = RemoteScript(
    name="compose-deploy",
    mode=ScriptMode.INTERPOLATED,
    body=(
        "set -e\n"
        "cd {{remote_root}}\n"
        + _STOP_EXISTING
        + dedent(
            """\
            docker compose -p {{identity}} down --remove-orphans
            docker compose -p {{identity}} up -d --build
            """
        )
        + _EVIDENCE
    ),
)

SINGLE_IMAGE_DEPLOY_SCRIPT = RemoteScript(
    name="single-image-deploy",
    mode=ScriptMode.INTERPOLATED,
    body=(
        "set -e\n"
        "cd {{remote_root}}\n"
        + _STOP_EXISTING
        + dedent(
            """\
            docker build -t {{identity}}:latest .
            docker run -d --name {{identity}} --restart unless-stopped \\
                -p {{host_port}}:{{container_port}} {{identity}}:latest
            """
        )
        + _EVIDENCE
    ),
)

REMOVE_SCRIPT = RemoteScript(
    name="containers-remove",
    mode=ScriptMode.INTERPOLATED,
    body=(
        _STOP_EXISTING
        + dedent(
            """\
            docker compose -p {{identity}} down --remove-orphans >/dev/null 2>&1 || true
            echo "Removing images..."
            docker images -q --filter "reference={{identity}}" --filter "reference={{identity}}-*" \\
                | sort -u | xargs -r docker rmi -f
            echo "Containers and images removed"
            """
        )
    ),
)

DEPLOY_SCRIPTS: dict[BuildMethod, RemoteScript] = {
    BuildMethod.SINGLE_IMAGE: SINGLE_IMAGE_DEPLOY_SCRIPT,
    BuildMethod.COMPOSE_MANIFEST: COMPOSE_DEPLOY_SCRIPT,
}


def deploy(executor: RemoteExecutor, identity: str, remote_root: str, build_method: BuildMethod) -> RemoteResult:
    """Replace any deployment named *identity* with a fresh build from *remote_root*."""
    try:
        script = DEPLOY_SCRIPTS[build_method]
    except KeyError:
        raise ValueError(f"Unsupported build method: {build_method!r}")

    params: dict[str, object] = {
        "identity": identity,
        "remote_root": remote_root,
        "settle_seconds": SETTLE_SECONDS,
    }
    if build_method is BuildMethod.SINGLE_IMAGE:
        params["host_port"] = HOST_PORT
        params["container_port"] = CONTAINER_PORT

    logger.info("%s Building and starting containers (%s)...", LOG_PREFIX, build_method.value)
    result = executor.run_script(script, params, action=f"Failed to build and start {identity}")

    listed = [line for line in result.output.splitlines() if identity in line and "CONTAINER ID" not in line]
    if listed:
        logger.info("%s %d container(s) running for %s", LOG_PREFIX, len(listed), identity)
    else:
        logger.warning("%s No running container matched %s yet; validation will re-check", LOG_PREFIX, identity)
    return result


def remove(executor: RemoteExecutor, identity: str) -> None:
    """Stop and remove containers and images named after *identity*; nothing matching is fine."""
    logger.info("%s Stopping and removing containers for %s...", LOG_PREFIX, identity)
    executor.run_script(REMOVE_SCRIPT, {"identity": identity}, action=f"Failed to remove containers for {identity}")
