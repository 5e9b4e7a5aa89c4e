"""Remote host provisioning and post-deploy validation probes."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from textwrap import dedent
from typing import Callable, Optional

import requests
import urllib3

from .params import TlsStrategy
from .remote import RemoteExecutor, RemoteScript


LOG_PREFIX = "[HOST]"
EXTERNAL_PROBE_TIMEOUT = 10

logger = logging.getLogger(__name__)


PREPARE_HOST_SCRIPT = RemoteScript(
    name="prepare-host",
    body=dedent(
        """\
        set -e
        echo "Updating system packages..."
        sudo apt-get update -qq

        echo "Installing Docker..."
        if ! command -v docker >/dev/null 2>&1; then
            curl -fsSL https://get.docker.com | sh
            sudo usermod -aG docker "$USER"
        else
            echo "Docker already installed"
        fi

        echo "Installing Docker Compose..."
        if ! docker compose version >/dev/null 2>&1; then
            sudo apt-get install -y docker-compose-plugin
        else
            echo "Docker Compose already installed"
        fi

        echo "Installing Nginx..."
        if ! command -v nginx >/dev/null 2>&1; then
            sudo apt-get install -y nginx
        else
            echo "Nginx already installed"
        fi

        echo "Starting services..."
        sudo systemctl enable --now docker
        sudo systemctl enable --now nginx

        echo "Versions:"
        docker --version
        docker compose version
        nginx -v 2>&1
        """
    ),
)


def prepare_host(executor: RemoteExecutor) -> None:
    """Install docker, the compose plugin and nginx where missing; start both services."""
    executor.run_script(PREPARE_HOST_SCRIPT, action="Failed to prepare the remote environment")
    logger.info("%s Remote environment prepared", LOG_PREFIX)


@dataclass(frozen=True)
class ProbeResult:
    name: str
    ok: bool
    detail: str = ""


def access_url(strategy: TlsStrategy, host: str, domain: Optional[str] = None) -> str:
    if strategy is TlsStrategy.MANAGED:
        return f"https://{domain}"
    if strategy is TlsStrategy.SELF_SIGNED:
        return f"https://{host}"
    return f"http://{host}"


def _curl_probe(executor: RemoteExecutor, name: str, url: str, *, insecure: bool = False) -> ProbeResult:
    flags = "-kfsS" if insecure else "-fsS"
    result = executor.run(["curl", flags, "-o", "/dev/null", "--max-time", "10", url], check=False)
    return ProbeResult(name=name, ok=result.ok, detail=result.output.strip())


def external_probe(url: str, *, verify: bool = True, http_get: Callable[..., requests.Response] = requests.get) -> ProbeResult:
    """Request *url* from the operator's machine, as a visitor would."""
    if not verify:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    try:
        response = http_get(url, timeout=EXTERNAL_PROBE_TIMEOUT, verify=verify)
    except requests.RequestException as exc:
        return ProbeResult(name="public endpoint", ok=False, detail=str(exc))
    ok = 200 <= int(response.status_code) < 400
    return ProbeResult(name="public endpoint", ok=ok, detail=f"HTTP {response.status_code}")


def validate_deployment(
    executor: RemoteExecutor,
    *,
    identity: str,
    upstream_port: int,
    strategy: TlsStrategy,
    public_url: str,
    http_get: Callable[..., requests.Response] = requests.get,
) -> list[ProbeResult]:
    """Check the runtime and probe the app, proxy and public URL.

    Only a stopped docker service or an unusable docker CLI is fatal; endpoint
    probes that fail are logged as warnings.
    """
    logger.info("%s Checking Docker service...", LOG_PREFIX)
    executor.run(["sudo", "systemctl", "is-active", "docker"], action="Docker service is not active")

    logger.info("%s Checking container status...", LOG_PREFIX)
    listing = executor.run(
        ["docker", "ps", "--filter", f"name={identity}", "--format", "{{.Names}}\t{{.Status}}"],
        action="Failed to list containers",
    )
    containers = [line for line in listing.output.splitlines() if line.strip()]
    probes = [ProbeResult(name="containers", ok=bool(containers), detail="; ".join(containers))]
    if not containers:
        logger.warning("%s No running container matches %s", LOG_PREFIX, identity)

    logger.info("%s Testing application endpoint...", LOG_PREFIX)
    app = _curl_probe(executor, "application", f"http://localhost:{upstream_port}")
    probes.append(app)
    if app.ok:
        logger.info("%s Application is responding on port %s", LOG_PREFIX, upstream_port)
    else:
        logger.warning(
            "%s Application not responding on port %s (might be normal for some apps)", LOG_PREFIX, upstream_port
        )

    logger.info("%s Testing Nginx proxy...", LOG_PREFIX)
    proxy = _curl_probe(executor, "proxy", "http://localhost")
    probes.append(proxy)
    if proxy.ok:
        logger.info("%s Nginx proxy is working", LOG_PREFIX)
    else:
        logger.warning("%s Nginx proxy test failed", LOG_PREFIX)

    if strategy is not TlsStrategy.NONE:
        logger.info("%s Testing HTTPS endpoint...", LOG_PREFIX)
        https = _curl_probe(executor, "https", "https://localhost", insecure=True)
        probes.append(https)
        if https.ok:
            logger.info("%s HTTPS is working", LOG_PREFIX)
        else:
            logger.warning("%s HTTPS test failed", LOG_PREFIX)

    logger.info("%s Testing %s from this machine...", LOG_PREFIX, public_url)
    public = external_probe(public_url, verify=strategy is not TlsStrategy.SELF_SIGNED, http_get=http_get)
    probes.append(public)
    if public.ok:
        logger.info("%s %s is reachable (%s)", LOG_PREFIX, public_url, public.detail)
    else:
        logger.warning("%s %s is not reachable from here: %s", LOG_PREFIX, public_url, public.detail)

    return probes
