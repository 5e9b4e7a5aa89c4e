"""Install the deployment's nginx site for one of the three TLS strategies.

A site is written to ``sites-available/<identity>``, linked into
``sites-enabled`` and checked with ``nginx -t`` before nginx is asked to
reload. A failed check restores the previous site file (or removes the new
one on first install) and nginx keeps serving its running configuration.
"""
from __future__ import annotations

import enum
import logging
from typing import Callable, Optional

from .certificates import CertificatePaths, ManagedCertificate, SelfSignedCertificate
from .errors import ProxyConfigError
from .params import TlsStrategy
from .remote import RemoteExecutor, validate_value


LOG_PREFIX = "[NGINX]"
SITES_AVAILABLE = "/etc/nginx/sites-available"
SITES_ENABLED = "/etc/nginx/sites-enabled"
DEFAULT_SITE = f"{SITES_ENABLED}/default"
BACKUP_SUFFIX = ".previous"
CATCH_ALL_SERVER_NAME = "_"

logger = logging.getLogger(__name__)


class ProxyState(enum.Enum):
    UNCONFIGURED = "unconfigured"
    HTTP_ONLY = "http-only"
    SELF_SIGNED_TLS = "self-signed-tls"
    MANAGED_TLS = "managed-tls"


# Templates.  Placeholders: {port}; {server_name}; {cert_path}/{key_path}.
PROXY_LOCATION_TEMPLATE = """\
    location / {{
        proxy_pass http://localhost:{port};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }}
"""

HTTP_SITE_TEMPLATE = """\
server {{
    listen 80;
    server_name {server_name};

{location}}}
"""

SELF_SIGNED_SITE_TEMPLATE = """\
# Redirect HTTP to HTTPS
server {{
    listen 80;
    server_name _;
    return 301 https://$host$request_uri;
}}

# HTTPS Server
server {{
    listen 443 ssl;
    server_name _;

    ssl_certificate {cert_path};
    ssl_certificate_key {key_path};

    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_ciphers HIGH:!aNULL:!MD5;
    ssl_prefer_server_ciphers on;

{location}}}
"""


def site_paths(identity: str) -> tuple[str, str]:
    name = validate_value("identity", identity)
    return f"{SITES_AVAILABLE}/{name}", f"{SITES_ENABLED}/{name}"


def _header(identity: str) -> str:
    return f"# {identity} (managed by hostdeploy)\n"


def _location(port: int) -> str:
    return PROXY_LOCATION_TEMPLATE.format(port=int(port))


def render_http_site(identity: str, port: int, *, server_name: str = CATCH_ALL_SERVER_NAME) -> str:
    if server_name != CATCH_ALL_SERVER_NAME:
        server_name = validate_value("server_name", server_name)
    return _header(identity) + HTTP_SITE_TEMPLATE.format(server_name=server_name, location=_location(port))


def render_self_signed_site(identity: str, port: int, *, paths: CertificatePaths) -> str:
    return _header(identity) + SELF_SIGNED_SITE_TEMPLATE.format(
        cert_path=validate_value("cert_path", paths.cert_path),
        key_path=validate_value("key_path", paths.key_path),
        location=_location(port),
    )


def _render_none(identity: str, port: int, **_: object) -> str:
    return render_http_site(identity, port)


def _render_self_signed(identity: str, port: int, **_: object) -> str:
    return render_self_signed_site(identity, port, paths=CertificatePaths.for_identity(identity))


def _render_managed(identity: str, port: int, *, domain: Optional[str] = None, **_: object) -> str:
    if not domain:
        raise ProxyConfigError("A domain name is required for the Let's Encrypt site")
    return render_http_site(identity, port, server_name=domain)


SITE_RENDERERS: dict[TlsStrategy, Callable[..., str]] = {
    TlsStrategy.NONE: _render_none,
    TlsStrategy.SELF_SIGNED: _render_self_signed,
    TlsStrategy.MANAGED: _render_managed,
}


def render_site(identity: str, strategy: TlsStrategy, port: int, *, domain: Optional[str] = None) -> str:
    """Site definition installed for *strategy* (before certbot edits it, for MANAGED)."""
    return SITE_RENDERERS[strategy](identity, port, domain=domain)


class ProxyConfigurator:
    def __init__(
        self,
        executor: RemoteExecutor,
        *,
        self_signed: SelfSignedCertificate | None = None,
        managed: ManagedCertificate | None = None,
    ):
        self.executor = executor
        self.self_signed = self_signed or SelfSignedCertificate(executor)
        self.managed = managed or ManagedCertificate(executor)
        self.state = ProxyState.UNCONFIGURED
        self._transitions = {
            TlsStrategy.NONE: self._configure_http_only,
            TlsStrategy.SELF_SIGNED: self._configure_self_signed,
            TlsStrategy.MANAGED: self._configure_managed,
        }

    def configure(
        self,
        identity: str,
        strategy: TlsStrategy,
        port: int,
        *,
        host: str | None = None,
        domain: str | None = None,
        email: str | None = None,
    ) -> ProxyState:
        if self.state is not ProxyState.UNCONFIGURED:
            raise ProxyConfigError(f"Proxy for {identity} is already configured ({self.state.value}) in this run")
        transition = self._transitions[strategy]
        transition(identity, port, host=host, domain=domain, email=email)
        logger.info("%s Nginx configured and reloaded (%s)", LOG_PREFIX, self.state.value)
        return self.state

    def _configure_http_only(self, identity: str, port: int, **_: object) -> None:
        self.install_site(identity, render_site(identity, TlsStrategy.NONE, port))
        self.state = ProxyState.HTTP_ONLY

    def _configure_self_signed(self, identity: str, port: int, *, host: str | None = None, **_: object) -> None:
        if not host:
            raise ProxyConfigError("The host address is required for a self-signed certificate")
        paths = self.self_signed.issue(identity, host)
        self.install_site(identity, render_self_signed_site(identity, port, paths=paths))
        self.state = ProxyState.SELF_SIGNED_TLS

    def _configure_managed(
        self,
        identity: str,
        port: int,
        *,
        domain: str | None = None,
        email: str | None = None,
        **_: object,
    ) -> None:
        if not domain or not email:
            raise ProxyConfigError("Domain name and email are required for Let's Encrypt")
        # The plain HTTP site must be live before certbot's HTTP challenge.
        self.install_site(identity, render_site(identity, TlsStrategy.MANAGED, port, domain=domain))
        self.state = ProxyState.HTTP_ONLY
        self.managed.issue(domain, email)
        self.state = ProxyState.MANAGED_TLS

    def install_site(self, identity: str, content: str) -> None:
        available, enabled = site_paths(identity)
        backup = f"{available}{BACKUP_SUFFIX}"
        run = self.executor.run

        had_previous = run(["sudo", "test", "-f", available], check=False).ok
        if had_previous:
            run(["sudo", "cp", "-p", available, backup], action=f"Failed to back up {available}")

        logger.info("%s Writing %s", LOG_PREFIX, available)
        run(["sudo", "dd", f"of={available}", "status=none"], input_text=content, action=f"Failed to write {available}")
        run(["sudo", "ln", "-sf", available, enabled], action=f"Failed to enable {identity}")

        check = run(["sudo", "nginx", "-t"], check=False)
        if not check.ok:
            if had_previous:
                run(["sudo", "mv", "-f", backup, available], action=f"Failed to restore {available}")
            else:
                run(["sudo", "rm", "-f", enabled, available], action=f"Failed to remove {available}")
            raise ProxyConfigError(
                f"nginx configuration test failed for {identity}; reload skipped and previous site kept",
                output=check.output,
                exit_status=check.exit_status,
            )

        run(["sudo", "rm", "-f", DEFAULT_SITE, backup], action="Failed to remove the default nginx site")
        run(["sudo", "systemctl", "reload", "nginx"], action="Failed to reload nginx")

    def deconfigure(self, identity: str) -> None:
        """Remove the site's files and links; a site that is not there is fine."""
        available, enabled = site_paths(identity)
        run = self.executor.run

        logger.info("%s Removing Nginx configuration for %s...", LOG_PREFIX, identity)
        run(
            ["sudo", "rm", "-f", enabled, available, f"{available}{BACKUP_SUFFIX}"],
            action=f"Failed to remove nginx site {identity}",
        )

        if run(["systemctl", "is-active", "--quiet", "nginx"], check=False).ok:
            check = run(["sudo", "nginx", "-t"], check=False)
            if not check.ok:
                raise ProxyConfigError(
                    "nginx configuration test failed after removing the site; reload skipped",
                    output=check.output,
                    exit_status=check.exit_status,
                )
            run(["sudo", "systemctl", "reload", "nginx"], action="Failed to reload nginx")
        else:
            logger.info("%s nginx is not active; skipping reload", LOG_PREFIX)
        self.state = ProxyState.UNCONFIGURED
