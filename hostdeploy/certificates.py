"""TLS certificates for the proxy: self-signed via openssl or issued by certbot."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from textwrap import dedent

from .errors import CertificateError, RemoteCommandError
from .remote import RemoteExecutor, RemoteScript, ScriptMode


LOG_PREFIX = "[CERTS]"
CERT_DIR = "/etc/ssl/certs"
KEY_DIR = "/etc/ssl/private"
SELF_SIGNED_DAYS = 365
SELF_SIGNED_KEY_BITS = 2048
RENEWAL_TIMER = "certbot.timer"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CertificatePaths:
    cert_path: str
    key_path: str

    @classmethod
    def for_identity(cls, identity: str) -> "CertificatePaths":
        return cls(cert_path=f"{CERT_DIR}/{identity}.crt", key_path=f"{KEY_DIR}/{identity}.key")


SELF_SIGNED_SCRIPT = RemoteScript(
    name="self-signed-certificate",
    mode=ScriptMode.INTERPOLATED,
    body=dedent(
        """\
        set -e
        echo "Generating self-signed SSL certificate..."
        sudo mkdir -p {{cert_dir}} {{key_dir}}
        sudo openssl req -x509 -nodes -days {{days}} -newkey rsa:{{key_bits}} \\
            -keyout {{key_path}} \\
            -out {{cert_path}} \\
            -subj "/O={{identity}}/CN={{common_name}}"
        sudo chmod 600 {{key_path}}
        sudo chmod 644 {{cert_path}}
        echo "Self-signed certificate generated successfully"
        """
    ),
)

CERTBOT_INSTALL_SCRIPT = RemoteScript(
    name="certbot-install",
    body=dedent(
        """\
        set -e
        if ! command -v certbot >/dev/null 2>&1; then
            echo "Installing Certbot..."
            sudo apt-get install -y certbot python3-certbot-nginx
        else
            echo "Certbot already installed"
        fi
        """
    ),
)


def build_certbot_cmd(*, domain: str, email: str) -> list[str]:
    return [
        "sudo", "certbot", "--nginx",
        "-d", domain,
        "--non-interactive",
        "--agree-tos",
        "--email", email,
        "--redirect",
        "--keep-until-expiring",
    ]


class SelfSignedCertificate:
    def __init__(self, executor: RemoteExecutor):
        self.executor = executor

    def issue(self, identity: str, host: str) -> CertificatePaths:
        paths = CertificatePaths.for_identity(identity)
        params = {
            "identity": identity,
            "common_name": host,
            "cert_dir": CERT_DIR,
            "key_dir": KEY_DIR,
            "cert_path": paths.cert_path,
            "key_path": paths.key_path,
            "days": SELF_SIGNED_DAYS,
            "key_bits": SELF_SIGNED_KEY_BITS,
        }
        try:
            self.executor.run_script(SELF_SIGNED_SCRIPT, params)
        except RemoteCommandError as exc:
            raise CertificateError(
                f"Failed to generate self-signed certificate for {host}",
                output=exc.output,
                exit_status=exc.exit_status,
            )
        logger.info("%s Self-signed certificate stored at %s", LOG_PREFIX, paths.cert_path)
        return paths


class ManagedCertificate:
    """Let's Encrypt issuance through certbot's nginx integration.

    certbot rewrites the already-active HTTP site for the domain in place,
    adding TLS termination and the HTTP -> HTTPS redirect.
    """

    def __init__(self, executor: RemoteExecutor):
        self.executor = executor

    def issue(self, domain: str, email: str) -> None:
        self.executor.run_script(CERTBOT_INSTALL_SCRIPT, action="Failed to install certbot")

        logger.info("%s Obtaining Let's Encrypt certificate for %s...", LOG_PREFIX, domain)
        result = self.executor.run(build_certbot_cmd(domain=domain, email=email), check=False)
        if not result.ok:
            raise CertificateError(
                f"certbot could not issue a certificate for {domain}. "
                "Check that the domain resolves to this host and port 80 is reachable",
                output=result.output,
                exit_status=result.exit_status,
            )

        timer = self.executor.run(["sudo", "systemctl", "enable", "--now", RENEWAL_TIMER], check=False)
        if timer.ok:
            logger.info("%s Auto-renewal is enabled (%s)", LOG_PREFIX, RENEWAL_TIMER)
        else:
            logger.warning(
                "%s Could not enable %s (exit code %s); renew manually with 'certbot renew'",
                LOG_PREFIX,
                RENEWAL_TIMER,
                timer.exit_status,
            )
        logger.info("%s Let's Encrypt certificate configured for %s", LOG_PREFIX, domain)


def remove_certificates(executor: RemoteExecutor, identity: str) -> None:
    paths = CertificatePaths.for_identity(identity)
    logger.info("%s Removing SSL certificates for %s...", LOG_PREFIX, identity)
    executor.run(
        ["sudo", "rm", "-f", paths.cert_path, paths.key_path],
        action=f"Failed to remove certificates for {identity}",
    )
