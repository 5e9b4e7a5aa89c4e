"""Parameter collection and validation for a deployment run.

Everything here runs before any network call: a malformed value raises
:class:`~hostdeploy.errors.InputValidationError` and the run stops.
"""
from __future__ import annotations

import enum
import getpass
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlsplit

from . import config
from .errors import InputValidationError


_URL_PATTERN = re.compile(r"^https?://", re.IGNORECASE)
_IDENTITY_PATTERN = re.compile(r"[a-z0-9]+(?:-[a-z0-9]+)*")
_IDENTITY_INVALID_CHARS = re.compile(r"[^a-z0-9]+")
_DOMAIN_PATTERN = re.compile(
    r"^(?=.{1,253}$)(?!-)[A-Za-z0-9-]{1,63}(?<!-)(\.(?!-)[A-Za-z0-9-]{1,63}(?<!-))+$"
)
_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_LOGIN_PATTERN = re.compile(r"^[a-z_][a-z0-9_.-]*$", re.IGNORECASE)
_HOST_PATTERN = re.compile(r"^[A-Za-z0-9.:-]+$")
_BRANCH_PATTERN = re.compile(r"[A-Za-z0-9._/-]+")


class TlsStrategy(enum.Enum):
    NONE = "1"
    SELF_SIGNED = "2"
    MANAGED = "3"

    @property
    def label(self) -> str:
        return _TLS_LABELS[self]


_TLS_LABELS = {
    TlsStrategy.NONE: "No SSL (HTTP only)",
    TlsStrategy.SELF_SIGNED: "Self-signed certificate (for testing)",
    TlsStrategy.MANAGED: "Let's Encrypt with Certbot (for production - requires domain)",
}


def derive_identity(repo_url: str) -> str:
    """Deterministic, filesystem-safe deployment name for a source URL.

    ``https://github.com/acme/My_App.git`` -> ``my-app``. Separator runs collapse to a
    single ``-`` so the name is valid for docker images and compose projects.
    """
    path = urlsplit(str(repo_url or "").strip()).path or str(repo_url or "")
    name = path.rstrip("/").rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return normalize_identity(name)


def normalize_identity(name: str) -> str:
    identity = _IDENTITY_INVALID_CHARS.sub("-", str(name or "").strip().lower()).strip("-")
    if not _IDENTITY_PATTERN.fullmatch(identity):
        raise InputValidationError(f"Cannot derive a valid deployment name from {name!r}")
    return identity


def validate_repo_url(value: str) -> str:
    url = str(value or "").strip()
    if not _URL_PATTERN.match(url):
        raise InputValidationError("Invalid repository URL format (must start with http:// or https://)")
    if not urlsplit(url).netloc:
        raise InputValidationError(f"Invalid repository URL: missing host in {url!r}")
    return url


def validate_token(value: str) -> str:
    token = str(value or "").strip()
    if not token:
        raise InputValidationError("PAT cannot be empty")
    return token


def validate_port(value: str | int) -> int:
    text = str(value).strip()
    if not text.isdigit():
        raise InputValidationError(f"Port must be a number, got {text!r}")
    port = int(text)
    if port < 1 or port > 65535:
        raise InputValidationError(f"Port must be in range 1-65535, got {port}")
    return port


def validate_ssh_key(value: str) -> Path:
    key = Path(os.path.expanduser(str(value or "").strip()))
    if not key.is_file():
        raise InputValidationError(f"SSH key not found at {key}")
    return key


def validate_branch(value: str) -> str:
    branch = str(value or "").strip()
    # git would read a leading "-" as an option.
    if not _BRANCH_PATTERN.fullmatch(branch) or branch.startswith("-") or ".." in branch:
        raise InputValidationError(f"Invalid branch name: {branch!r}")
    return branch


def validate_login(value: str) -> str:
    login = str(value or "").strip()
    if not _LOGIN_PATTERN.fullmatch(login):
        raise InputValidationError(f"Invalid remote server username: {login!r}")
    return login


def validate_host(value: str) -> str:
    host = str(value or "").strip()
    if not _HOST_PATTERN.fullmatch(host):
        raise InputValidationError(f"Invalid remote server address: {host!r}")
    return host


def validate_domain(value: str) -> str:
    domain = str(value or "").strip().lower()
    if not _DOMAIN_PATTERN.fullmatch(domain):
        raise InputValidationError(f"Invalid domain name: {domain!r}")
    return domain


def validate_email(value: str) -> str:
    email = str(value or "").strip()
    if not _EMAIL_PATTERN.fullmatch(email):
        raise InputValidationError(f"Invalid notification email: {email!r}")
    return email


def parse_tls_option(value: str) -> TlsStrategy:
    try:
        return TlsStrategy(str(value or "").strip() or config.DEFAULT_TLS_OPTION)
    except ValueError:
        raise InputValidationError(f"SSL option must be 1, 2 or 3, got {value!r}")


@dataclass(frozen=True)
class DeploymentParameters:
    repo_url: str
    token: str
    branch: str
    ssh_user: str
    ssh_host: str
    ssh_key: Path
    app_port: int
    tls_strategy: TlsStrategy
    domain: Optional[str] = None
    email: Optional[str] = None

    def __post_init__(self) -> None:
        validate_branch(self.branch)
        managed = self.tls_strategy is TlsStrategy.MANAGED
        if managed and not (self.domain and self.email):
            raise InputValidationError("Domain name and email are required for Let's Encrypt")
        if not managed and (self.domain is not None or self.email is not None):
            raise InputValidationError("Domain name and email only apply to the Let's Encrypt option")

    @property
    def identity(self) -> str:
        return derive_identity(self.repo_url)

    def __repr__(self) -> str:
        return (
            f"DeploymentParameters(repo_url={self.repo_url!r}, branch={self.branch!r}, "
            f"target={self.ssh_user}@{self.ssh_host}, app_port={self.app_port}, "
            f"tls_strategy={self.tls_strategy.name}, domain={self.domain!r})"
        )


@dataclass(frozen=True)
class CleanupParameters:
    ssh_user: str
    ssh_host: str
    ssh_key: Path
    identity: str


Prompt = Callable[[str], str]


def _ask(prompt: Prompt, label: str, default: str = "") -> str:
    suffix = f" [{default}]" if default else ""
    answer = str(prompt(f"{label}{suffix}: ") or "").strip()
    return answer or default


def _collect_access(prompt: Prompt, defaults: config.DeployDefaults) -> tuple[str, str, Path]:
    ssh_user = validate_login(_ask(prompt, "Enter remote server username", defaults.get(config.ENV_SSH_USER)))
    ssh_host = validate_host(_ask(prompt, "Enter remote server IP", defaults.get(config.ENV_SSH_HOST)))
    ssh_key = validate_ssh_key(
        _ask(prompt, "Enter SSH key path", defaults.get(config.ENV_SSH_KEY, config.DEFAULT_SSH_KEY))
    )
    return ssh_user, ssh_host, ssh_key


def collect_parameters(
    *,
    defaults: config.DeployDefaults,
    prompt: Prompt = input,
    secret_prompt: Prompt = getpass.getpass,
    echo: Callable[[str], None] = print,
) -> DeploymentParameters:
    repo_url = validate_repo_url(_ask(prompt, "Enter Git Repository URL", defaults.get(config.ENV_REPO_URL)))
    # Fails early so an unusable URL never reaches git.
    derive_identity(repo_url)

    stored_token = defaults.get_secret(config.ENV_GIT_TOKEN)
    token_label = "Enter Personal Access Token (hidden)"
    if stored_token:
        token_label = f"{token_label} [{config.ENV_GIT_TOKEN}]"
    token = validate_token(str(secret_prompt(f"{token_label}: ") or "").strip() or stored_token)

    branch = validate_branch(
        _ask(prompt, "Enter branch name", defaults.get(config.ENV_BRANCH, config.DEFAULT_BRANCH))
    )
    ssh_user, ssh_host, ssh_key = _collect_access(prompt, defaults)
    app_port = validate_port(
        _ask(prompt, "Enter application internal port", defaults.get(config.ENV_APP_PORT, config.DEFAULT_APP_PORT))
    )

    echo("")
    echo("SSL Configuration (Optional)")
    for strategy in TlsStrategy:
        echo(f"{strategy.value}) {strategy.label}")
    tls_strategy = parse_tls_option(
        _ask(prompt, "Choose SSL option [1-3]", defaults.get(config.ENV_TLS_OPTION, config.DEFAULT_TLS_OPTION))
    )

    domain = email = None
    if tls_strategy is TlsStrategy.MANAGED:
        raw_domain = _ask(prompt, "Enter your domain name (e.g., example.com)", defaults.get(config.ENV_DOMAIN))
        raw_email = _ask(prompt, "Enter email for Let's Encrypt notifications", defaults.get(config.ENV_EMAIL))
        if not raw_domain or not raw_email:
            raise InputValidationError("Domain name and email are required for Let's Encrypt")
        domain = validate_domain(raw_domain)
        email = validate_email(raw_email)

    return DeploymentParameters(
        repo_url=repo_url,
        token=token,
        branch=branch,
        ssh_user=ssh_user,
        ssh_host=ssh_host,
        ssh_key=ssh_key,
        app_port=app_port,
        tls_strategy=tls_strategy,
        domain=domain,
        email=email,
    )


def collect_cleanup_parameters(*, defaults: config.DeployDefaults, prompt: Prompt = input) -> CleanupParameters:
    ssh_user, ssh_host, ssh_key = _collect_access(prompt, defaults)
    repo_url = defaults.get(config.ENV_REPO_URL)
    default_identity = ""
    if repo_url:
        try:
            default_identity = derive_identity(repo_url)
        except InputValidationError:
            default_identity = ""
    identity = normalize_identity(_ask(prompt, "Enter repository name to cleanup", default_identity))
    return CleanupParameters(ssh_user=ssh_user, ssh_host=ssh_host, ssh_key=ssh_key, identity=identity)
