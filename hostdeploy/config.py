"""Prompt defaults resolved from the environment and ``.env.deploy`` files.

Resolution order for every key: process environment -> dotenv file -> the
built-in default passed by the caller.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

from dotenv import dotenv_values


ENV_REPO_URL = "DEPLOY_REPO_URL"
ENV_GIT_TOKEN = "DEPLOY_GIT_TOKEN"
ENV_BRANCH = "DEPLOY_BRANCH"
ENV_SSH_USER = "DEPLOY_SSH_USER"
ENV_SSH_HOST = "DEPLOY_SSH_HOST"
ENV_SSH_KEY = "DEPLOY_SSH_KEY"
ENV_APP_PORT = "DEPLOY_APP_PORT"
ENV_TLS_OPTION = "DEPLOY_TLS_OPTION"
ENV_DOMAIN = "DEPLOY_DOMAIN"
ENV_EMAIL = "DEPLOY_EMAIL"

DEFAULT_ENV_FILE = ".env.deploy"
SECRETS_SUFFIX = ".secrets"

DEFAULT_BRANCH = "main"
DEFAULT_SSH_KEY = "~/.ssh/id_rsa"
DEFAULT_APP_PORT = "8080"
DEFAULT_TLS_OPTION = "1"


def read_dotenv_key(*, dotenv_path: Path, key: str) -> str:
    if not dotenv_path.exists():
        return ""
    raw = dotenv_values(dotenv_path)
    return str(raw.get(key) or "").strip()


class DeployDefaults:
    """Looks up prompt defaults for one run."""

    def __init__(self, *, env_file: Path | str = DEFAULT_ENV_FILE, environ: Mapping[str, str] | None = None):
        self.env_file = Path(env_file)
        self.secrets_file = self.env_file.with_name(self.env_file.name + SECRETS_SUFFIX)
        self.environ = os.environ if environ is None else environ

    def get(self, key: str, default: str = "") -> str:
        value = str(self.environ.get(key) or "").strip()
        if not value:
            value = read_dotenv_key(dotenv_path=self.env_file, key=key)
        return value or default

    def get_secret(self, key: str) -> str:
        value = str(self.environ.get(key) or "").strip()
        if not value:
            value = read_dotenv_key(dotenv_path=self.secrets_file, key=key)
        return value
