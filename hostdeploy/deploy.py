#!/usr/bin/env python3
"""Deploy a containerized application to a single host over SSH.

Forward pipeline: clone/update the source, detect the build method, check SSH,
prepare the host, rsync the tree, (re)build the containers, install the nginx
site (optionally with a self-signed or Let's Encrypt certificate) and probe
the result.  ``--cleanup`` runs the teardown pipeline, which removes what the
forward pipeline created for one deployment name.

Every step is a gate: the first failure is logged with its step and command
output, and the process exits non-zero.  Nothing is retried; re-running is
safe because each step converges on the same end state.
"""
from __future__ import annotations

import argparse
import getpass
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

import requests

from . import certificates, containers, host, remote, source
from .config import DEFAULT_ENV_FILE, DeployDefaults
from .errors import DeployError, RemoteCommandError
from .nginx_site import ProxyConfigurator
from .params import (
    CleanupParameters,
    DeploymentParameters,
    TlsStrategy,
    collect_cleanup_parameters,
    collect_parameters,
)
from .remote import RemoteExecutor, RemoteTarget
from .run_log import close_run_log, configure_run_log
from .source import BuildMethod


logger = logging.getLogger("hostdeploy.deploy")

BANNER = "=========================================="


@dataclass
class RunContext:
    """State accumulated by the forward pipeline for one run."""

    params: DeploymentParameters
    target: RemoteTarget
    identity: str
    remote_root: str
    checkout: Optional[Path] = None
    build_method: Optional[BuildMethod] = None

    @classmethod
    def from_params(cls, params: DeploymentParameters) -> "RunContext":
        target = RemoteTarget(user=params.ssh_user, host=params.ssh_host, key_path=params.ssh_key)
        identity = params.identity
        return cls(params=params, target=target, identity=identity, remote_root=target.app_root(identity))

    @property
    def upstream_port(self) -> int:
        # A single image is always published on the fixed host port; a compose
        # stack publishes whatever port the operator declared.
        if self.build_method is BuildMethod.SINGLE_IMAGE:
            return containers.HOST_PORT
        return self.params.app_port

    @property
    def public_url(self) -> str:
        return host.access_url(self.params.tls_strategy, self.params.ssh_host, self.params.domain)


Step = tuple[str, str, Callable[[], object]]


class Pipeline:
    """Runs numbered steps in order; the first exception stops the run."""

    def __init__(self) -> None:
        self.step_number = 0
        self.current_title = ""

    @property
    def current_stage(self) -> str:
        if not self.step_number:
            return "Startup"
        return f"Step {self.step_number} ({self.current_title})"

    def run(self, steps: Sequence[Step]) -> None:
        for title, icon, action in steps:
            self.step_number += 1
            self.current_title = title
            logger.info("%s Step %d: %s", icon, self.step_number, title, extra={"step": True})
            action()


class Deployment:
    def __init__(
        self,
        params: DeploymentParameters,
        *,
        workdir: Path,
        executor: RemoteExecutor | None = None,
        http_get: Callable[..., requests.Response] = requests.get,
    ):
        self.context = RunContext.from_params(params)
        self.workdir = Path(workdir)
        self.executor = executor or RemoteExecutor(self.context.target)
        self.proxy = ProxyConfigurator(self.executor)
        self.http_get = http_get
        self.pipeline = Pipeline()
        self.probes: list[host.ProbeResult] = []

    def run(self) -> None:
        self.pipeline.run(
            [
                ("Cloning repository", "📥", self.clone_repository),
                ("Verifying Docker configuration", "🔎", self.verify_build_method),
                ("Testing SSH connection", "🔌", self.executor.probe),
                ("Preparing remote environment", "🛠️", self.prepare_remote),
                ("Transferring project files", "📦", self.sync_files),
                ("Deploying application", "🐳", self.deploy_containers),
                ("Configuring Nginx", "🌐", self.configure_proxy),
                ("Validating deployment", "🩺", self.validate),
            ]
        )
        self.summarize()

    def clone_repository(self) -> None:
        self.context.checkout = source.clone_or_update(self.context.params, self.workdir)

    def verify_build_method(self) -> None:
        self.context.build_method = source.detect_build_method(self.context.checkout)
        if self.context.build_method is BuildMethod.COMPOSE_MANIFEST:
            services = source.compose_services(self.context.checkout)
            logger.info("Compose services: %s", ", ".join(services))

    def prepare_remote(self) -> None:
        host.prepare_host(self.executor)

    def sync_files(self) -> None:
        remote.sync_tree(self.executor, self.context.checkout, self.context.remote_root)

    def deploy_containers(self) -> None:
        containers.deploy(self.executor, self.context.identity, self.context.remote_root, self.context.build_method)

    def configure_proxy(self) -> None:
        params = self.context.params
        self.proxy.configure(
            self.context.identity,
            params.tls_strategy,
            self.context.upstream_port,
            host=params.ssh_host,
            domain=params.domain,
            email=params.email,
        )

    def validate(self) -> None:
        self.probes = host.validate_deployment(
            self.executor,
            identity=self.context.identity,
            upstream_port=self.context.upstream_port,
            strategy=self.context.params.tls_strategy,
            public_url=self.context.public_url,
            http_get=self.http_get,
        )
        logger.info("Deployment validation complete!")

    def summarize(self) -> None:
        strategy = self.context.params.tls_strategy
        logger.info(BANNER)
        logger.info("✓ DEPLOYMENT COMPLETED SUCCESSFULLY")
        logger.info(BANNER)
        logger.info("Access your application at: %s", self.context.public_url)
        if strategy is TlsStrategy.SELF_SIGNED:
            logger.warning("Browser will show security warning for self-signed certificate")
            logger.info("This is normal and safe for testing environments")
        elif strategy is TlsStrategy.MANAGED:
            logger.info("✓ SSL certificate is valid and auto-renewal is enabled")
        logger.info("To cleanup this deployment, run: hostdeploy --cleanup")


class Cleanup:
    def __init__(self, params: CleanupParameters, *, executor: RemoteExecutor | None = None):
        self.params = params
        self.target = RemoteTarget(user=params.ssh_user, host=params.ssh_host, key_path=params.ssh_key)
        self.executor = executor or RemoteExecutor(self.target)
        self.proxy = ProxyConfigurator(self.executor)
        self.pipeline = Pipeline()

    def run(self) -> None:
        identity = self.params.identity
        self.pipeline.run(
            [
                ("Testing SSH connection", "🔌", self.executor.probe),
                ("Stopping and removing containers", "🐳", lambda: containers.remove(self.executor, identity)),
                (
                    "Removing project directory",
                    "📁",
                    lambda: remote.remove_tree(self.executor, self.target.app_root(identity)),
                ),
                ("Removing Nginx configuration", "🌐", lambda: self.proxy.deconfigure(identity)),
                ("Removing SSL certificates", "🔐", lambda: certificates.remove_certificates(self.executor, identity)),
            ]
        )
        logger.info("✓ Cleanup completed successfully")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="hostdeploy",
        description="Deploy a Dockerized application to a remote server behind nginx, with optional TLS",
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Remove a previous deployment (containers, images, nginx site, certificates) instead of deploying",
    )
    parser.add_argument("--log-dir", default=".", help="Directory for the deploy_<timestamp>.log transcript")
    parser.add_argument("--workdir", default=".", help="Directory the repository is cloned into")
    parser.add_argument(
        "--env-file",
        default=DEFAULT_ENV_FILE,
        help="Dotenv file with prompt defaults (DEPLOY_* keys); secrets are read from <env-file>.secrets",
    )
    return parser.parse_args(argv)


def _log_failure(exc: DeployError, *, stage: str) -> None:
    logger.error("%s failed: %s: %s", stage, exc.category, exc)
    if isinstance(exc, RemoteCommandError):
        tail = exc.output_tail()
        if tail:
            logger.error("Command output:\n%s", tail)


def main(
    argv: Sequence[str] | None = None,
    *,
    prompt: Callable[[str], str] = input,
    secret_prompt: Callable[[str], str] = getpass.getpass,
    environ=None,
) -> int:
    args = parse_args(argv)
    log_path = configure_run_log(args.log_dir)
    defaults = DeployDefaults(env_file=args.env_file, environ=environ)
    run: Deployment | Cleanup | None = None

    try:
        if args.cleanup:
            logger.info(BANNER)
            logger.info("Starting Cleanup Process")
            logger.info(BANNER)
            run = Cleanup(collect_cleanup_parameters(defaults=defaults, prompt=prompt))
        else:
            logger.info(BANNER)
            logger.info("Starting Automated Deployment Process")
            logger.info(BANNER)
            params = collect_parameters(defaults=defaults, prompt=prompt, secret_prompt=secret_prompt)
            logger.info("Parameters collected successfully: %r", params)
            run = Deployment(params, workdir=Path(args.workdir))
        run.run()
    except DeployError as exc:
        stage = run.pipeline.current_stage if run is not None else "Parameter collection"
        _log_failure(exc, stage=stage)
        return 1
    except EOFError:
        logger.error("Parameter collection failed: no input available for the interactive prompts")
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted. The host may be partially configured; re-run to converge or use --cleanup.")
        return 130
    finally:
        logger.info("Check logs at: %s", log_path)
        close_run_log()
    return 0


def cli() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    cli()
