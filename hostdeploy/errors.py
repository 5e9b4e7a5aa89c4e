"""Exception hierarchy for deployment runs.

Every fatal condition raised inside a pipeline derives from
:class:`DeployError`; :func:`hostdeploy.deploy.main` turns them into a
non-zero exit code after logging the failing step.
"""
from __future__ import annotations


class DeployError(RuntimeError):
    category = "deployment error"


class InputValidationError(DeployError):
    category = "input validation error"


class ScriptRenderError(DeployError):
    category = "script render error"


class SourceError(DeployError):
    category = "source checkout error"


class ConnectivityError(DeployError):
    category = "connectivity error"


class RemoteCommandError(DeployError):
    category = "remote command error"

    def __init__(self, action: str, *, output: str = "", exit_status: int = 1):
        self.action = action
        self.output = output
        self.exit_status = exit_status
        super().__init__(f"{action} (exit code {exit_status})")

    def output_tail(self, lines: int = 20) -> str:
        tail = [line for line in str(self.output or "").splitlines() if line.strip()]
        return "\n".join(tail[-lines:])


class ProxyConfigError(RemoteCommandError):
    category = "proxy configuration error"


class CertificateError(RemoteCommandError):
    category = "certificate error"


def ssh_failure_hint(error_text: str) -> str:
    lowered = str(error_text or "").lower()
    if "no route to host" in lowered:
        return "No route to host. Check VPN/LAN reachability and the host address."
    if "connection timed out" in lowered or "operation timed out" in lowered:
        return "SSH timed out. Verify the server is online and port 22 is reachable."
    if "connection refused" in lowered:
        return "SSH connection refused. Confirm SSH daemon is running and port 22 is open."
    if "permission denied" in lowered:
        return "SSH authentication failed. Verify the key file is authorized for this user."
    if "could not resolve hostname" in lowered:
        return "Host resolution failed. Check the host address for typos/DNS issues."
    return ""
