"""Exception hierarchy for the harness.

Every failure is terminal for a test run. Errors coming from the Docker SDK or
the Kubernetes client are translated into one of these at the call site, with
the original exception chained as ``__cause__``.
"""

from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple


class HarnessError(Exception):
    """Base class for all harness failures."""


class ProvisioningFailure(HarnessError):
    """Cluster, image or control-plane setup did not succeed."""


class CommandFailure(HarnessError):
    """A command run inside the cluster node exited non-zero.

    Attributes:
        command: The shell command that was run
        exit_code: Its exit code
        stdout: Captured standard output
        stderr: Captured standard error
    """

    def __init__(self, command: str, exit_code: int, stdout: str, stderr: str) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"command {command!r} exited with {exit_code}\nstdout={stdout}\nstderr={stderr}"
        )


class ReadinessTimeout(HarnessError):
    """Declared resources did not reach the expected state in time."""

    def __init__(
        self,
        pending: Iterable[Tuple[str, Optional[str], str]],
        timeout: float,
        last_error: Optional[Exception] = None,
    ) -> None:
        self.pending = list(pending)
        self.timeout = timeout
        self.last_error = last_error
        names = describe(self.pending)
        message = f"Timeout after {timeout:.1f}s waiting for: {names or 'condition'}"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message)


class RequestFailure(HarnessError):
    """The verifying HTTP call failed after exhausting its retries."""

    def __init__(
        self,
        url: str,
        attempts: int,
        last_error: Optional[BaseException],
        method: str = "GET",
    ) -> None:
        self.url = url
        self.method = method
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{method} {url} failed after {attempts} attempt(s): {last_error!r}")


class UnsupportedManifestError(ValueError):
    """A manifest document has a kind the lifecycle cannot submit."""

    def __init__(self, kind: str, source: Optional[Path] = None) -> None:
        self.kind = kind
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(f"Unsupported manifest kind {kind!r}{where}")


def describe(pending: Sequence[Tuple[str, Optional[str], str]]) -> str:
    return ", ".join(f"{kind}/{ns or '-'}/{name}" for kind, ns, name in pending)
