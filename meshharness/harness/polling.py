"""Deadline polling shared by every wait in the harness.

The k3s node startup, manifest readiness and removal, namespace deletion and
the istiod wait all poll through ``wait_for_condition``. Callers translate
``PollingTimeoutError`` into their own error at the seam, e.g.
``ManifestLifecycle`` raises ``ReadinessTimeout`` naming the resources that
were still pending and ``ClusterHandle.start`` raises ``ProvisioningFailure``
with the node's log tail.
"""

from __future__ import annotations

import time
from collections.abc import Callable


class PollingTimeoutError(TimeoutError):
    """Raised when a polling operation times out.

    Attributes:
        description: What was being waited for
        timeout: How long we waited
        last_error: Last exception encountered during polling (if any)
    """

    def __init__(
        self,
        description: str,
        timeout: float,
        last_error: Exception | None = None,
    ) -> None:
        self.description = description
        self.timeout = timeout
        self.last_error = last_error
        message = f"Timeout waiting for {description} after {timeout:.1f}s"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message)


def wait_for_condition(
    condition: Callable[[], bool],
    timeout: float = 30.0,
    interval: float = 0.5,
    description: str = "condition",
) -> bool:
    """Poll until condition is True or timeout.

    The condition is always evaluated at least once. Exceptions raised by the
    condition count as "not yet" and the last one is reported on timeout.

    Args:
        condition: Callable returning True when the condition is met.
        timeout: Maximum wait time in seconds.
        interval: Poll interval in seconds.
        description: Description for error messages.

    Returns:
        True once the condition is met.

    Raises:
        PollingTimeoutError: If the condition is not met within timeout.
    """
    start_time = time.monotonic()
    last_error: Exception | None = None

    while True:
        try:
            if condition():
                return True
        except Exception as e:  # noqa: BLE001
            last_error = e

        elapsed = time.monotonic() - start_time
        if elapsed >= timeout:
            raise PollingTimeoutError(description, timeout, last_error)

        # Sleep for interval, but don't exceed remaining time
        sleep_time = min(interval, timeout - elapsed)
        if sleep_time > 0:
            time.sleep(sleep_time)
