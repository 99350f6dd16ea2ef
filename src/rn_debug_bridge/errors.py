"""Error model - Actionable errors with remediation hints."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class BridgeError(Exception):
    """
    Base error with context and remediation guidance.

    Every failure that crosses the bridge boundary should read as a sentence
    a developer can act on: what went wrong, and what to check next.
    """

    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    remediation: str = ""

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "remediation": self.remediation,
        }


# Specific error constructors for common cases


def packager_not_running_error(port: int) -> BridgeError:
    """Create error for an unreachable packager."""
    return BridgeError(
        code="ERR_PACKAGER_NOT_RUNNING",
        message=(
            "Cannot attach to packager. Are you sure there is a packager and it is running "
            f"in the port {port}? If your packager is configured to run in another port "
            "make sure to override it in the bridge settings."
        ),
        context={"port": port},
        remediation=(
            "Start the packager, or pass --port / set RN_DEBUG_BRIDGE_PACKAGER_PORT "
            "to the port it listens on"
        ),
    )


def http_status_error(url: str, status: int, body: str) -> BridgeError:
    """Create error for an unexpected HTTP status. The message is the response body."""
    return BridgeError(
        code="ERR_HTTP_STATUS",
        message=body,
        context={"url": url, "status": status},
        remediation="Check the packager output for bundling errors",
    )


def request_failed_error(url: str, reason: str) -> BridgeError:
    """Create error for a transport-level HTTP failure."""
    return BridgeError(
        code="ERR_REQUEST_FAILED",
        message=f"Request to {url} failed: {reason}",
        context={"url": url, "reason": reason},
        remediation="Verify the packager is reachable from this machine",
    )


def worker_exited_error(returncode: int | None) -> BridgeError:
    """Create error for a debuggee process that exited before becoming ready."""
    return BridgeError(
        code="ERR_WORKER_EXITED",
        message=f"Debuggee process exited with code {returncode} before it was ready",
        context={"returncode": returncode},
        remediation="Check the debuggee output above and that node is installed",
    )


def worker_not_running_error(reason: str) -> BridgeError:
    """Create error for messaging a debuggee process that is not running."""
    return BridgeError(
        code="ERR_WORKER_NOT_RUNNING",
        message=f"Debuggee process is not running: {reason}",
        context={"reason": reason},
        remediation="Reload the app to start a new JS runtime",
    )


def worker_start_timeout_error(timeout: float) -> BridgeError:
    """Create error for a debuggee process that never signalled readiness."""
    return BridgeError(
        code="ERR_WORKER_START_TIMEOUT",
        message=f"Debuggee process did not report readiness within {timeout:g}s",
        context={"timeout": timeout},
        remediation="Check that the debugger worker script loads without errors",
    )


def another_debugger_error(reason: str) -> BridgeError:
    """Create error for a packager that already has a debugger attached."""
    return BridgeError(
        code="ERR_ANOTHER_DEBUGGER",
        message=f"Packager refused the connection: {reason}",
        context={"reason": reason},
        remediation="Close other debugger sessions (e.g. Chrome DevTools) and attach again",
    )
