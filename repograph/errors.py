"""
Exceptions and error logging for repograph.

Background consistency work never surfaces failures to API callers, so most
errors are logged and swallowed at the point they occur. The exceptions here
are the ones that do propagate: malformed references at the resolver
boundary and search service failures (to the job or hook that called it).

log_exception() keeps full stack traces in a file while the CLI shows a
clean one-line message.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class RepographError(Exception):
    """Base class for repograph errors."""


class MalformedReferenceError(RepographError, ValueError):
    """A reference could not be interpreted as a document identifier.

    Raised for caller errors only. A well-formed reference whose target
    does not exist is a miss, not an error.
    """

    def __init__(self, reference: object):
        self.reference = reference
        super().__init__(f"Malformed document reference: {reference!r}")


class SearchServiceError(RepographError):
    """Error communicating with the external search service."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting REPOGRAPH_STORE_PATH."""
    store = os.environ.get("REPOGRAPH_STORE_PATH")
    if store:
        return Path(store) / "repograph-errors.log"
    return Path.home() / ".repograph" / "repograph-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
