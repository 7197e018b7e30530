"""Module defining custom exceptions for brewengine."""

from __future__ import annotations

import functools
import time
from typing import Any, Callable, Iterable, Self, TypeVar

from brewengine.core.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

# Exit Codes
EXIT_SUCCESS = 0
EXIT_FAILURE = 1


class BrewError(Exception):
    """Base exception class with context propagation.

    All exceptions raised by the engine inherit from this class.
    Context is a dictionary that accumulates relevant information
    as the exception propagates up the call stack.

    Example:
        raise BrewError("An error occurred", context={"package": "foo"})

        # Or with context propagation
        try:
            ...
        except BrewError as e:
            raise e.with_context(operation="install")
    """
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def with_context(self, **new_context: Any) -> Self:
        """Merge additional context into this exception and return it.

        Args:
            **new_context: Additional context to add to the exception.

        Returns:
            The same exception instance with merged context.
        """
        self.context.update(new_context)
        return self

    def __str__(self) -> str:
        """String representation of the exception including context."""
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class TransientError(BrewError):
    """Errors that may succeed when retried.

    Operations raising this exception must be idempotent.
    """


class UserError(BrewError):
    """Errors caused by the request itself.

    They should not be retried without the user changing something.
    """


class SystemError(BrewError):
    """Errors due to the environment: filesystem, build tools, corrupted
    downloads. These may require user intervention to fix.
    """


## Specific Exceptions ##

class FormulaUnavailableError(UserError):
    """No tap (and no alias) provides the requested formula."""
    def __init__(
        self,
        message: str | None = None,
        name: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if name:
            ctx["package"] = name
        if message is None:
            message = f"No available formula with the name \"{name or 'unknown'}\""
        super().__init__(message, context=ctx)


class AmbiguousFormulaError(UserError):
    """Several taps provide the formula and no precedence rule applies."""
    def __init__(
        self,
        name: str,
        candidates: Iterable[str],
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        ctx["package"] = name
        ctx["candidates"] = ", ".join(sorted(candidates))
        message = (
            f"Formula \"{name}\" exists in multiple taps: {ctx['candidates']}. "
            "Use a fully-qualified name (user/repo/formula)."
        )
        super().__init__(message, context=ctx)


class FormulaInvalidError(UserError):
    """A formula definition file could not be loaded."""
    def __init__(
        self,
        message: str,
        path: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if path:
            ctx["path"] = path
        super().__init__(message, context=ctx)


class CyclicDependencyError(UserError):
    """The dependency graph reachable from the request contains a cycle."""
    def __init__(self, cycle: list[str], context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        self.cycle = list(cycle)
        ctx["cycle"] = " -> ".join(self.cycle)
        super().__init__(f"Dependency cycle detected: {ctx['cycle']}", context=ctx)


class AlreadyInstalledError(UserError):
    """The requested version already has an install receipt."""
    def __init__(self, name: str, version: str, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["package"] = name
        ctx["version"] = version
        super().__init__(f"{name} {version} is already installed", context=ctx)


class DependentsExistError(UserError):
    """Other installed formulae still depend on the one being removed."""
    def __init__(
        self, name: str, dependents: Iterable[str], context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        self.dependents = sorted(dependents)
        ctx["package"] = name
        ctx["dependents"] = ", ".join(self.dependents)
        message = (
            f"Refusing to uninstall {name} because it is required by "
            f"{ctx['dependents']}, which are currently installed"
        )
        super().__init__(message, context=ctx)


class LinkConflictError(UserError):
    """Files in the prefix are in the way and belong to someone else."""
    def __init__(
        self, name: str, conflicts: Iterable[str], context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        self.conflicts = sorted(conflicts)
        ctx["package"] = name
        ctx["conflicts"] = ", ".join(self.conflicts)
        message = (
            f"Could not symlink {name}: {len(self.conflicts)} target(s) already exist"
        )
        super().__init__(message, context=ctx)


class TapError(UserError):
    """Invalid tap name or tap operation."""


class NetworkError(TransientError):
    """A download failed in a way that may succeed on retry.

    Typically indicates:
        - Connection refused or reset
        - Timeouts
        - HTTP 5xx responses
    """
    def __init__(
        self,
        message: str | None = None,
        url: str | None = None,
        error: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if url:
            ctx["url"] = url
        if error:
            ctx["error"] = error
        if message is None:
            message = f"Download failed: {url or 'unknown url'}"
        super().__init__(message, context=ctx)


class DownloadRejectedError(UserError):
    """The server refused a download; retrying will not help.

    Typically indicates:
        - HTTP 4xx responses (a stale or mistyped url)
        - A local source file that does not exist
    """
    def __init__(
        self,
        message: str | None = None,
        url: str | None = None,
        error: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if url:
            ctx["url"] = url
        if error:
            ctx["error"] = error
        if message is None:
            message = f"Download failed: {url or 'unknown url'}"
        super().__init__(message, context=ctx)


class ChecksumMismatchError(SystemError):
    """Downloaded artifact does not match the recorded sha256."""
    def __init__(
        self,
        path: str,
        expected: str,
        actual: str,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        ctx["path"] = path
        ctx["expected"] = expected
        ctx["actual"] = actual
        super().__init__("SHA256 mismatch", context=ctx)


class BuildError(SystemError):
    """A build step exited non-zero. ``log`` holds the captured output."""
    def __init__(
        self,
        name: str,
        command: str,
        returncode: int,
        log: str = "",
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        self.log = log
        ctx["package"] = name
        ctx["command"] = command
        ctx["returncode"] = returncode
        super().__init__(f"Failed to build {name}", context=ctx)


class CacheWriteError(SystemError):
    """The cache could not be written.

    Typically indicates:
        - File system permission issues
        - Disk space exhaustion
        - Read-only file system
    """
    def __init__(
        self,
        message: str | None = None,
        path: str | None = None,
        error: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if path:
            ctx["path"] = path
        if error:
            ctx["error"] = error
        if message is None:
            message = "Cache write failed"
        super().__init__(message, context=ctx)


def retry_on_transient(
    max_retries: int = 3,
    base_delay: float = 1.0,
    backoff: float = 2.0
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Retry a function on transient errors with exponential backoff.

    Args:
        max_retries: Total number of attempts before giving up.
        base_delay: Initial delay between attempts in seconds.
        backoff: Multiplier for delay to implement exponential backoff.

    Returns:
        A decorator that applies the retry logic to the decorated function.

    Example:
        @retry_on_transient(max_retries=2, base_delay=0.5)
        def download():
            ...

    Note:
        - Only retries on TransientError exceptions.
        - Logs each retry attempt with context information.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except TransientError as e:
                    if attempt == max_retries:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=max_retries,
                            error=str(e),
                            context=e.context
                        )
                        raise

                    delay = base_delay * (backoff ** (attempt - 1))
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_retries,
                        delay_seconds=delay,
                        error=str(e),
                        context=e.context
                    )
                    time.sleep(delay)

            raise RuntimeError("retry_on_transient requires max_retries >= 1")

        return wrapper

    return decorator


# CLI Error Message Templates

ERROR_TEMPLATES = {
    FormulaUnavailableError: (
        "Error: {message}\n"
        "   Suggestion: Try 'brewengine search {package}' to find similar formulae"
    ),
    AmbiguousFormulaError: (
        "Error: {message}"
    ),
    CyclicDependencyError: (
        "Error: Dependency cycle: {cycle}"
    ),
    AlreadyInstalledError: (
        "Warning: {package} {version} is already installed\n"
        "   To reinstall, run 'brewengine install --force {package}'"
    ),
    DependentsExistError: (
        "Error: {message}\n"
        "   You can override this and force removal with 'brewengine uninstall --force {package}'"
    ),
    LinkConflictError: (
        "Error: {message}\n"
        "   Conflicting files: {conflicts}"
    ),
    DownloadRejectedError: (
        "Error: Download failed: {url}\n"
        "   {error}"
    ),
    NetworkError: (
        "Error: Download failed: {url}\n"
        "   {error}"
    ),
    ChecksumMismatchError: (
        "Error: SHA256 mismatch\n"
        "   Expected: {expected}\n"
        "     Actual: {actual}\n"
        "    Archive: {path}"
    ),
    BuildError: (
        "Error: Failed to build {package}\n"
        "   Command: {command}\n"
        "   Exit Code: {returncode}"
    ),
    CacheWriteError: (
        "Error: Cache write failed: {error}\n"
        "   Location: {path}\n"
        "   Fix: Check permissions and free disk space"
    ),
    TransientError: (
        "Error: Temporary failure: {message}\n"
        "   This may resolve itself - try again in a moment"
    ),
    UserError: (
        "Error: {message}"
    ),
    SystemError: (
        "Error: {message}\n"
        "   Please check your system configuration and try again"
    ),
    BrewError: (
        "Error: {message}"
    ),
}


def format_error_message(error: BrewError) -> str:
    """Formats an error message for CLI display based on the error type.

    The most specific template in the exception's MRO wins.

    Args:
        error: The BrewError instance to format.

    Returns:
        A formatted string message for CLI display.
    """
    template = next(
        (ERROR_TEMPLATES[cls] for cls in type(error).__mro__ if cls in ERROR_TEMPLATES),
        ERROR_TEMPLATES[BrewError],
    )
    try:
        return template.format(**{**error.context, "message": error.message})
    except KeyError:
        return f"Error: {error.message}"
