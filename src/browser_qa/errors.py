"""Exception hierarchy shared by the pool, the router and the agent modes."""

from __future__ import annotations

from typing import Optional


class BrowserQAError(Exception):
    """Base class for all errors raised by browser-qa."""


class NotFoundError(BrowserQAError):
    """Raised when an instance or tab reference cannot be resolved."""


class NoMatchError(NotFoundError):
    """Raised when no tab URL matches a fragment."""


class DuplicateNameError(BrowserQAError):
    """Raised when spawning an instance under a name that is already taken."""


class OutOfRangeError(BrowserQAError):
    """Raised when a tab index is outside the open tab range."""


class LastTabError(BrowserQAError):
    """Raised when trying to close the only remaining tab."""


class NoActiveInstanceError(BrowserQAError):
    """Raised when no active browser instance is available."""


class LaunchError(BrowserQAError):
    """Raised when a browser process fails to start.

    ``diagnostics`` carries whatever the process wrote to stderr before it
    died or the launch timed out.
    """

    def __init__(self, message: str, diagnostics: Optional[str] = None) -> None:
        super().__init__(message)
        self.diagnostics = diagnostics or ""

    def __str__(self) -> str:
        base = super().__str__()
        if self.diagnostics:
            return f"{base}\n{self.diagnostics.strip()}"
        return base


class AbortedError(BrowserQAError):
    """Raised when a command is cancelled by its caller."""

    def __init__(self, message: str = "Aborted") -> None:
        super().__init__(message)


class ExecutionError(BrowserQAError):
    """Raised when the AI capability or a page primitive fails."""
