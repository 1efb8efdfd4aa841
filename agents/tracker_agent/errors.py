class TrackerError(RuntimeError):
    """Base error for tracker extraction runs."""


class ConfigurationError(TrackerError):
    """Required settings (credentials) are missing."""


class AuthenticationError(TrackerError):
    """Login did not leave the identity host, or a bot challenge was shown."""


class NavigationTimeoutError(TrackerError):
    """A report page did not settle within its bound."""


class ExtractionMismatchError(TrackerError):
    """A rendered row matched none of the known selectors or state shapes."""

    def __init__(self, message: str, row_index: int = -1) -> None:
        super().__init__(message)
        self.row_index = row_index


class SessionTeardownError(TrackerError):
    """Closing the browser session failed. Logged, never escalated."""
