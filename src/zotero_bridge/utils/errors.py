"""
Unified error handling for Zotero Bridge.
"""


class ZoteroBridgeError(Exception):
    """Base exception for Zotero Bridge errors."""

    def __init__(self, message: str, suggestion: str | None = None):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion

    def __str__(self) -> str:
        if self.suggestion:
            return f"{self.message}. {self.suggestion}"
        return self.message


class ConfigurationError(ZoteroBridgeError):
    """One or more required settings are missing or invalid."""

    def __init__(self, problems: list[str], suggestion: str | None = None):
        self.problems = list(problems)
        lines = "\n".join(f"  - {problem}" for problem in self.problems)
        super().__init__(f"Invalid configuration:\n{lines}", suggestion)


class NotFoundError(ZoteroBridgeError):
    """Resource not found error."""
    pass


class APIError(ZoteroBridgeError):
    """Non-success response from the Zotero web API."""

    def __init__(self, status_code: int, message: str = "", suggestion: str | None = None):
        self.status_code = status_code
        super().__init__(format_api_error(status_code, message), suggestion)


class RateLimitError(APIError):
    """The web API asked the caller to back off (HTTP 429)."""

    def __init__(self, retry_after: float | None = None, message: str = ""):
        self.retry_after = retry_after
        suggestion = (
            f"Retry after {retry_after:g} seconds" if retry_after is not None else None
        )
        super().__init__(429, message, suggestion)


class DatabaseError(ZoteroBridgeError):
    """Database operation error."""
    pass


class DatabaseUnavailableError(DatabaseError):
    """The local Zotero database cannot be opened."""
    pass


def format_api_error(status_code: int, message: str = "") -> str:
    """Format an API error with appropriate message."""
    error_messages = {
        400: "Bad request. Please check your input parameters.",
        401: "Authentication required. Please set ZOTERO_API_KEY.",
        403: "Access denied. You don't have permission to access this library.",
        404: "Resource not found. Please check the item or collection key.",
        429: "Rate limit exceeded. Please wait before making more requests.",
        500: "Zotero server error. Please try again later.",
        503: "Zotero service unavailable. Please try again later.",
    }

    default_message = f"API error (status {status_code})"
    base_message = error_messages.get(status_code, default_message)

    if message:
        return f"Error: {base_message} Details: {message}"
    return f"Error: {base_message}"
