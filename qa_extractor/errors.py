"""Exceptions raised by the extraction orchestrator."""


class ExtractorError(Exception):
    """Base class for orchestrator errors."""


class PageLoadTimeout(ExtractorError):
    """The page session did not finish navigating in time."""

    def __init__(self, timeout: float):
        super().__init__(f"Page load timeout ({timeout:g}s)")
        self.timeout = timeout


class SessionClosedError(ExtractorError):
    """The page session is gone (closed by us, the user, or a crash)."""


class AgentProtocolError(ExtractorError):
    """The page agent replied with something we cannot interpret."""


class BackendError(ExtractorError):
    """The backend API returned a non-2xx response."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"API error ({status_code}): {body}")
        self.status_code = status_code
        self.body = body
