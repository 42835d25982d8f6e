"""Exceptions raised by the credential pool and the retry coordinator."""

from datetime import datetime
from typing import Optional


class ProxyError(Exception):
    """Base class for proxy errors."""


class CredentialNotFound(ProxyError):
    def __init__(self, credential_id: str):
        super().__init__(f"Credential {credential_id} not found")
        self.credential_id = credential_id


class PoolExhausted(ProxyError):
    """No eligible credential is left in the pool."""

    def __init__(self, message: str = "No available API keys"):
        super().__init__(message)


class UpstreamError(ProxyError):
    """A failed upstream call, classified by its HTTP status.

    ``reset_at`` carries the instant a rate limit lifts when the upstream
    reported one.
    """

    def __init__(
        self,
        status: int,
        message: str,
        error_type: str = "upstream_error",
        reset_at: Optional[datetime] = None,
        is_stream: bool = False,
    ):
        super().__init__(message)
        self.status = status
        self.message = message
        self.error_type = error_type
        self.reset_at = reset_at
        self.is_stream = is_stream

    @property
    def is_rate_limit(self) -> bool:
        return self.status == 429

    @property
    def is_server_error(self) -> bool:
        return self.status >= 500

    def __repr__(self) -> str:
        return f"UpstreamError(status={self.status}, message={self.message!r})"


class StreamInterrupted(UpstreamError):
    """Upstream failed after part of a streaming response was delivered."""

    def __init__(self, message: str):
        super().__init__(502, message, error_type="stream_error", is_stream=True)
