"""Bounded retry loop that ties credential selection to upstream attempts."""

import logging
from typing import Awaitable, Callable, Collection, List, Protocol, TypeVar

from openrouter_proxy.errors import UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

T = TypeVar("T")


class CredentialPool(Protocol):
    async def get_credential(self, exclude: Collection[str] = ...) -> str: ...

    async def report_success(self) -> None: ...

    async def report_failure(self, error: BaseException) -> bool: ...


class RetryCoordinator:
    """Runs one logical upstream call with up to ``max_attempts`` attempts.

    Rate limits and server errors (>= 500) are retried with another
    credential while attempts remain; any other ``UpstreamError`` is raised
    immediately. ``PoolExhausted`` from the pool always propagates.
    """

    def __init__(self, pool: CredentialPool, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.pool = pool
        self.max_attempts = max_attempts

    async def run(self, attempt: Callable[[str], Awaitable[T]]) -> T:
        failed_secrets: List[str] = []

        for attempt_number in range(1, self.max_attempts + 1):
            secret = await self.pool.get_credential(exclude=failed_secrets)

            try:
                result = await attempt(secret)
            except UpstreamError as exc:
                was_rate_limit = await self.pool.report_failure(exc)
                retryable = was_rate_limit or exc.is_server_error
                if not retryable or attempt_number >= self.max_attempts:
                    logger.warning(
                        "Upstream call failed (status=%s, attempt=%s/%s): %s",
                        exc.status,
                        attempt_number,
                        self.max_attempts,
                        exc.message,
                    )
                    raise
                if not was_rate_limit:
                    failed_secrets.append(secret)
                logger.info(
                    "Retrying upstream call (status=%s, attempt=%s/%s)",
                    exc.status,
                    attempt_number,
                    self.max_attempts,
                )
                continue

            await self.pool.report_success()
            return result

        # Every iteration either returns or raises.
        raise AssertionError("unreachable")
