"""Credential pool with sticky rotation."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Collection, Dict, Optional, Tuple

from openrouter_proxy.errors import CredentialNotFound, PoolExhausted
from openrouter_proxy.events import (
    KEY_DEACTIVATED,
    KEY_REACTIVATED,
    KEY_ROTATION,
    KEY_SUCCESS,
    NEW_KEY_ADDED,
    RATE_LIMIT_HIT,
    EventSink,
    LoggingEventSink,
)
from openrouter_proxy.models import Credential, utcnow
from openrouter_proxy.store import CredentialStore

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 60
DEFAULT_FAILURE_THRESHOLD = 5

_NEVER_USED = datetime.min.replace(tzinfo=timezone.utc)


def _selection_order(credential: Credential) -> Tuple[bool, datetime]:
    # Never-used credentials sort ahead of every used one.
    if credential.last_used_at is None:
        return (False, _NEVER_USED)
    return (True, credential.last_used_at)


class CredentialPool:
    """Chooses which upstream credential to use and tracks its health.

    The pool keeps one *current* credential and hands it out until it
    becomes ineligible (rate limited or deactivated). Only the id of the
    current credential is cached; records are always read back from the
    store.
    """

    def __init__(
        self,
        store: CredentialStore,
        events: Optional[EventSink] = None,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.events: EventSink = events or LoggingEventSink()
        self.cooldown_seconds = cooldown_seconds
        self.failure_threshold = failure_threshold
        self._clock = clock or utcnow
        self._current_id: Optional[str] = None
        self._lock: asyncio.Lock = asyncio.Lock()

    @property
    def current_id(self) -> Optional[str]:
        return self._current_id

    async def initialize(self) -> None:
        async with self._lock:
            if self._current_id is None:
                await self._select(())

    async def select_credential(self, exclude: Collection[str] = ()) -> str:
        async with self._lock:
            credential = await self._select(exclude)
        return credential.secret

    async def get_credential(self, exclude: Collection[str] = ()) -> str:
        """Return the secret to use for the next upstream call.

        Args:
            exclude: secrets to avoid when another eligible credential exists

        Raises:
            PoolExhausted: if no credential is eligible
        """
        async with self._lock:
            current = await self._load_current()
            if (
                current is not None
                and current.is_eligible(self._clock())
                and current.secret not in exclude
            ):
                return current.secret
            credential = await self._select(exclude)
        return credential.secret

    async def report_success(self) -> None:
        async with self._lock:
            credential = await self._load_current()
        if credential is None:
            return

        credential.last_used_at = self._clock()
        credential.failure_count = 0
        await self._persist(credential, "report_success")
        self._emit(
            KEY_SUCCESS,
            {"key_id": credential.id, "last_used_at": credential.last_used_at},
        )

    async def report_failure(self, error: BaseException) -> bool:
        """Record a failed call against the current credential.

        Returns True when the failure was a rate limit. Bookkeeping errors are
        logged and never raised.
        """
        deactivated = False
        async with self._lock:
            credential = await self._load_current()
            if credential is None:
                return False

            now = self._clock()
            was_rate_limit = bool(getattr(error, "is_rate_limit", False))
            if was_rate_limit:
                reset_at = getattr(error, "reset_at", None)
                if reset_at is None:
                    reset_at = now + timedelta(seconds=self.cooldown_seconds)
                credential.rate_limit_reset_at = reset_at
                self._current_id = None
            else:
                credential.failure_count += 1
                if credential.failure_count >= self.failure_threshold:
                    credential.active = False
                    deactivated = True
                    self._current_id = None

        if was_rate_limit:
            logger.warning(
                "Rate limit hit (key=%s, reset_at=%s)",
                credential.secret_prefix(),
                credential.rate_limit_reset_at,
            )
            self._emit(
                RATE_LIMIT_HIT,
                {
                    "key_id": credential.id,
                    "reset_at": credential.rate_limit_reset_at,
                },
            )
        elif deactivated:
            logger.warning(
                "Deactivating key %s after %d failures",
                credential.secret_prefix(),
                credential.failure_count,
            )
            self._emit(
                KEY_DEACTIVATED,
                {
                    "key_id": credential.id,
                    "reason": "Too many failures",
                    "failure_count": credential.failure_count,
                },
            )

        await self._persist(credential, "report_failure")
        return was_rate_limit

    async def add_credential(self, secret: str) -> Credential:
        """Add a secret to the pool, or reactivate it if already known."""
        secret = secret.strip()
        if not secret:
            raise ValueError("API key is required")

        existing = await self.store.get_by_secret(secret)
        if existing is not None:
            existing.active = True
            existing.failure_count = 0
            existing.rate_limit_reset_at = None
            await self.store.upsert(existing)
            self._emit(KEY_REACTIVATED, {"key_id": existing.id})
            return existing

        credential = Credential(id=self.store.next_id(), secret=secret)
        await self.store.upsert(credential)
        self._emit(NEW_KEY_ADDED, {"key_id": credential.id})
        return credential

    async def get_status(self) -> Dict[str, object]:
        now = self._clock()
        records = await self.store.list_all()

        available_keys = sum(1 for key in records if key.is_eligible(now))
        rate_limited_keys = sum(1 for key in records if key.in_cooldown(now))
        inactive_keys = sum(1 for key in records if not key.active)

        return {
            "total_keys": len(records),
            "available_keys": available_keys,
            "rate_limited_keys": rate_limited_keys,
            "inactive_keys": inactive_keys,
            "current_key_id": self._current_id,
            "keys": [self._format_key_status(key, now) for key in records],
        }

    async def get_credential_status(
        self, credential_id: str
    ) -> Optional[Dict[str, object]]:
        try:
            credential = await self.store.get(credential_id)
        except CredentialNotFound:
            return None
        return self._format_key_status(credential, self._clock())

    async def _select(self, exclude: Collection[str]) -> Credential:
        # Caller holds self._lock.
        eligible = await self.store.list_eligible(self._clock())
        if not eligible:
            self._current_id = None
            logger.error("No available API keys")
            raise PoolExhausted()

        candidates = [key for key in eligible if key.secret not in exclude]
        if not candidates:
            candidates = eligible
        candidates.sort(key=_selection_order)
        credential = candidates[0]

        self._current_id = credential.id
        self._emit(
            KEY_ROTATION,
            {
                "key_id": credential.id,
                "last_used_at": credential.last_used_at,
                "failure_count": credential.failure_count,
            },
        )
        return credential

    async def _load_current(self) -> Optional[Credential]:
        if self._current_id is None:
            return None
        try:
            return await self.store.get(self._current_id)
        except CredentialNotFound:
            logger.error("Current key %s vanished from store", self._current_id)
            self._current_id = None
            return None

    async def _persist(self, credential: Credential, action: str) -> None:
        try:
            await self.store.upsert(credential)
        except Exception:
            logger.exception("Failed to persist key %s (%s)", credential.id, action)

    def _emit(self, event: str, fields: Dict[str, object]) -> None:
        try:
            self.events.emit(event, fields)
        except Exception:
            logger.exception("Event sink failed for %s", event)

    def _format_key_status(self, key: Credential, now: datetime) -> Dict[str, object]:
        if not key.active:
            status = "inactive"
        elif key.in_cooldown(now):
            status = "rate_limited"
        else:
            status = "active"
        return {
            "id": key.id,
            "key_prefix": key.secret_prefix(),
            "status": status,
            "active": key.active,
            "failure_count": key.failure_count,
            "last_used_at": key.last_used_at,
            "rate_limit_reset_at": key.rate_limit_reset_at,
            "created_at": key.created_at,
        }
