"""Data models for upstream credential management."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class Credential:
    """One upstream secret and its operational health."""

    id: str
    secret: str
    active: bool = True
    last_used_at: Optional[datetime] = None
    rate_limit_reset_at: Optional[datetime] = None
    failure_count: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def in_cooldown(self, now: datetime) -> bool:
        return self.rate_limit_reset_at is not None and self.rate_limit_reset_at > now

    def is_eligible(self, now: datetime) -> bool:
        return self.active and not self.in_cooldown(now)

    def secret_prefix(self) -> str:
        if len(self.secret) <= 13:
            return self.secret[:3] + "..."
        return f"{self.secret[:10]}...{self.secret[-3:]}"

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "secret": self.secret,
            "active": self.active,
            "last_used_at": _format_timestamp(self.last_used_at),
            "rate_limit_reset_at": _format_timestamp(self.rate_limit_reset_at),
            "failure_count": self.failure_count,
            "created_at": _format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Credential":
        created_at = _parse_timestamp(data.get("created_at"))  # type: ignore[arg-type]
        return cls(
            id=str(data["id"]),
            secret=str(data["secret"]),
            active=bool(data.get("active", True)),
            last_used_at=_parse_timestamp(data.get("last_used_at")),  # type: ignore[arg-type]
            rate_limit_reset_at=_parse_timestamp(
                data.get("rate_limit_reset_at")  # type: ignore[arg-type]
            ),
            failure_count=int(data.get("failure_count", 0)),  # type: ignore[arg-type]
            created_at=created_at or utcnow(),
        )
