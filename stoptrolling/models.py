"""Dataclasses representing StopTrolling domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

BASE_HOUR = 8
SLOT_COUNT = 16


@dataclass(slots=True)
class User:
    id: str
    timezone: str | None = None


@dataclass(slots=True)
class HourSlot:
    """One hour-wide bucket; ``aligned`` is None until the slot has been rated."""

    start_hour: int
    body: str = ""
    aligned: Optional[bool] = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> HourSlot:
        aligned = d.get("aligned")
        return cls(
            start_hour=int(d.get("startHour", 0)),
            body=str(d.get("body") or ""),
            aligned=None if aligned is None else bool(aligned),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"startHour": self.start_hour, "body": self.body}
        if self.aligned is not None:
            d["aligned"] = self.aligned
        return d


@dataclass(slots=True)
class DayRecord:
    goal: str = ""
    hours: list[HourSlot] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> DayRecord:
        return cls(
            goal=str(d.get("goal") or ""),
            hours=[HourSlot.from_dict(h) for h in (d.get("hours") or [])],
        )

    def to_dict(self) -> dict[str, Any]:
        return {"goal": self.goal, "hours": [h.to_dict() for h in self.hours]}

    def index_of(self, start_hour: int) -> int:
        """Return the slot index for ``start_hour`` or -1 when it is not on the grid."""
        for i, slot in enumerate(self.hours):
            if slot.start_hour == start_hour:
                return i
        return -1


@dataclass(slots=True)
class RemoteDay:
    id: str
    date: date
    goal: str = ""


class RatingStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SETTLING = "settling"


@dataclass(slots=True)
class ClassificationResult:
    ok: bool
    reason: str


@dataclass(slots=True)
class TokenRecord:
    access_token: str
    expires_at: Optional[datetime]
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: str = "bearer"

    @classmethod
    def from_row(cls, row: Any) -> TokenRecord:
        raw_expiry = row["expires_at"]
        expires_at = datetime.fromisoformat(raw_expiry) if raw_expiry else None
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=expires_at,
            scope=row["scope"],
            token_type=row["token_type"] or "bearer",
        )

    def to_row(self, user_id: str) -> dict[str, Any]:
        return {
            "user_id": user_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "scope": self.scope,
            "token_type": self.token_type or "bearer",
        }


@dataclass(slots=True)
class PkceState:
    code_verifier: str
    oauth_state: str


@dataclass(slots=True)
class DailyDigest:
    date: date
    dots: list[Optional[bool]]
    score: int
    text: str


@dataclass(slots=True)
class DigestResult:
    user_id: str
    ok: bool
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"user_id": self.user_id, "ok": self.ok}
        if self.reason is not None:
            d["reason"] = self.reason
        return d


__all__ = [
    "BASE_HOUR",
    "SLOT_COUNT",
    "User",
    "HourSlot",
    "DayRecord",
    "RemoteDay",
    "RatingStatus",
    "ClassificationResult",
    "TokenRecord",
    "PkceState",
    "DailyDigest",
    "DigestResult",
]
