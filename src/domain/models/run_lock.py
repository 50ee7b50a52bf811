from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class RunLock:
    """Time-bounded mutual-exclusion token for one named batch job."""

    key: str
    holder: str
    expires_at: datetime
    acquired_at: datetime
    updated_at: datetime

    def is_held(self, now: datetime) -> bool:
        return self.expires_at > now

    def is_held_by(self, owner: str, now: datetime) -> bool:
        return self.holder == owner and self.is_held(now)
