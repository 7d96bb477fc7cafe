from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class TouchResult(str, Enum):
    """Outcome of a best-effort expiry extension.

    - EXTENDED: the record existed and its expiry was rewritten
    - MISSING: no record with that id; nothing was created
    - FAILED: the storage write failed and was logged, not raised
    """

    EXTENDED = "extended"
    MISSING = "missing"
    FAILED = "failed"


@dataclass
class SessionRecord:
    session_id: str
    content: str
    expires: datetime

    def is_live(self, now: datetime) -> bool:
        return self.expires >= now


@dataclass
class UserCredential:
    user_id: str
    access_token: str
    refresh_token: Optional[str] = None
