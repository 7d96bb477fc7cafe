from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from lockgate.logging import get_logger
from lockgate.storage.models import SessionRecord, TouchResult, UserCredential
from lockgate.storage.reconciler import (
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    ExpirationReconciler,
)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process session and credential store for tests and local runs.

    Mirrors the Postgres store contract, including lazy expiry on read and
    the armed-on-first-use background sweep.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.logger = get_logger(__name__)
        self.clock: Clock = clock or _utcnow
        self.sessions: Dict[str, SessionRecord] = {}
        self.users: Dict[str, UserCredential] = {}
        # Critical sections never await, so the lock only guards threaded callers
        self._data_lock = threading.RLock()
        self.reconciler = ExpirationReconciler(self, interval=sweep_interval)

    async def open(self) -> None:
        self.logger.info("memory_store_opened")

    async def close(self) -> None:
        await self.reconciler.stop()

    async def ping(self) -> bool:
        return True

    # sessions
    async def load_session(self, session_id: str) -> Optional[str]:
        self.reconciler.arm()
        with self._data_lock:
            record = self.sessions.get(session_id)
            if record is None or not record.is_live(self.clock()):
                return None
            return record.content

    async def save_session(
        self, session_id: str, content: str, expires_at: datetime
    ) -> None:
        self.reconciler.arm()
        with self._data_lock:
            self.sessions[session_id] = SessionRecord(
                session_id=session_id, content=content, expires=expires_at
            )

    async def touch_session(self, session_id: str, expires_at: datetime) -> TouchResult:
        self.reconciler.arm()
        with self._data_lock:
            record = self.sessions.get(session_id)
            if record is None:
                return TouchResult.MISSING
            record.expires = expires_at
            return TouchResult.EXTENDED

    async def destroy_session(self, session_id: str) -> None:
        self.reconciler.arm()
        with self._data_lock:
            self.sessions.pop(session_id, None)

    async def delete_expired_sessions(self) -> int:
        now = self.clock()
        with self._data_lock:
            stale = [
                sid for sid, record in self.sessions.items() if record.expires < now
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
        return len(stale)

    # credentials
    async def upsert_user_credential(
        self, user_id: str, access_token: str, refresh_token: Optional[str]
    ) -> None:
        self.reconciler.arm()
        with self._data_lock:
            self.users[user_id] = UserCredential(
                user_id=user_id,
                access_token=access_token,
                refresh_token=refresh_token,
            )

    async def get_user_credential(self, user_id: str) -> Optional[UserCredential]:
        self.reconciler.arm()
        with self._data_lock:
            return self.users.get(user_id)
