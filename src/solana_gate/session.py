from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Set, Tuple

from .errors import AlreadyOpen

log = logging.getLogger("gate.session")


class SessionRegistry:
    """At most one in-flight verification per session key.

    Lives for the process lifetime and starts empty; the store invariants are
    what keep claims safe across restarts. Also routes free-text replies to
    the verification waiting on them.
    """

    def __init__(self) -> None:
        self._open: Set[int] = set()
        self._inboxes: Dict[int, Tuple[int, asyncio.Queue[str]]] = {}

    def open(self, session_key: int) -> None:
        if session_key in self._open:
            raise AlreadyOpen(session_key)
        self._open.add(session_key)
        log.debug("Session %s opened", session_key)

    def close(self, session_key: int) -> None:
        self._open.discard(session_key)
        self._inboxes.pop(session_key, None)
        log.debug("Session %s closed", session_key)

    def is_open(self, session_key: int) -> bool:
        return session_key in self._open

    @asynccontextmanager
    async def hold(self, session_key: int) -> AsyncIterator[None]:
        self.open(session_key)
        try:
            yield
        finally:
            self.close(session_key)

    def deliver(self, session_key: int, user_id: int, text: str) -> bool:
        """Hands a reply to a waiting verification. False if nobody is waiting for this user."""
        entry = self._inboxes.get(session_key)
        if entry is None or entry[0] != user_id:
            return False
        entry[1].put_nowait(text)
        return True

    async def wait_for_reply(
        self, session_key: int, user_id: int, timeout_s: Optional[float]
    ) -> str:
        """Next reply from user_id in this session; raises asyncio.TimeoutError."""
        entry = self._inboxes.get(session_key)
        if entry is None or entry[0] != user_id:
            entry = (user_id, asyncio.Queue())
            self._inboxes[session_key] = entry
        return await asyncio.wait_for(entry[1].get(), timeout_s)
