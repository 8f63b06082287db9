"""
Rolling per-session token ledger.

Layout per session:

- ``chatrelay:usage:{session_id}:window``: start of the current window,
  claimed with ``SET NX EX`` so only one writer can open a window;
- ``chatrelay:usage:{session_id}:tokens:{window_start}``: counter advanced
  with ``INCRBY``; a new window gets a fresh key, so a reset never races with
  an increment;
- ``chatrelay:usage:{session_id}:last_seen``: timestamp of the last update.

Every operation fails open: storage errors are logged and reported as
"no usage" / "update skipped".
"""

import time
from typing import Callable, Optional

from redis.asyncio import Redis

from chatrelay.logging_config import logger
from chatrelay.models import UsageRecord
from chatrelay.settings import settings

# Redis key templates
USAGE_WINDOW_KEY = "chatrelay:usage:{session_id}:window"
USAGE_TOKENS_KEY = "chatrelay:usage:{session_id}:tokens:{window_start}"
USAGE_LAST_SEEN_KEY = "chatrelay:usage:{session_id}:last_seen"


def _format_window_start(now: float) -> str:
    return f"{now:.3f}"


class UsageLedger:
    """Token usage ledger backed by Redis."""

    def __init__(
        self,
        redis: Redis,
        *,
        window_seconds: Optional[int] = None,
        quota: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.redis = redis
        self.window_seconds = window_seconds or settings.quota_window_seconds
        self.quota = quota or settings.token_quota
        self._clock = clock

    def _is_stale(self, window_start: str, now: float) -> bool:
        try:
            return now - float(window_start) > self.window_seconds
        except ValueError:
            return True

    async def _active_window(self, session_id: str, now: float) -> Optional[str]:
        raw = await self.redis.get(USAGE_WINDOW_KEY.format(session_id=session_id))
        if raw is None or self._is_stale(raw, now):
            return None
        return raw

    async def _claim_window(self, session_id: str, now: float) -> str:
        """
        Return the active window start, opening a new window when there is none.
        """
        window_key = USAGE_WINDOW_KEY.format(session_id=session_id)
        for _ in range(2):
            current = await self.redis.get(window_key)
            if current is not None and not self._is_stale(current, now):
                return current
            if current is not None:
                # Stale but not yet expired by Redis (clock skew between hosts).
                await self.redis.delete(window_key)

            candidate = _format_window_start(now)
            claimed = await self.redis.set(
                window_key, candidate, nx=True, ex=self.window_seconds
            )
            if claimed:
                return candidate
        # Lost the race twice; whatever is stored now is the window.
        current = await self.redis.get(window_key)
        return current if current is not None else _format_window_start(now)

    async def get_usage(self, session_id: str) -> int:
        """
        Tokens used by ``session_id`` in its current window; 0 when unknown.
        """
        try:
            now = self._clock()
            window_start = await self._active_window(session_id, now)
            if window_start is None:
                return 0
            raw = await self.redis.get(
                USAGE_TOKENS_KEY.format(session_id=session_id, window_start=window_start)
            )
            return int(raw or 0)
        except Exception:
            logger.warning(
                "Usage lookup failed for session %s; treating usage as 0",
                session_id,
                exc_info=True,
            )
            return 0

    async def add_usage(self, session_id: str, tokens: int) -> int:
        """
        Add ``tokens`` to the session's current window and return the new total.

        Returns 0 when the update could not be recorded.
        """
        if tokens <= 0:
            return await self.get_usage(session_id)

        try:
            now = self._clock()
            window_start = await self._claim_window(session_id, now)
            tokens_key = USAGE_TOKENS_KEY.format(
                session_id=session_id, window_start=window_start
            )
            total = await self.redis.incrby(tokens_key, tokens)
            await self.redis.expire(tokens_key, self.window_seconds)
            await self.redis.set(
                USAGE_LAST_SEEN_KEY.format(session_id=session_id),
                str(now),
                ex=self.window_seconds,
            )
        except Exception:
            logger.warning(
                "Usage update of %s tokens skipped for session %s",
                tokens,
                session_id,
                exc_info=True,
            )
            return 0

        logger.debug(
            "Session %s usage +%s -> %s (window=%s)", session_id, tokens, total, window_start
        )
        return int(total)

    async def get_record(self, session_id: str) -> Optional[UsageRecord]:
        try:
            now = self._clock()
            window_start = await self._active_window(session_id, now)
            if window_start is None:
                return None
            tokens = await self.redis.get(
                USAGE_TOKENS_KEY.format(session_id=session_id, window_start=window_start)
            )
            last_seen = await self.redis.get(
                USAGE_LAST_SEEN_KEY.format(session_id=session_id)
            )
        except Exception:
            logger.warning(
                "Usage record lookup failed for session %s", session_id, exc_info=True
            )
            return None

        return UsageRecord(
            session_id=session_id,
            tokens_used=int(tokens or 0),
            window_start=float(window_start),
            last_seen=float(last_seen) if last_seen is not None else float(window_start),
        )


__all__ = [
    "USAGE_LAST_SEEN_KEY",
    "USAGE_TOKENS_KEY",
    "USAGE_WINDOW_KEY",
    "UsageLedger",
]
