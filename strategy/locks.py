import itertools
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)


class LockTable:
    """Per position-key in-flight markers.

    Acquisition never waits: a caller that finds the key taken skips its work.
    The periodic sweep and the next account event re-evaluate the key, so a
    skipped attempt is always picked up again.

    Every hold carries an owner token. Releasing with a token that no longer
    owns the key is a no-op, so a flow whose key was discarded on close can
    never free a lock taken afterwards for the reopened position.
    """

    def __init__(self) -> None:
        self._held: Dict[str, int] = {}
        self._tokens = itertools.count(1)

    def try_acquire(self, key: str) -> Optional[int]:
        """Return an owner token, or None when the key is already held."""
        if key in self._held:
            return None
        token = next(self._tokens)
        self._held[key] = token
        return token

    def release(self, key: str, token: Optional[int] = None) -> bool:
        if key not in self._held:
            return False
        if token is not None and self._held[key] != token:
            logger.debug("Stale release of %s ignored", key)
            return False
        del self._held[key]
        return True

    def discard(self, key: str) -> None:
        if self._held.pop(key, None) is not None:
            logger.debug("Dropping lock for closed position %s", key)

    def owns(self, key: str, token: int) -> bool:
        return self._held.get(key) == token

    def is_locked(self, key: str) -> bool:
        return key in self._held

    def __contains__(self, key: str) -> bool:
        return key in self._held

    def __len__(self) -> int:
        return len(self._held)

    @asynccontextmanager
    async def held(self, key: str) -> AsyncIterator[bool]:
        """Yield True with the key held, or False when another flow owns it."""
        token = self.try_acquire(key)
        try:
            yield token is not None
        finally:
            if token is not None:
                self.release(key, token)
