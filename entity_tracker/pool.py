"""Per-game serialization.

Every game's roster is processed by one segment at a time. The pool lazily
creates a lock per game on first access; different games never contend.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List

logger = logging.getLogger(__name__)


class GameLockPool:
    """Manages one ``threading.Lock`` per game id."""

    def __init__(self) -> None:
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    @staticmethod
    def normalize_game_id(game_id: Any) -> int:
        """Validate a game id and return it as an int.

        Accepts positive ints and numeric strings. Raises ValueError for
        anything else (booleans, floats, non-numeric text, zero, negatives).
        """
        if isinstance(game_id, bool):
            raise ValueError(f"Invalid game ID {game_id!r}: must be a positive integer")
        if isinstance(game_id, int):
            value = game_id
        elif isinstance(game_id, str) and game_id.strip().isdigit():
            value = int(game_id.strip())
        else:
            raise ValueError(f"Invalid game ID {game_id!r}: must be a positive integer")
        if value <= 0:
            raise ValueError(f"Invalid game ID {game_id!r}: must be a positive integer")
        return value

    def get(self, game_id: Any) -> threading.Lock:
        """Get or create the lock for the given game."""
        key = self.normalize_game_id(game_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
                logger.debug("GameLockPool: created lock for game %s", key)
            return lock

    @contextmanager
    def lock(self, game_id: Any) -> Iterator[int]:
        """Hold the game's lock; yields the normalized id."""
        key = self.normalize_game_id(game_id)
        with self.get(key):
            yield key

    def active_games(self) -> List[int]:
        with self._guard:
            return sorted(self._locks)
