"""Registry of live execution attempts, at most one per card."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from filelock import FileLock, Timeout

from kanban_agent.execution.backend.base import AgentProcess

logger = logging.getLogger(__name__)


class AttemptConflictError(RuntimeError):
    """Another process is running an attempt for the same card."""


@dataclass(slots=True)
class AttemptHandle:
    """Cancellation handle of one attempt."""

    card_id: int
    process: AgentProcess | None = None
    superseded: bool = False
    card_lock: FileLock | None = None


class ActiveAttempts:
    """Map from card id to the handle of its live attempt.

    Every write an attempt makes goes through ``persisting``; the lock held
    there is the same one ``register`` takes to mark the prior attempt as
    superseded, so a stale attempt can never write after its successor began.

    With ``lock_dir`` set, a live attempt also holds a per-card file lock so
    attempts started from other processes are rejected instead of racing.
    """

    def __init__(self, lock_dir: Path | None = None) -> None:
        self.lock_dir = lock_dir
        self._lock = threading.RLock()
        self._live: dict[int, AttemptHandle] = {}

    def lock_path(self, card_id: int) -> Path | None:
        if self.lock_dir is None:
            return None
        return self.lock_dir / f"card-{card_id}.lock"

    def register(self, card_id: int) -> tuple[AttemptHandle, bool]:
        """Install a new handle; terminate and supersede the prior one if any.

        Returns the new handle and whether a live attempt was superseded.
        Raises ``AttemptConflictError`` when another process owns the card.
        """

        with self._lock:
            prior = self._live.get(card_id)
            if prior is not None:
                card_lock, prior.card_lock = prior.card_lock, None
            else:
                card_lock = self._acquire_card_lock(card_id)
            handle = AttemptHandle(card_id=card_id, card_lock=card_lock)
            self._live[card_id] = handle
            if prior is not None:
                prior.superseded = True
        if prior is not None:
            logger.info("Superseding live attempt for card %s", card_id)
            if prior.process is not None:
                prior.process.terminate()
        return handle, prior is not None

    def attach(self, handle: AttemptHandle, process: AgentProcess) -> bool:
        """Bind a spawned process; returns False when the attempt is already stale."""

        with self._lock:
            if not handle.superseded:
                handle.process = process
                return True
        process.terminate()
        return False

    def release(self, handle: AttemptHandle) -> None:
        with self._lock:
            if self._live.get(handle.card_id) is handle:
                del self._live[handle.card_id]
            card_lock, handle.card_lock = handle.card_lock, None
        if card_lock is not None:
            card_lock.release()

    def is_live(self, card_id: int) -> bool:
        with self._lock:
            return card_id in self._live

    @contextmanager
    def persisting(self, handle: AttemptHandle) -> Iterator[bool]:
        """Hold the registry lock; yields whether the attempt may still write."""

        with self._lock:
            yield not handle.superseded

    def _acquire_card_lock(self, card_id: int) -> FileLock | None:
        lock_path = self.lock_path(card_id)
        if lock_path is None:
            return None
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        # Released from whichever thread ends the attempt.
        card_lock = FileLock(str(lock_path), thread_local=False)
        try:
            card_lock.acquire(timeout=0)
        except Timeout as error:
            raise AttemptConflictError(
                f"Card {card_id} already has a running execution",
            ) from error
        return card_lock
