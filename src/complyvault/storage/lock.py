"""
Single-writer run lock for the evidence ledger.

The ledger's append-only contract only holds with one writer. Scheduled and
manual invocations can overlap, so every writing command takes an exclusive
lock file created with O_CREAT | O_EXCL. The file records the holder's pid,
host and start time.

A lock left behind by a process that no longer exists on this host is
reclaimed. Reclaiming renames the stale file aside before removing it, so two
processes that find the same stale lock cannot both end up holding it. A
lock held by another host is never reclaimed automatically; remove it by
hand after confirming the other run is gone.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import uuid
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import Any

logger = logging.getLogger(__name__)


class RunLockError(Exception):
    """Raised when another run holds the lock."""

    def __init__(self, message: str, holder: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.holder = holder or {}


class RunLock:
    """
    Exclusive advisory lock file.

    Example:
        with RunLock(ledger.lock_path, purpose="run"):
            ...  # only one writer here

    Attributes:
        path: Lock file location.
        purpose: Free text recorded in the lock file.
    """

    def __init__(self, path: Path, purpose: str = "run") -> None:
        self.path = Path(path)
        self.purpose = purpose
        self._held = False

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            RunLockError: If a live holder exists.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            {
                "pid": os.getpid(),
                "host": socket.gethostname(),
                "purpose": self.purpose,
                "started_at": datetime.now(UTC).isoformat(),
            }
        )

        for _ in range(3):
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self._read_holder(self.path)
                if self._is_stale(holder):
                    self._reclaim(holder)
                    continue
                raise RunLockError(
                    f"Ledger is locked by another run ({self._describe(holder)})",
                    holder,
                )
            with os.fdopen(fd, "w") as f:
                f.write(payload)
            self._held = True
            logger.debug(f"Acquired lock {self.path}")
            return

        raise RunLockError(f"Could not acquire lock {self.path}")

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.path.unlink(missing_ok=True)
        finally:
            self._held = False
        logger.debug(f"Released lock {self.path}")

    @property
    def held(self) -> bool:
        return self._held

    def _reclaim(self, holder: dict[str, Any]) -> bool:
        """
        Remove a stale lock without racing another process doing the same.

        The lock file is renamed aside first; only one contender can win the
        rename. If what was moved is no longer the stale holder, another
        process took the lock in between, and the file is linked back.

        Returns:
            True if the stale lock was removed by this process.
        """
        aside = self.path.with_name(f"{self.path.name}.stale-{uuid.uuid4().hex[:8]}")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return False

        if self._read_holder(aside) != holder:
            try:
                os.link(aside, self.path)
            except FileExistsError:
                logger.error(f"Lock {self.path} was replaced while reclaiming it")
            aside.unlink(missing_ok=True)
            return False

        logger.warning(f"Reclaimed stale lock {self.path} held by {holder}")
        aside.unlink(missing_ok=True)
        return True

    @staticmethod
    def _read_holder(path: Path) -> dict[str, Any]:
        try:
            with open(path) as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (OSError, json.JSONDecodeError):
            return {}

    @staticmethod
    def _is_stale(holder: dict[str, Any]) -> bool:
        """A holder is stale if it ran on this host and its pid is gone."""
        if holder.get("host") != socket.gethostname():
            return False
        pid = holder.get("pid")
        if not isinstance(pid, int):
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            # Process exists but belongs to another user
            return False
        return False

    @staticmethod
    def _describe(holder: dict[str, Any]) -> str:
        if not holder:
            return "unknown holder"
        return (
            f"pid {holder.get('pid')} on {holder.get('host')}, "
            f"{holder.get('purpose')} since {holder.get('started_at')}"
        )

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
