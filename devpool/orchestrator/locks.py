"""Named inter-process locks built on atomic directory creation.

A lock named ``ports`` is the directory ``{lock_dir}/ports.lock``.  Creating
it with ``mkdir`` either succeeds (the lock is ours) or fails because it
exists (someone else holds it).  Holders write an ``owner`` file inside the
directory with a random token, their pid and the acquisition time.

A lock whose directory is older than ``stale_after`` seconds is presumed
abandoned by a crashed holder and is reclaimed by the next acquirer.  If a
slow holder's lock was reclaimed in the meantime, its ``release`` finds a
different owner token and leaves the new holder's lock alone.

Critical sections are short JSON read-modify-write cycles.  Never hold a
lock across a clone, a container start or a network call.
"""

from __future__ import annotations

import contextlib
import json
import os
import re
import secrets
import shutil
import time
from collections.abc import AsyncIterator
from functools import partial
from pathlib import Path

import anyio
from anyio import to_thread
from loguru import logger

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
OWNER_FILE = "owner"


class LockTimeoutError(RuntimeError):
    """Raised when a lock could not be acquired within the requested timeout."""

    def __init__(self, name: str, timeout: float) -> None:
        self.name = name
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock '{name}'")


class NamedLock:
    """One acquisition of a directory lock.

    Each instance carries its own owner token, so create a fresh instance per
    acquisition.  All methods are synchronous and non-blocking; waiting is the
    caller's business (see ``LockManager``).
    """

    def __init__(self, path: Path, *, stale_after: float = 60.0, poll_interval: float = 0.1) -> None:
        self.path = path
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self._token: str | None = None

    @property
    def name(self) -> str:
        return self.path.name.removesuffix(".lock")

    @property
    def held(self) -> bool:
        return self._token is not None

    def try_acquire(self) -> bool:
        """Attempt to create the lock directory.  Returns ``True`` on success."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.path.mkdir()
        except FileExistsError:
            return False

        token = secrets.token_hex(16)
        owner = {"token": token, "pid": os.getpid(), "acquired_at": time.time()}
        (self.path / OWNER_FILE).write_text(json.dumps(owner), encoding="utf-8")
        self._token = token
        return True

    def age(self) -> float | None:
        """Seconds since the lock directory was created, or ``None`` if it is gone."""
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return None
        return max(0.0, time.time() - mtime)

    def owner_token(self) -> str | None:
        try:
            raw = (self.path / OWNER_FILE).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return json.loads(raw).get("token")
        except (json.JSONDecodeError, AttributeError):
            return None

    def force_reclaim_if_stale(self) -> bool:
        """Remove the lock if it is older than ``stale_after``.

        The directory is first renamed to a unique tombstone, so when several
        waiters race to reclaim the same lock only one removal happens.
        Returns ``True`` if this call reclaimed it (or it vanished meanwhile).
        """
        age = self.age()
        if age is None:
            return True
        if age <= self.stale_after:
            return False

        tombstone = self.path.with_name(f".{self.path.name}.stale-{secrets.token_hex(4)}")
        try:
            os.rename(self.path, tombstone)
        except FileNotFoundError:
            return True
        except OSError as exc:
            logger.debug("Could not reclaim stale lock {}: {}", self.path, exc)
            return False

        shutil.rmtree(tombstone, ignore_errors=True)
        logger.warning("Reclaimed stale lock '{}' (age {:.1f}s > {:.0f}s)", self.name, age, self.stale_after)
        return True

    def release(self) -> bool:
        """Release the lock if this instance still owns it.  Idempotent.

        Returns ``False`` when the lock was not held, or when it was reclaimed
        and is now owned by someone else (that lock is left in place).
        """
        token, self._token = self._token, None
        if token is None:
            return False

        current = self.owner_token()
        if current != token:
            if self.path.exists():
                logger.warning(
                    "Lock '{}' was reclaimed by another holder while held; leaving it in place",
                    self.name,
                )
            return False

        shutil.rmtree(self.path, ignore_errors=True)
        return True


class LockManager:
    """Acquire and release named locks under one directory."""

    def __init__(self, lock_dir: str | Path, *, stale_after: float = 60.0, poll_interval: float = 0.1) -> None:
        self._lock_dir = Path(lock_dir)
        self._stale_after = stale_after
        self._poll_interval = poll_interval
        self._held: dict[str, NamedLock] = {}

    @property
    def lock_dir(self) -> Path:
        return self._lock_dir

    def lock(self, name: str) -> NamedLock:
        """Build a fresh (unacquired) ``NamedLock`` for ``name``."""
        if not _NAME_RE.match(name):
            msg = f"Invalid lock name: {name!r}"
            raise ValueError(msg)
        return NamedLock(
            self._lock_dir / f"{name}.lock",
            stale_after=self._stale_after,
            poll_interval=self._poll_interval,
        )

    async def acquire(self, name: str, timeout: float | None = None) -> NamedLock:
        """Block (asynchronously) until the lock is ours.

        Stale locks are reclaimed and retried immediately.  Raises
        ``LockTimeoutError`` if ``timeout`` seconds pass first.
        """
        lock = self.lock(name)
        deadline = None if timeout is None else anyio.current_time() + timeout

        while True:
            if await to_thread.run_sync(lock.try_acquire):
                self._held[name] = lock
                return lock
            if await to_thread.run_sync(lock.force_reclaim_if_stale):
                continue
            if deadline is not None and anyio.current_time() >= deadline:
                raise LockTimeoutError(name, timeout)  # type: ignore[arg-type]
            await anyio.sleep(self._poll_interval)

    async def release(self, name: str) -> bool:
        """Release the lock last acquired under ``name`` through this manager."""
        lock = self._held.pop(name, None)
        if lock is None:
            return False
        return await to_thread.run_sync(lock.release)

    @contextlib.asynccontextmanager
    async def hold(self, name: str, timeout: float | None = None) -> AsyncIterator[NamedLock]:
        """``async with locks.hold("ports"):`` -- acquire, run, always release."""
        lock = await self.acquire(name, timeout=timeout)
        try:
            yield lock
        finally:
            if self._held.get(name) is lock:
                del self._held[name]
            with anyio.CancelScope(shield=True):
                await to_thread.run_sync(partial(NamedLock.release, lock))
