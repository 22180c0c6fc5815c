"""Local filesystem document store.

Stores each document as a JSON file under the state directory::

    {state_dir}/{name}.json

Uses ``anyio.to_thread.run_sync`` for non-blocking file I/O.

Writes are atomic: data is written to a temporary file in the same directory,
then renamed over the target path.  Concurrent readers see either the old or
the new document, never a torn one.

A document that cannot be parsed is treated as empty.  That loses whatever
the file held, but keeps every command and the poll loop running.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from functools import partial
from pathlib import Path

from anyio import to_thread
from loguru import logger


class LocalDocumentStore:
    """Local filesystem implementation of the DocumentStore protocol."""

    def __init__(self, state_dir: str | Path) -> None:
        self._base = Path(state_dir)

    @property
    def base(self) -> Path:
        return self._base

    def path(self, name: str) -> Path:
        return self._base / f"{name}.json"

    async def read(self, name: str) -> dict[str, dict]:
        return await to_thread.run_sync(partial(_read_document, self.path(name)))

    async def write(self, name: str, data: dict[str, dict]) -> None:
        payload = json.dumps(data, indent=2, sort_keys=True)
        await to_thread.run_sync(partial(_atomic_write, self.path(name), payload))


# -- Sync helpers (run in thread pool) -----------------------------------------


def _read_document(path: Path) -> dict[str, dict]:
    """Read a JSON object.  Missing, corrupt or non-object files yield ``{}``."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}

    if not raw.strip():
        return {}

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("State file {} is corrupt ({}); treating as empty", path, exc)
        return {}

    if not isinstance(data, dict):
        logger.warning("State file {} does not hold a JSON object; treating as empty", path)
        return {}
    return data


def _atomic_write(path: Path, data: str) -> None:
    """Write data atomically: temp file + rename.

    The temp file is created in the same directory so ``os.replace`` is
    atomic on POSIX.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.write("\n")
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise
