"""Per-item poll state: processed markers, failure records and cleanup marks.

The table lives in the ``poll/processed`` document, keyed by item key.  An
item is either ``processed`` (launched successfully; never launched again) or
``error`` (failed; retried according to its error kind's policy).
"""

from __future__ import annotations

import random
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import ValidationError

from devpool.orchestrator.models.enums import ItemState, PollErrorKind
from devpool.orchestrator.models.poll import ErrorRecord, ItemRecord
from devpool.orchestrator.polling.errors import calculate_backoff, is_retryable, max_attempts

if TYPE_CHECKING:
    from devpool.orchestrator.locks import LockManager
    from devpool.orchestrator.store.base import DocumentStore

ITEMS_DOCUMENT = "poll/processed"
ITEMS_LOCK = "poll-state"


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class ItemStateManager:
    """Read and update the poll-item state table."""

    def __init__(self, store: DocumentStore, locks: LockManager, *, rng: random.Random | None = None) -> None:
        self._store = store
        self._locks = locks
        self._rng = rng

    # -- Reads -----------------------------------------------------------------

    async def get(self, key: str) -> ItemRecord | None:
        table = await self._store.read(ITEMS_DOCUMENT)
        return _parse(key, table.get(key))

    async def get_error(self, key: str) -> ErrorRecord | None:
        record = await self.get(key)
        if record is None or record.state != ItemState.ERROR:
            return None
        return record.error

    async def list_items(self, config_id: str | None = None) -> dict[str, ItemRecord]:
        table = await self._store.read(ITEMS_DOCUMENT)
        items: dict[str, ItemRecord] = {}
        for key, raw in table.items():
            record = _parse(key, raw)
            if record is not None and (config_id is None or record.config == config_id):
                items[key] = record
        return items

    async def is_processed(self, key: str) -> bool:
        record = await self.get(key)
        return record is not None and record.state == ItemState.PROCESSED

    async def should_retry(self, key: str, *, now: datetime | None = None) -> bool:
        """True when a failed item is due for another attempt."""
        error = await self.get_error(key)
        if error is None:
            return False
        if not is_retryable(error.type):
            return False
        if error.max_attempts > 0 and error.attempts >= error.max_attempts:
            return False
        if error.next_retry is not None and (now or datetime.now(UTC)) < _utc(error.next_retry):
            return False
        return True

    async def should_skip(self, key: str) -> bool:
        """True when the item failed with a kind that is never retried."""
        error = await self.get_error(key)
        return error is not None and not is_retryable(error.type)

    async def is_exhausted(self, key: str) -> bool:
        """True when a retryable failure has used up its attempts."""
        error = await self.get_error(key)
        return (
            error is not None
            and is_retryable(error.type)
            and error.max_attempts > 0
            and error.attempts >= error.max_attempts
        )

    # -- Writes ----------------------------------------------------------------

    async def mark_error(
        self,
        key: str,
        config_id: str,
        kind: PollErrorKind | str,
        message: str,
        *,
        now: datetime | None = None,
    ) -> ErrorRecord:
        """Record a failed attempt and schedule the next one if the kind allows."""
        kind = PollErrorKind(kind)
        now = now or datetime.now(UTC)
        retryable = is_retryable(kind)

        async with self._locks.hold(ITEMS_LOCK):
            table = await self._store.read(ITEMS_DOCUMENT)
            current = _parse(key, table.get(key))
            previous = current.error if current is not None and current.state == ItemState.ERROR else None
            attempts = (previous.attempts if previous else 0) + 1
            error = ErrorRecord(
                type=kind,
                message=message,
                attempts=attempts,
                max_attempts=max_attempts(kind) if retryable else 0,
                next_retry=now + timedelta(seconds=calculate_backoff(attempts, self._rng)) if retryable else None,
                last_attempt=now,
            )
            table[key] = _dump(ItemRecord(state=ItemState.ERROR, config=config_id, error=error))
            await self._store.write(ITEMS_DOCUMENT, table)

        if not retryable:
            logger.error("{} failed permanently ({}): {}", key, kind, message)
        elif error.max_attempts and error.attempts >= error.max_attempts:
            logger.error("{} gave up after {} attempts ({}): {}", key, error.attempts, kind, message)
        else:
            logger.warning(
                "{} failed ({}, attempt {}), next retry at {}: {}",
                key,
                kind,
                error.attempts,
                error.next_retry.isoformat() if error.next_retry else "-",
                message,
            )
        return error

    async def mark_processed(self, key: str, config_id: str, **meta: object) -> ItemRecord:
        """Mark the item launched.  Replaces any error record."""
        now = datetime.now(UTC)

        def apply(current: ItemRecord | None) -> ItemRecord:
            return ItemRecord.model_validate({
                **meta,
                "state": ItemState.PROCESSED,
                "config": config_id,
                "processed_at": now,
            })

        return await self._mutate(key, apply)

    async def mark_terminal(self, key: str, *, now: datetime | None = None) -> ItemRecord | None:
        """Stamp ``terminal_since`` on a processed item (first call wins)."""
        when = now or datetime.now(UTC)

        def apply(current: ItemRecord | None) -> ItemRecord | None:
            if current is None or current.terminal_since is not None:
                return current
            return current.model_copy(update={"terminal_since": when})

        return await self._mutate(key, apply)

    async def clear_terminal(self, key: str) -> ItemRecord | None:
        """Drop ``terminal_since`` (the item came back to life before cleanup)."""

        def apply(current: ItemRecord | None) -> ItemRecord | None:
            if current is None or current.terminal_since is None:
                return current
            return current.model_copy(update={"terminal_since": None})

        return await self._mutate(key, apply)

    async def mark_cleaned(self, key: str, *, now: datetime | None = None) -> ItemRecord | None:
        when = now or datetime.now(UTC)

        def apply(current: ItemRecord | None) -> ItemRecord | None:
            if current is None:
                return None
            return current.model_copy(update={"cleaned_up_at": when})

        return await self._mutate(key, apply)

    async def clear(self, key: str) -> bool:
        """Forget the item entirely.  Returns ``False`` if it was unknown."""
        async with self._locks.hold(ITEMS_LOCK):
            table = await self._store.read(ITEMS_DOCUMENT)
            if table.pop(key, None) is None:
                return False
            await self._store.write(ITEMS_DOCUMENT, table)
        logger.info("Cleared poll state for {}", key)
        return True

    # -- Internal --------------------------------------------------------------

    async def _mutate(self, key: str, apply: Callable[[ItemRecord | None], ItemRecord | None]) -> ItemRecord:
        async with self._locks.hold(ITEMS_LOCK):
            table = await self._store.read(ITEMS_DOCUMENT)
            current = _parse(key, table.get(key))
            updated = apply(current)
            if updated is not None and updated is not current:
                table[key] = _dump(updated)
                await self._store.write(ITEMS_DOCUMENT, table)
        return updated  # type: ignore[return-value]


def _dump(record: ItemRecord) -> dict:
    return record.model_dump(mode="json", exclude_none=True)


def _parse(key: str, raw: dict | None) -> ItemRecord | None:
    if raw is None:
        return None
    try:
        return ItemRecord.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Ignoring malformed poll state for {}: {}", key, exc)
        return None
