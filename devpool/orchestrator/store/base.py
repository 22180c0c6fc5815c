"""Document store interface for shared orchestrator state.

Each concern (port table, job table, poll-item table) is one JSON object
mapping a string key to a record.  Documents are always read and written
whole, so a reader never observes a half-updated table.  Callers that need a
read-modify-write cycle hold the matching named lock around it (see
``devpool.orchestrator.locks``).
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class DocumentStore(Protocol):
    """Async protocol for whole-document reads and writes.

    Storage layout (keyed by document name)::

        {root}/ports.json
        {root}/jobs.json
        {root}/poll/processed.json
    """

    async def read(self, name: str) -> dict[str, dict]:
        """Read a document.  Missing or unparseable documents read as ``{}``."""
        ...

    async def write(self, name: str, data: dict[str, dict]) -> None:
        """Replace a document atomically."""
        ...
