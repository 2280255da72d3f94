"""In-process session store for development and tests.

Records live only as long as the process. Both tables are capped at
``max_records``; the oldest saved record is evicted first.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import List, Optional

from sidecar.flights.models import FlightSnapshot
from sidecar.store.base import SessionStore
from sidecar.workflows.models import WorkflowRecord

LOGGER = logging.getLogger(__name__)


class InMemorySessionStore(SessionStore):
    """Keeps snapshots by id plus a bounded most-recent list."""

    def __init__(self, *, hot_size: int = 10, max_records: int = 1000) -> None:
        if max_records < hot_size:
            raise ValueError("max_records must be at least hot_size")
        self._hot_size = hot_size
        self._max_records = max_records
        self._records: "OrderedDict[str, FlightSnapshot]" = OrderedDict()
        self._hot: "OrderedDict[str, None]" = OrderedDict()
        self._workflows: "OrderedDict[str, WorkflowRecord]" = OrderedDict()
        self.saves = 0
        self.workflow_saves = 0

    async def save(self, snapshot: FlightSnapshot) -> None:
        self.saves += 1
        self._records.pop(snapshot.flight_id, None)
        self._records[snapshot.flight_id] = snapshot
        while len(self._records) > self._max_records:
            evicted, _ = self._records.popitem(last=False)
            self._hot.pop(evicted, None)
            LOGGER.debug("Evicted flight %s from the session store", evicted)
        self._hot.pop(snapshot.flight_id, None)
        self._hot[snapshot.flight_id] = None
        while len(self._hot) > self._hot_size:
            self._hot.popitem(last=False)
        LOGGER.debug("Stored flight %s (%s)", snapshot.flight_id, snapshot.state)

    async def get(self, flight_id: str) -> Optional[FlightSnapshot]:
        return self._records.get(flight_id)

    async def list_recent(self, limit: int = 10) -> List[FlightSnapshot]:
        recent = [self._records[flight_id] for flight_id in reversed(self._hot)]
        return recent[:limit]

    async def save_workflow(self, record: WorkflowRecord) -> None:
        self.workflow_saves += 1
        self._workflows.pop(record.session_id, None)
        self._workflows[record.session_id] = record.model_copy(deep=True)
        while len(self._workflows) > self._max_records:
            evicted, _ = self._workflows.popitem(last=False)
            LOGGER.debug("Evicted workflow session %s from the session store", evicted)
        LOGGER.debug("Stored workflow session %s (%s)", record.session_id, record.state.value)

    async def get_workflow(self, session_id: str) -> Optional[WorkflowRecord]:
        record = self._workflows.get(session_id)
        return record.model_copy(deep=True) if record is not None else None

    def __len__(self) -> int:
        return len(self._records)
