"""Contract of the persistent session store consumed by the coordinator and workflow runner."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from sidecar.flights.models import FlightSnapshot
from sidecar.workflows.models import WorkflowRecord


class SessionStore(ABC):
    @abstractmethod
    async def save(self, snapshot: FlightSnapshot) -> None:
        ...

    @abstractmethod
    async def get(self, flight_id: str) -> Optional[FlightSnapshot]:
        ...

    @abstractmethod
    async def list_recent(self, limit: int = 10) -> List[FlightSnapshot]:
        ...

    @abstractmethod
    async def save_workflow(self, record: WorkflowRecord) -> None:
        """Persist a copy of ``record``; later mutations of the live record are not visible."""

    @abstractmethod
    async def get_workflow(self, session_id: str) -> Optional[WorkflowRecord]:
        ...
