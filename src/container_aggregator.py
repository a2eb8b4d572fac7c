"""
Streaming grouping of inventory records into containers.
"""

from typing import Dict, Iterable, List, Optional

from models import BACK_STORE, Container, InventoryRecord


class ContainerAggregator:
    """
    Groups records by container reference as they stream past.

    A Container is created lazily the first time its identifier is seen,
    named "Box <id>" and placed at default_location, then records are
    appended in arrival order. The aggregator only knows about the current
    pass: merging with persisted containers is the reconciliation step's job.

    If the same record identifier is added twice (duplicate rows in one
    source, last row wins), the earlier record leaves its container first,
    so the containers always partition the boxed records.
    """

    def __init__(self, default_location: str = BACK_STORE):
        self.default_location = default_location
        self._containers: Dict[str, Container] = {}
        # record identifier -> container id it currently belongs to
        self._placement: Dict[str, str] = {}

    def seed(self, container: Container) -> Container:
        """
        Register a container ahead of its records (e.g. from a containers sheet).

        Display name and location of an already known container are updated,
        its members are kept.
        """
        existing = self._containers.get(container.container_id)
        if existing is not None:
            existing.name = container.name
            existing.location = container.location
            return existing

        seeded = Container(container.container_id, container.name, container.location)
        self._containers[seeded.container_id] = seeded
        return seeded

    def add(self, record: InventoryRecord) -> Optional[Container]:
        """
        Account for one record; returns the container it joined, if any.
        """
        previous = self._placement.pop(record.identifier, None)
        if previous is not None:
            old = self._containers[previous]
            old.members = [m for m in old.members if m.identifier != record.identifier]

        if not record.container_id:
            return None

        container = self._containers.get(record.container_id)
        if container is None:
            container = Container(
                container_id=record.container_id,
                name=f"Box {record.container_id}",
                location=self.default_location,
            )
            self._containers[container.container_id] = container

        container.members.append(record)
        self._placement[record.identifier] = container.container_id
        return container

    def add_all(self, records: Iterable[InventoryRecord]) -> 'ContainerAggregator':
        for record in records:
            self.add(record)
        return self

    def get(self, container_id: str) -> Optional[Container]:
        return self._containers.get(container_id)

    @property
    def containers(self) -> List[Container]:
        """Realized containers in first-seen order."""
        return list(self._containers.values())

    def __len__(self) -> int:
        return len(self._containers)
