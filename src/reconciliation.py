"""
Reconciliation of an uploaded record set against the persisted inventory.

An upload is a stock recount: it brings quantities and product attributes,
while shelf and box placement is usually maintained by hand in the app and
must survive the upload. The engine is pure; it returns new lists and never
touches the store or the inputs.

Merge rules (FULL_RECOUNT, the default):
- identifier in both: incoming values win, placement is kept from the
  existing record unless the uploaded row set it explicitly -> updated
- identifier only in the upload -> added
- identifier only in the inventory -> dropped, removed

ADDITIVE mode keeps records absent from the upload and reports removed=0.

Updates are counted even when nothing changed, so re-uploading the same file
reports every record as updated.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from exceptions import ContainerNotFoundError, RecordNotFoundError, ValidationError
from logger import get_logger
from models import BACK_STORE, CONTAINER, MAIN_STORE, ChangeSummary, Container, InventoryRecord

logger = get_logger(__name__)


class ReconcileMode(Enum):
    FULL_RECOUNT = 'full_recount'
    ADDITIVE = 'additive'

    @classmethod
    def parse(cls, value: str) -> 'ReconcileMode':
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown reconcile mode '{value}'. Expected one of: "
                f"{', '.join(m.value for m in cls)}"
            ) from None


@dataclass(frozen=True)
class ReconciliationResult:
    records: List[InventoryRecord]
    containers: List[Container]
    summary: ChangeSummary


class ReconciliationEngine:
    """
    Merges incoming records into the inventory and keeps containers in sync.

    Args:
        mode: How records missing from the upload are treated
        default_container_location: Location of containers created on demand
    """

    def __init__(self, mode: ReconcileMode = ReconcileMode.FULL_RECOUNT,
                 default_container_location: str = BACK_STORE):
        self.mode = mode
        self.default_container_location = default_container_location

    # ------------------------------------------------------------------
    # Upload merge
    # ------------------------------------------------------------------

    def reconcile(
        self,
        existing_records: Sequence[InventoryRecord],
        incoming_records: Iterable[InventoryRecord],
        existing_containers: Sequence[Container] = (),
        incoming_containers: Sequence[Container] = (),
        source_label: str = '',
    ) -> ReconciliationResult:
        existing: Dict[str, InventoryRecord] = {r.identifier: r for r in existing_records}
        incoming: Dict[str, InventoryRecord] = {}
        for record in incoming_records:
            incoming[record.identifier] = record

        merged: List[InventoryRecord] = []
        added = updated = 0

        for identifier, record in incoming.items():
            current = existing.get(identifier)
            if current is None:
                merged.append(record)
                added += 1
                continue

            if record.placement_explicit:
                merged.append(record.with_placement(record.location, record.container_id))
            else:
                merged.append(record.with_placement(current.location, current.container_id))
            updated += 1

        kept = [r for r in existing_records if r.identifier not in incoming]
        if self.mode is ReconcileMode.ADDITIVE:
            merged.extend(r.with_placement(r.location, r.container_id) for r in kept)
            removed = 0
        else:
            removed = len(kept)

        containers = self._merge_containers(merged, existing_containers, incoming_containers)
        summary = ChangeSummary.create(added, updated, removed, source_label)

        logger.info(
            f"Reconciled {source_label or 'upload'} ({self.mode.value}): "
            f"+{added} ~{updated} -{removed}, {len(merged)} records, {len(containers)} containers"
        )
        return ReconciliationResult(merged, containers, summary)

    def _merge_containers(self, records: Sequence[InventoryRecord],
                          existing: Sequence[Container],
                          incoming: Sequence[Container]) -> List[Container]:
        catalog: Dict[str, Container] = {}

        # Existing containers keep their name and location, even when empty
        for container in existing:
            catalog[container.container_id] = Container(
                container.container_id, container.name, container.location
            )
        for container in incoming:
            if container.container_id not in catalog:
                catalog[container.container_id] = Container(
                    container.container_id, container.name, container.location
                )

        return self._attach_members(records, catalog)

    def _attach_members(self, records: Sequence[InventoryRecord],
                        catalog: Dict[str, Container]) -> List[Container]:
        for record in records:
            if record.location != CONTAINER or not record.container_id:
                continue
            container = catalog.get(record.container_id)
            if container is None:
                container = Container(
                    record.container_id,
                    f"Box {record.container_id}",
                    self.default_container_location,
                )
                catalog[container.container_id] = container
            container.members.append(record)
        return list(catalog.values())

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def sync_containers(self, records: Sequence[InventoryRecord],
                        containers: Sequence[Container]) -> List[Container]:
        """Rebuild every container's member list from record placement."""
        catalog = {
            c.container_id: Container(c.container_id, c.name, c.location) for c in containers
        }
        return self._attach_members(records, catalog)

    # ------------------------------------------------------------------
    # Single-record placement
    # ------------------------------------------------------------------

    @staticmethod
    def _locate(records: Sequence[InventoryRecord], identifier: str) -> Tuple[int, InventoryRecord]:
        for index, record in enumerate(records):
            if record.identifier == identifier:
                return index, record
        raise RecordNotFoundError(identifier)

    def _replace_placement(self, records: Sequence[InventoryRecord],
                           containers: Sequence[Container], identifier: str,
                           location: str, container_id: Optional[str]
                           ) -> Tuple[List[InventoryRecord], List[Container]]:
        index, current = self._locate(records, identifier)
        moved = current.with_placement(location, container_id)

        new_records = list(records)
        new_records[index] = moved

        touched = {current.container_id, container_id} - {None}
        new_containers: List[Container] = []
        for container in containers:
            if container.container_id not in touched:
                new_containers.append(container)
                continue

            members = [m for m in container.members if m.identifier != identifier]
            if container.container_id == container_id:
                members.append(moved)
            new_containers.append(
                Container(container.container_id, container.name, container.location, members)
            )

        return new_records, new_containers

    def assign_to_container(self, records: Sequence[InventoryRecord],
                            containers: Sequence[Container], identifier: str,
                            container_id: str) -> Tuple[List[InventoryRecord], List[Container]]:
        """
        Place one record into a container.

        Only the record and the member lists of its old and new container change.

        Raises:
            RecordNotFoundError: Unknown record identifier
            ContainerNotFoundError: Unknown container identifier
        """
        if not any(c.container_id == container_id for c in containers):
            raise ContainerNotFoundError(container_id)
        return self._replace_placement(records, containers, identifier, CONTAINER, container_id)

    def remove_from_container(self, records: Sequence[InventoryRecord],
                              containers: Sequence[Container], identifier: str,
                              location: str = MAIN_STORE
                              ) -> Tuple[List[InventoryRecord], List[Container]]:
        """
        Take one record out of its container and put it back in `location`.

        A record that is not in a container is left where it is.

        Raises:
            RecordNotFoundError: Unknown record identifier
            ValidationError: `location` is not a store location
        """
        if location not in (MAIN_STORE, BACK_STORE):
            raise ValidationError(f"Cannot move a record to '{location}' without a container")
        _, current = self._locate(records, identifier)
        if current.container_id is None:
            return list(records), list(containers)
        return self._replace_placement(records, containers, identifier, location, None)
