"""
Inventory service: the one place that owns the current inventory.

Wires the pieces together:

    IngestionClient -> IngestionResult -> ReconciliationEngine -> KeyValueStore

State is loaded explicitly with load() and saved on every mutation. A save
writes records, then containers, then history; if any write fails, the keys
already written are restored to their previous value (best effort) and the
in-memory state is left untouched, so the inventory the caller sees is
always the one that was last saved completely.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app_config import StorageSettings
from exceptions import (
    ContainerNotFoundError,
    EmptyUploadError,
    RecordNotFoundError,
    RowValidationError,
    StoreUnavailableError,
    ValidationError,
)
from ingestion_client import IngestionClient, ProgressCallback
from inventory_store import (
    CONTAINERS_KEY,
    HISTORY_KEY,
    RECORDS_KEY,
    KeyValueStore,
    SQLiteKeyValueStore,
)
from logger import get_logger, set_source_context
from models import BACK_STORE, MAIN_STORE, ChangeSummary, Container, IngestionResult, InventoryRecord, RowRejection
from performance_utils import log_timing
from reconciliation import ReconcileMode, ReconciliationEngine
from workbook_reader import Source

logger = get_logger(__name__)

DEFAULT_LOW_STOCK_THRESHOLD = 5


@dataclass(frozen=True)
class UploadOutcome:
    """A saved upload: its change summary plus what was skipped on the way."""
    summary: ChangeSummary
    rejected_count: int = 0
    duplicate_count: int = 0
    rejections: Tuple[RowRejection, ...] = field(default_factory=tuple)

    @property
    def has_skipped_rows(self) -> bool:
        return self.rejected_count > 0

    def rejection_error(self) -> Optional[RowValidationError]:
        """The skipped rows as an exception, for callers that treat them as fatal."""
        if not self.rejected_count:
            return None
        return RowValidationError(
            f"{self.rejected_count} row(s) in {self.summary.source_label} were rejected",
            self.rejections,
            self.rejected_count,
        )

    def describe(self) -> str:
        s = self.summary
        lines = [
            f"Upload of {s.source_label} saved: "
            f"{s.added} added, {s.updated} updated, {s.removed} removed."
        ]
        if self.duplicate_count:
            lines.append(f"{self.duplicate_count} duplicate barcode row(s): the last row was used.")
        if self.rejected_count:
            lines.append(
                f"{self.rejected_count} row(s) were skipped, the rest of the file was saved."
            )
            for rejection in self.rejections[:5]:
                lines.append(f"  Row {rejection.row_number}: {'; '.join(rejection.reasons)}")
            if self.rejected_count > 5:
                lines.append(f"  ... and {self.rejected_count - 5} more")
        return "\n".join(lines)


class InventoryService:
    """
    Load-at-startup, save-on-mutation owner of records, containers and history.

    Args:
        store: Key-value backend
        engine: Reconciliation engine (full recount by default)
    """

    def __init__(self, store: KeyValueStore, engine: Optional[ReconciliationEngine] = None):
        self.store = store
        self.engine = engine or ReconciliationEngine()
        self._records: List[InventoryRecord] = []
        self._containers: List[Container] = []
        self._history: List[ChangeSummary] = []
        self._loaded = False

    @classmethod
    def from_settings(cls, settings: StorageSettings,
                      default_container_location: str = BACK_STORE) -> 'InventoryService':
        engine = ReconciliationEngine(
            ReconcileMode.parse(settings.reconcile_mode), default_container_location
        )
        return cls(SQLiteKeyValueStore(settings.database_path), engine)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def records(self) -> List[InventoryRecord]:
        self._ensure_loaded()
        return list(self._records)

    @property
    def containers(self) -> List[Container]:
        self._ensure_loaded()
        return list(self._containers)

    @property
    def history(self) -> List[ChangeSummary]:
        self._ensure_loaded()
        return list(self._history)

    def recent_history(self, limit: int = 10) -> List[ChangeSummary]:
        """Most recent change summaries first."""
        return list(reversed(self.history))[:limit]

    def load(self) -> None:
        """Read the persisted inventory and rebuild container membership."""
        with log_timing("Load inventory", unit="records") as timer:
            records = self._load_list(RECORDS_KEY, InventoryRecord.from_dict)
            containers = self._load_list(CONTAINERS_KEY, Container.from_dict)
            history = self._load_list(HISTORY_KEY, ChangeSummary.from_dict)
            timer.count(len(records))

        self._records = records
        self._containers = self.engine.sync_containers(records, containers)
        self._history = history
        self._loaded = True
        logger.info(
            f"Inventory loaded: {len(records)} records, {len(self._containers)} containers, "
            f"{len(history)} history entries"
        )

    def _load_list(self, key: str, factory) -> List[Any]:
        value = self.store.get(key)
        if value is None:
            return []
        if not isinstance(value, list):
            logger.warning(f"Stored '{key}' is not a list, ignoring it")
            return []

        items = []
        for entry in value:
            try:
                items.append(factory(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed '{key}' entry {entry!r}: {e}")
        return items

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _persist(self, records: Sequence[InventoryRecord], containers: Sequence[Container],
                 history: Optional[Sequence[ChangeSummary]] = None) -> None:
        """
        Write the new state in order records -> containers -> history.

        Raises:
            StoreUnavailableError: A write failed; keys already written were
                restored to the previous state where possible
        """
        writes = [
            (RECORDS_KEY, [r.to_dict() for r in records],
             [r.to_dict() for r in self._records]),
            (CONTAINERS_KEY, [c.to_dict() for c in containers],
             [c.to_dict() for c in self._containers]),
        ]
        if history is not None:
            writes.append((HISTORY_KEY, [h.to_dict() for h in history],
                           [h.to_dict() for h in self._history]))

        written = []
        try:
            with log_timing("Persist inventory", threshold_ms=500, unit="keys") as timer:
                for key, value, previous in writes:
                    self.store.set(key, value)
                    written.append((key, previous))
                    timer.count()
        except StoreUnavailableError as e:
            logger.error(f"Persisting inventory failed at '{e.key}': {e}")
            self._restore(written)
            raise

    def _restore(self, written) -> None:
        for key, previous in reversed(written):
            try:
                self.store.set(key, previous)
            except StoreUnavailableError as e:
                logger.error(f"Could not restore '{key}' after a failed save: {e}")

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def apply_upload(self, result: IngestionResult, allow_empty: bool = False) -> UploadOutcome:
        """
        Reconcile an ingestion result into the inventory and save it.

        Raises:
            EmptyUploadError: The result has no valid records and allow_empty is False
            StoreUnavailableError: Saving failed; the inventory is unchanged
        """
        self._ensure_loaded()
        label = result.source_label
        set_source_context(label or None)

        if not result.records and not allow_empty:
            raise EmptyUploadError(
                f"{label or 'The upload'} contains no valid records "
                f"({result.rejected_count} row(s) rejected)"
            )

        merged = self.engine.reconcile(
            self._records,
            result.records,
            self._containers,
            result.containers,
            label,
        )
        history = self._history + [merged.summary]
        self._persist(merged.records, merged.containers, history)

        self._records = merged.records
        self._containers = merged.containers
        self._history = history

        outcome = UploadOutcome(
            summary=merged.summary,
            rejected_count=result.rejected_count,
            duplicate_count=result.duplicate_count,
            rejections=tuple(result.rejections),
        )
        logger.info(outcome.describe().splitlines()[0])
        return outcome

    def upload(self, client: IngestionClient, source: Source, source_label: Optional[str] = None,
               on_progress: Optional[ProgressCallback] = None, allow_empty: bool = False,
               timeout: Optional[float] = None) -> UploadOutcome:
        """Ingest `source` and apply it; ingestion errors propagate, nothing is saved."""
        result = client.run(source, source_label, on_progress, timeout)
        return self.apply_upload(result, allow_empty=allow_empty)

    # ------------------------------------------------------------------
    # Containers and placement
    # ------------------------------------------------------------------

    def create_container(self, container_id: str, name: Optional[str] = None,
                         location: Optional[str] = None) -> Container:
        """
        Raises:
            ValidationError: Empty or already used container id
        """
        self._ensure_loaded()
        container_id = (container_id or '').strip()
        if not container_id:
            raise ValidationError("Container ID cannot be empty")
        if any(c.container_id == container_id for c in self._containers):
            raise ValidationError(f"Container {container_id} already exists")

        container = Container(
            container_id,
            (name or '').strip() or f"Box {container_id}",
            (location or '').strip() or self.engine.default_container_location,
        )
        containers = self._containers + [container]
        self._persist(self._records, containers)
        self._containers = containers
        logger.info(f"Container created: {container_id}")
        return container

    def assign_to_container(self, identifier: str, container_id: str) -> InventoryRecord:
        self._ensure_loaded()
        records, containers = self.engine.assign_to_container(
            self._records, self._containers, identifier, container_id
        )
        self._persist(records, containers)
        self._records, self._containers = records, containers
        logger.info(f"Record {identifier} assigned to container {container_id}")
        return self._find_record(identifier)

    def remove_from_container(self, identifier: str, location: str = MAIN_STORE) -> InventoryRecord:
        self._ensure_loaded()
        current = self._find_record(identifier)
        records, containers = self.engine.remove_from_container(
            self._records, self._containers, identifier, location
        )
        if current.container_id is None:
            logger.info(f"Record {identifier} is not in a container, nothing to move")
            return current
        self._persist(records, containers)
        self._records, self._containers = records, containers
        logger.info(f"Record {identifier} moved to {location}")
        return self._find_record(identifier)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _find_record(self, identifier: str) -> InventoryRecord:
        for record in self._records:
            if record.identifier == identifier:
                return record
        raise RecordNotFoundError(identifier)

    def get_record(self, identifier: str) -> InventoryRecord:
        """Raises RecordNotFoundError for unknown identifiers."""
        self._ensure_loaded()
        return self._find_record(identifier)

    def get_container(self, container_id: str) -> Container:
        """Raises ContainerNotFoundError for unknown container ids."""
        self._ensure_loaded()
        for container in self._containers:
            if container.container_id == container_id:
                return container
        raise ContainerNotFoundError(container_id)

    def search_records(self, query: str) -> List[InventoryRecord]:
        """Case-insensitive substring match on barcode, size, color, department and style."""
        self._ensure_loaded()
        needle = (query or '').strip().lower()
        if not needle:
            return list(self._records)
        return [
            r for r in self._records
            if any(needle in value.lower()
                   for value in (r.identifier, r.size, r.color, r.department, r.style_number))
        ]

    def low_stock_records(self, threshold: int = DEFAULT_LOW_STOCK_THRESHOLD) -> List[InventoryRecord]:
        """Records with quantity below `threshold`, lowest first."""
        self._ensure_loaded()
        return sorted((r for r in self._records if r.quantity < threshold),
                      key=lambda r: (r.quantity, r.identifier))

    def stats(self) -> Dict[str, int]:
        self._ensure_loaded()
        return {
            'records': len(self._records),
            'units': sum(r.quantity for r in self._records),
            'containers': len(self._containers),
            'uploads': len(self._history),
        }
