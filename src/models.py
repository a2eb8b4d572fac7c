"""
Domain models shared by the ingestion pipeline, reconciliation and storage.

Records and containers are plain dataclasses; the persisted form is a JSON
compatible dict produced by to_dict() and read back with from_dict().
Containers persist member identifiers only, their member lists are rebuilt
from record placement when the inventory is loaded.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple


# Placement values
MAIN_STORE = 'main-store'
BACK_STORE = 'back-store'
CONTAINER = 'container'
PLACEMENTS = (MAIN_STORE, BACK_STORE, CONTAINER)

# Progress phases
PHASE_READING = 'reading'
PHASE_MAPPING = 'mapping'


@dataclass
class InventoryRecord:
    """
    One stock line, keyed by its barcode.

    Attributes:
        identifier: Barcode string, primary key
        quantity: Units on hand (never negative)
        size, color, age: Free-form variant attributes
        style_number: Style identifier (required)
        department: Department name
        retail_price: Retail price (never negative)
        location: One of PLACEMENTS
        container_id: Container reference, set iff location == "container"
        placement_explicit: Whether the source row specified placement itself.
            Not persisted and not part of equality.
    """
    identifier: str
    style_number: str
    quantity: int = 0
    size: str = ''
    color: str = ''
    age: str = ''
    department: str = ''
    retail_price: Decimal = Decimal('0')
    location: str = MAIN_STORE
    container_id: Optional[str] = None
    placement_explicit: bool = field(default=False, compare=False)

    def with_placement(self, location: str, container_id: Optional[str]) -> 'InventoryRecord':
        """Return a copy placed at location / container_id."""
        return replace(self, location=location, container_id=container_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary (price as string)."""
        return {
            'identifier': self.identifier,
            'quantity': self.quantity,
            'size': self.size,
            'color': self.color,
            'age': self.age,
            'style_number': self.style_number,
            'department': self.department,
            'retail_price': str(self.retail_price),
            'location': self.location,
            'container_id': self.container_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InventoryRecord':
        """Create from a persisted dictionary, tolerating missing optional fields."""
        try:
            price = Decimal(str(data.get('retail_price', '0') or '0'))
        except InvalidOperation:
            price = Decimal('0')

        return cls(
            identifier=str(data['identifier']),
            style_number=str(data.get('style_number', '')),
            quantity=int(data.get('quantity', 0) or 0),
            size=data.get('size', '') or '',
            color=data.get('color', '') or '',
            age=data.get('age', '') or '',
            department=data.get('department', '') or '',
            retail_price=price,
            location=data.get('location') or MAIN_STORE,
            container_id=data.get('container_id') or None,
        )


@dataclass
class Container:
    """
    A physical storage unit (box, carton) grouping inventory records.

    Members are references to InventoryRecord objects. Membership must be
    re-synchronized whenever record placement changes.
    """
    container_id: str
    name: str
    location: str = BACK_STORE
    members: List[InventoryRecord] = field(default_factory=list)

    @property
    def member_ids(self) -> List[str]:
        return [record.identifier for record in self.members]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'container_id': self.container_id,
            'name': self.name,
            'location': self.location,
            'member_ids': self.member_ids,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Container':
        """Create an empty container; members are attached by the caller."""
        container_id = str(data['container_id'])
        return cls(
            container_id=container_id,
            name=data.get('name') or f"Box {container_id}",
            location=data.get('location') or BACK_STORE,
        )


@dataclass(frozen=True)
class ChangeSummary:
    """Counts for one reconciliation; appended to history, never mutated."""
    added: int
    updated: int
    removed: int
    timestamp: str
    source_label: str

    @classmethod
    def create(cls, added: int, updated: int, removed: int, source_label: str) -> 'ChangeSummary':
        return cls(
            added=added,
            updated=updated,
            removed=removed,
            timestamp=datetime.now(timezone.utc).isoformat(),
            source_label=source_label,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.timestamp,
            'file_name': self.source_label,
            'changes': {
                'added': self.added,
                'removed': self.removed,
                'updated': self.updated,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChangeSummary':
        changes = data.get('changes', {})
        return cls(
            added=int(changes.get('added', 0)),
            updated=int(changes.get('updated', 0)),
            removed=int(changes.get('removed', 0)),
            timestamp=data.get('date', ''),
            source_label=data.get('file_name', ''),
        )


@dataclass(frozen=True)
class IngestionProgress:
    """Transient progress snapshot emitted by the ingestion worker."""
    fraction_complete: float
    phase: str
    bytes_processed: int
    bytes_total: int
    rows_processed: int
    rows_total: Optional[int]
    throughput_rows_per_second: float
    eta_seconds: Optional[float]


@dataclass(frozen=True)
class RowRejection:
    """A source row that could not be mapped to a valid record."""
    row_number: int
    sheet: str
    reasons: Tuple[str, ...]
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass
class IngestionResult:
    """
    Final product of one successful ingestion run.

    Attributes:
        records: Valid records, one per identifier (last row wins)
        containers: Containers realized during the pass
        rejections: First MaxRejectionsKept rejected rows, with detail
        rejected_count: Total number of rejected rows
        duplicate_count: Rows that replaced an earlier row with the same identifier
        blank_rows: Blank rows skipped
        rows_read: Non-blank data rows read from the record sheet
        source_label: Label used for history
        worksheet: Name of the sheet that was ingested
        elapsed_seconds: Wall-clock duration of the run
    """
    records: List[InventoryRecord]
    containers: List[Container]
    rejections: List[RowRejection] = field(default_factory=list)
    rejected_count: int = 0
    duplicate_count: int = 0
    blank_rows: int = 0
    rows_read: int = 0
    source_label: str = ''
    worksheet: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def has_rejections(self) -> bool:
        return self.rejected_count > 0
