"""
Unit tests for src/inventory_service.py: load, upload, persistence and queries.

Tests cover:
- Loading persisted state and rebuilding container membership
- apply_upload (summary, history, empty uploads)
- Failed saves leave memory and store unchanged
- Container creation and placement operations
- Search, low stock and stats queries
"""

import pytest

from app_config import StorageSettings
from exceptions import (
    ContainerNotFoundError,
    EmptyUploadError,
    RecordNotFoundError,
    RowValidationError,
    StoreUnavailableError,
    ValidationError,
)
from inventory_service import InventoryService, UploadOutcome
from inventory_store import CONTAINERS_KEY, HISTORY_KEY, RECORDS_KEY, MemoryKeyValueStore
from models import (
    BACK_STORE, CONTAINER, MAIN_STORE,
    ChangeSummary, Container, IngestionResult, RowRejection,
)
from reconciliation import ReconcileMode, ReconciliationEngine

from conftest import make_record


class FlakyStore(MemoryKeyValueStore):
    """Memory store whose writes to `fail_key` raise while `failing` is set."""

    def __init__(self, initial=None, fail_key=None):
        self.fail_key = fail_key
        self.failing = False
        self.writes = []
        super().__init__(initial)

    def set(self, key, value):
        if self.failing and key == self.fail_key:
            raise StoreUnavailableError("disk full", key)
        self.writes.append(key)
        super().set(key, value)


def upload_result(*records, label='soh.xlsx', containers=(), **kwargs):
    return IngestionResult(records=list(records), containers=list(containers),
                           source_label=label, **kwargs)


def boxed(identifier, box, quantity=1):
    return make_record(identifier, quantity, location=CONTAINER, container_id=box)


@pytest.fixture
def seeded_store():
    return FlakyStore({
        RECORDS_KEY: [boxed('A', 'BOX1', 3).to_dict(), boxed('B', 'BOX1', 5).to_dict(),
                      make_record('C', 2).to_dict()],
        CONTAINERS_KEY: [{'container_id': 'BOX1', 'name': 'Winter', 'location': 'Warehouse',
                          'member_ids': ['A', 'B']}],
        HISTORY_KEY: [ChangeSummary.create(3, 0, 0, 'first.xlsx').to_dict()],
    })


@pytest.fixture
def service(seeded_store):
    service = InventoryService(seeded_store)
    service.load()
    return service


class TestLoad:

    def test_empty_store(self):
        service = InventoryService(MemoryKeyValueStore())
        assert service.records == []
        assert service.containers == []
        assert service.history == []

    def test_membership_rebuilt_on_load(self):
        store = MemoryKeyValueStore({
            RECORDS_KEY: [boxed('A', 'BOX1').to_dict(), make_record('B').to_dict()],
            CONTAINERS_KEY: [{'container_id': 'BOX1', 'name': 'Winter', 'member_ids': ['B', 'gone']}],
        })
        box = InventoryService(store).get_container('BOX1')
        assert box.member_ids == ['A']
        assert box.name == 'Winter'
        assert box.location == 'back-store'

    def test_malformed_entries_skipped(self):
        store = MemoryKeyValueStore({
            RECORDS_KEY: [{'identifier': 'A', 'quantity': 'lots'}, make_record('B').to_dict(),
                          {'no_identifier': True}],
            CONTAINERS_KEY: {'not': 'a list'},
        })
        service = InventoryService(store)
        assert [r.identifier for r in service.records] == ['B']
        assert service.containers == []

    def test_properties_are_copies(self, service):
        service.records.clear()
        assert len(service.records) == 3


class TestApplyUpload:

    def test_summary_and_history(self, service, seeded_store):
        outcome = service.apply_upload(upload_result(
            make_record('A', 4), make_record('C', 1), make_record('D', 6), label='recount.xlsx'
        ))

        s = outcome.summary
        assert (s.added, s.updated, s.removed) == (1, 2, 1)
        assert [h.source_label for h in service.history] == ['first.xlsx', 'recount.xlsx']
        assert service.get_record('A').container_id == 'BOX1'
        assert service.get_container('BOX1').member_ids == ['A']

        stored = seeded_store.get(HISTORY_KEY)
        assert stored[-1]['changes'] == {'added': 1, 'removed': 1, 'updated': 2}
        assert stored[-1]['file_name'] == 'recount.xlsx'

    def test_write_order(self, service, seeded_store):
        seeded_store.writes.clear()
        service.apply_upload(upload_result(make_record('A')))
        assert seeded_store.writes == [RECORDS_KEY, CONTAINERS_KEY, HISTORY_KEY]

    def test_reload_sees_saved_state(self, service, seeded_store):
        service.apply_upload(upload_result(make_record('A', 9), make_record('Z')))

        reloaded = InventoryService(seeded_store)
        assert sorted(r.identifier for r in reloaded.records) == ['A', 'Z']
        assert reloaded.get_record('A').quantity == 9
        assert reloaded.get_container('BOX1').member_ids == ['A']
        assert len(reloaded.history) == 2

    def test_empty_upload_refused(self, service, seeded_store):
        seeded_store.writes.clear()
        with pytest.raises(EmptyUploadError):
            service.apply_upload(upload_result(rejected_count=4))
        assert seeded_store.writes == []
        assert len(service.records) == 3

    def test_empty_upload_allowed(self, service):
        outcome = service.apply_upload(upload_result(), allow_empty=True)
        assert outcome.summary.removed == 3
        assert service.records == []

    def test_outcome_reports_skipped_rows(self, service):
        rejection = RowRejection(7, 'Products', ('quantity must not be negative',))
        outcome = service.apply_upload(upload_result(
            make_record('A'), rejections=[rejection], rejected_count=1, duplicate_count=2
        ))

        assert outcome.has_skipped_rows
        assert outcome.duplicate_count == 2
        assert 'Row 7' in outcome.describe()
        error = outcome.rejection_error()
        assert isinstance(error, RowValidationError)
        assert error.rejected_count == 1

    def test_outcome_without_rejections(self):
        outcome = UploadOutcome(ChangeSummary.create(1, 0, 0, 'soh.xlsx'))
        assert outcome.rejection_error() is None
        assert outcome.describe() == "Upload of soh.xlsx saved: 1 added, 0 updated, 0 removed."

    def test_additive_mode(self, seeded_store):
        service = InventoryService(seeded_store, ReconciliationEngine(ReconcileMode.ADDITIVE))

        outcome = service.apply_upload(upload_result(make_record('D')))
        assert outcome.summary.removed == 0
        assert len(service.records) == 4


class TestFailedSave:

    @pytest.mark.parametrize("fail_key", [RECORDS_KEY, CONTAINERS_KEY, HISTORY_KEY])
    def test_upload_failure_leaves_state_unchanged(self, service, seeded_store, fail_key):
        before_records = service.records
        before_containers = [c.to_dict() for c in service.containers]
        before_store = {key: seeded_store.get(key) for key in seeded_store.keys()}

        seeded_store.fail_key = fail_key
        seeded_store.failing = True
        with pytest.raises(StoreUnavailableError):
            service.apply_upload(upload_result(make_record('X')))
        seeded_store.failing = False

        assert service.records == before_records
        assert [c.to_dict() for c in service.containers] == before_containers
        assert len(service.history) == 1
        # Keys written before the failure were put back
        assert {key: seeded_store.get(key) for key in seeded_store.keys()} == before_store

    def test_placement_failure_leaves_state_unchanged(self, service, seeded_store):
        seeded_store.fail_key = CONTAINERS_KEY
        seeded_store.failing = True
        with pytest.raises(StoreUnavailableError):
            service.assign_to_container('C', 'BOX1')
        seeded_store.failing = False

        assert service.get_record('C').location == MAIN_STORE
        assert InventoryService(seeded_store).get_record('C').location == MAIN_STORE


class TestContainers:

    def test_create_container(self, service, seeded_store):
        container = service.create_container(' BOX9 ', name='Spare')
        assert container.container_id == 'BOX9'
        assert container.location == 'back-store'
        stored = [c['container_id'] for c in seeded_store.get(CONTAINERS_KEY)]
        assert stored == ['BOX1', 'BOX9']

    def test_create_container_default_name(self, service):
        assert service.create_container('BOX9').name == 'Box BOX9'

    @pytest.mark.parametrize("container_id", ['', '   ', 'BOX1'])
    def test_create_container_invalid(self, service, container_id):
        with pytest.raises(ValidationError):
            service.create_container(container_id)

    def test_assign_and_remove(self, service, seeded_store):
        service.create_container('BOX2')
        record = service.assign_to_container('A', 'BOX2')

        assert record.container_id == 'BOX2'
        assert service.get_container('BOX1').member_ids == ['B']
        assert service.get_container('BOX2').member_ids == ['A']

        record = service.remove_from_container('A')
        assert record.location == MAIN_STORE
        assert service.get_container('BOX2').member_ids == []
        assert InventoryService(seeded_store).get_record('A').location == MAIN_STORE

    def test_remove_record_not_in_a_container(self, service, seeded_store):
        seeded_store.writes.clear()
        record = service.remove_from_container('C', BACK_STORE)

        assert record.location == MAIN_STORE
        assert seeded_store.writes == []
        with pytest.raises(RecordNotFoundError):
            service.remove_from_container('NOPE')

    def test_unknown_ids(self, service):
        with pytest.raises(ContainerNotFoundError):
            service.assign_to_container('A', 'NOPE')
        with pytest.raises(RecordNotFoundError):
            service.assign_to_container('NOPE', 'BOX1')
        with pytest.raises(RecordNotFoundError):
            service.get_record('NOPE')
        with pytest.raises(ContainerNotFoundError):
            service.get_container('NOPE')

    def test_upload_seeds_containers_from_result(self, service):
        service.apply_upload(upload_result(
            make_record('A'), make_record('E', location=CONTAINER, container_id='BOX5', explicit=True),
            containers=[Container('BOX5', 'Summer Collection', 'Warehouse')],
        ))
        box = service.get_container('BOX5')
        assert box.name == 'Summer Collection'
        assert box.member_ids == ['E']


class TestQueries:

    @pytest.fixture
    def catalog(self):
        service = InventoryService(MemoryKeyValueStore({RECORDS_KEY: [
            make_record('0001', 12, size='M', color='Navy Blue', department='Menswear').to_dict(),
            make_record('0002', 0, size='L', color='Red', department='Womenswear',
                        style_number='DRESS-9').to_dict(),
            make_record('0003', 3, size='S', color='Blue', department='Kids').to_dict(),
        ]}))
        return service

    def test_search_is_case_insensitive(self, catalog):
        assert [r.identifier for r in catalog.search_records('BLUE')] == ['0001', '0003']

    def test_search_by_style(self, catalog):
        assert [r.identifier for r in catalog.search_records('dress')] == ['0002']

    def test_blank_search_returns_all(self, catalog):
        assert len(catalog.search_records('  ')) == 3

    def test_low_stock(self, catalog):
        assert [r.identifier for r in catalog.low_stock_records()] == ['0002', '0003']
        assert [r.identifier for r in catalog.low_stock_records(threshold=1)] == ['0002']

    def test_stats(self, catalog):
        assert catalog.stats() == {'records': 3, 'units': 15, 'containers': 0, 'uploads': 0}

    def test_recent_history_newest_first(self, service):
        service.apply_upload(upload_result(make_record('A'), label='second.xlsx'))
        service.apply_upload(upload_result(make_record('A'), label='third.xlsx'))
        labels = [h.source_label for h in service.recent_history(limit=2)]
        assert labels == ['third.xlsx', 'second.xlsx']


class TestFromSettings:

    def test_builds_sqlite_service(self, tmp_path):
        settings = StorageSettings(database_path=tmp_path / "inv.db", reconcile_mode='additive')
        service = InventoryService.from_settings(settings)
        assert service.engine.mode is ReconcileMode.ADDITIVE
        assert service.store.path == tmp_path / "inv.db"
        assert service.records == []
