"""
Tests for the service facade (src/route_service.py)

Tests:
- Wiring from configuration
- Snapshot persistence after every mutation
- Restore across a restart, including correlation numbering
- Statistics
"""

import os
import sys
import tempfile

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import ALICE, BOB, OPERATOR, OWNER, PAUSER

from access_control import Role
from compute_engine import ComputeEngine, SimulatedComputeEngine
from decryption_oracle import LocalDecryptionOracle
from optimizer_config import OptimizerConfig
from request_ledger import RequestStatus
from route_exceptions import ConfigurationError, NotOperator
from route_service import RouteOptimizerService
from storage import JSONFileStorage, MemoryStorage, StorageBackend, StorageWriteError

DAY = 24 * 60 * 60
HOUR = 60 * 60


class BrokenStorage(StorageBackend):
    def load_state(self):
        return None

    def save_state(self, state):
        raise StorageWriteError("disk full")

    def is_available(self):
        return False


def _new_request(service, owner=ALICE, deposit=50):
    engine = service.engine
    return service.create_request(owner, 3, engine.encrypt(100), engine.encrypt(10), deposit)


# ============================================================
# Wiring
# ============================================================

class TestWiring:
    def test_config_roles(self, service):
        assert service.has_role(OWNER, Role.ADMINISTRATOR)
        assert service.has_role(OPERATOR, Role.OPERATOR)
        assert service.has_role(PAUSER, Role.PAUSER)
        assert not service.has_role(PAUSER, Role.OPERATOR)

    def test_default_backends(self, service):
        assert isinstance(service.engine, SimulatedComputeEngine)
        assert isinstance(service.oracle, LocalDecryptionOracle)
        assert service.storage is None
        assert service.persist() is False

    def test_invalid_config(self):
        with pytest.raises(ConfigurationError):
            RouteOptimizerService(OptimizerConfig(fee_percent=150))

    def test_custom_engine_needs_oracle(self, config):
        class OpaqueEngine(ComputeEngine):
            encrypt = add = sub = mul = compare = select = widen = resolve = lambda self, *a, **k: None

        with pytest.raises(ValueError):
            RouteOptimizerService(config, engine=OpaqueEngine())

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        monkeypatch.setenv("SHIELDROUTE_OWNER", OWNER)
        monkeypatch.setenv("SHIELDROUTE_OPERATORS", OPERATOR)

        service = RouteOptimizerService.from_env()

        assert isinstance(service.storage, MemoryStorage)
        assert service.access.owner == OWNER
        assert service.has_role(OPERATOR, Role.OPERATOR)


# ============================================================
# Persistence
# ============================================================

class TestPersistence:
    @pytest.fixture
    def storage(self):
        return MemoryStorage()

    @pytest.fixture
    def stored_service(self, config, clock, storage):
        return RouteOptimizerService(config, clock=clock, storage=storage)

    def test_every_mutation_saves(self, stored_service, storage):
        request_id = _new_request(stored_service)
        assert storage.save_count == 1

        stored_service.process(OPERATOR, request_id)
        stored_service.add_pauser(OWNER, BOB)
        assert storage.save_count == 3

    def test_failed_mutation_does_not_save(self, stored_service, storage):
        with pytest.raises(NotOperator):
            stored_service.process(ALICE, 1)
        assert storage.save_count == 0

    def test_oracle_callback_is_persisted(self, stored_service, storage):
        request_id = _new_request(stored_service)
        correlation_id = stored_service.process(OPERATOR, request_id)

        stored_service.oracle.fulfill(correlation_id)

        saved = storage.load_state()
        (saved_request,) = saved["ledger"]["requests"]
        assert saved_request["status"] == "completed"

    def test_restart_restores_everything(self, config, clock, stored_service, storage):
        first = _new_request(stored_service)
        second = _new_request(stored_service, owner=BOB)
        stored_service.oracle.fulfill(stored_service.process(OPERATOR, first))
        stored_service.add_operator(OWNER, ALICE)

        restarted = RouteOptimizerService(config, clock=clock, storage=storage)

        assert restarted.ledger.request_count == 2
        assert restarted.get_requests_of(BOB) == [second]
        assert restarted.get_result(first)["finalized"] is True
        assert restarted.has_role(ALICE, Role.OPERATOR)
        assert restarted.settlement.fee_accumulator == 2
        assert _new_request(restarted) == 3

    def test_restart_continues_correlation_ids(self, config, clock, stored_service, storage):
        first = _new_request(stored_service)
        second = _new_request(stored_service)
        assert stored_service.process(OPERATOR, first) == 1

        restarted = RouteOptimizerService(config, clock=clock, storage=storage)
        correlation_id = restarted.process(OPERATOR, second)

        assert correlation_id == 2
        assert restarted.oracle.fulfill(correlation_id) is True
        assert restarted.ledger.get_request(second).status == RequestStatus.COMPLETED

    def test_lost_callback_is_recovered_by_timeout(self, config, clock, stored_service, storage):
        request_id = _new_request(stored_service)
        stored_service.process(OPERATOR, request_id)

        # The pending oracle batch does not survive the restart
        restarted = RouteOptimizerService(config, clock=clock, storage=storage)
        assert restarted.oracle.pending_ids() == []

        clock.advance(HOUR + 1)
        assert restarted.request_refund(ALICE, request_id) == 49
        assert restarted.ledger.get_request(request_id).status == RequestStatus.TIMED_OUT

    def test_json_file_round_trip(self, config, clock):
        with tempfile.TemporaryDirectory() as tmpdir:
            storage = JSONFileStorage(os.path.join(tmpdir, "state.json"))
            service = RouteOptimizerService(config, clock=clock, storage=storage)
            request_id = _new_request(service)
            service.add_item(ALICE, request_id, 0, *(service.engine.encrypt(v) for v in (1, 2, 3, 4)))

            restarted = RouteOptimizerService(
                config, clock=clock, storage=JSONFileStorage(storage.file_path)
            )
            (item,) = restarted.ledger.items(request_id)
            assert restarted.engine.reveal(item.y) == 2
            assert restarted.ledger.get_request(request_id).salt == service.ledger.get_request(request_id).salt

    def test_save_failure_keeps_memory_state(self, config, clock):
        service = RouteOptimizerService(config, clock=clock, storage=BrokenStorage())

        request_id = _new_request(service)

        assert service.ledger.get_request(request_id).status == RequestStatus.PENDING
        assert service.persist() is False

    def test_snapshot_shape(self, service):
        _new_request(service)
        snapshot = service.snapshot()

        assert snapshot["version"] == 1
        assert set(snapshot) == {"version", "access", "ledger", "settlement", "engine"}


# ============================================================
# Statistics
# ============================================================

class TestStats:
    def test_get_stats(self, service, clock):
        first = _new_request(service)
        second = _new_request(service)
        _new_request(service, deposit=100)
        service.process(OPERATOR, second)
        clock.advance(DAY + 1)
        service.request_refund(ALICE, first)

        stats = service.get_stats()

        assert stats["request_count"] == 3
        assert stats["owner"] == OWNER
        assert stats["paused"] is False
        assert stats["fee_accumulator"] == 4
        assert stats["balance"] == 200 - 49
        assert stats["total_refunded"] == 49
        assert stats["requests_by_status"] == {
            "pending": 1,
            "processing": 1,
            "completed": 0,
            "failed": 0,
            "timed_out": 1,
            "refunded": 0,
        }
