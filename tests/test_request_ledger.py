"""
Tests for request records, the status graph and correlation binding (src/request_ledger.py)
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import ALICE

from access_control import ZERO_ADDRESS
from request_ledger import ALLOWED_TRANSITIONS, RequestStatus
from route_exceptions import InvalidAddress, InvalidItemCount, InvalidStatus, RequestNotFound


class TestCreation:
    @pytest.mark.parametrize("item_count", [0, -1, 51])
    def test_item_count_bounds(self, service, encrypt, item_count):
        with pytest.raises(InvalidItemCount):
            service.create_request(ALICE, item_count, encrypt(1), encrypt(1), 50)
        assert service.ledger.request_count == 0

    def test_max_items_allowed(self, service, make_request):
        record = service.ledger.get_request(make_request(item_count=50))
        assert record.item_count == 50

    def test_zero_address_owner(self, service, encrypt):
        with pytest.raises(InvalidAddress):
            service.create_request(ZERO_ADDRESS, 1, encrypt(1), encrypt(1), 50)

    def test_creation_fields(self, service, make_request, clock):
        record = service.ledger.get_request(make_request())

        assert record.created_at == clock.now
        assert record.processing_started_at == 0
        assert record.correlation_id == 0
        assert len(record.salt) == 16

    def test_unknown_request(self, service):
        with pytest.raises(RequestNotFound):
            service.ledger.get_request(1)


class TestStatusGraph:
    def test_terminal_states(self):
        assert ALLOWED_TRANSITIONS[RequestStatus.COMPLETED] == frozenset()
        assert ALLOWED_TRANSITIONS[RequestStatus.REFUNDED] == frozenset()

    def test_illegal_edge_leaves_status(self, service, make_request):
        record = service.ledger.get_request(make_request())

        with pytest.raises(InvalidStatus):
            service.ledger.set_status(record, RequestStatus.COMPLETED, "test")
        assert record.status == RequestStatus.PENDING

    def test_pending_cannot_fail_directly(self, service, make_request):
        record = service.ledger.get_request(make_request())

        with pytest.raises(InvalidStatus):
            service.ledger.set_status(record, RequestStatus.FAILED, "test")


class TestCorrelation:
    def test_bind_once(self, service, make_request):
        first, second = make_request(), make_request()
        service.ledger.bind_correlation(5, first)

        with pytest.raises(InvalidStatus):
            service.ledger.bind_correlation(5, second)
        assert service.ledger.resolve_correlation(5) == first
        assert service.ledger.last_correlation_id == 5

    def test_unknown_correlation(self, service):
        with pytest.raises(RequestNotFound):
            service.ledger.resolve_correlation(1)
        assert service.ledger.last_correlation_id == 0
