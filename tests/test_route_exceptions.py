"""
Tests for the error taxonomy (src/route_exceptions.py)
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from route_exceptions import (
    AlreadyProcessed,
    ContractPaused,
    ErrorCategory,
    InsufficientStake,
    NotOperator,
    RefundAlreadyIssued,
    RouteOptimizerError,
    TimeoutNotReached,
    TransferFailed,
)


class TestCategories:
    @pytest.mark.parametrize(
        "error_type, category",
        [
            (InsufficientStake, ErrorCategory.VALIDATION),
            (NotOperator, ErrorCategory.AUTHORIZATION),
            (AlreadyProcessed, ErrorCategory.STATE),
            (ContractPaused, ErrorCategory.STATE),
            (TimeoutNotReached, ErrorCategory.TIMING),
            (RefundAlreadyIssued, ErrorCategory.SETTLEMENT),
        ],
    )
    def test_category(self, error_type, category):
        error = error_type("boom")
        assert isinstance(error, RouteOptimizerError)
        assert error.category == category


class TestSerialization:
    def test_to_dict(self):
        error = InsufficientStake(
            "Deposit must be at least 10", operation="create_request", details={"deposit": 5}
        )
        data = error.to_dict()

        assert data["error"] == "InsufficientStake"
        assert data["category"] == "validation"
        assert data["operation"] == "create_request"
        assert data["details"] == {"deposit": 5}
        assert "cause" not in data

    def test_cause(self):
        root = ConnectionError("reset by peer")
        error = TransferFailed("Transfer raised", operation="pay_refund", cause=root)

        assert error.__cause__ is root
        assert error.to_dict()["cause"] == {"type": "ConnectionError", "message": "reset by peer"}

    def test_str(self):
        error = TimeoutNotReached("Not refundable yet", operation="request_refund")
        assert str(error) == "[TimeoutNotReached:request_refund] Not refundable yet"
