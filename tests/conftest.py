"""
Pytest configuration and shared fixtures for ShieldRoute tests.

- Manual clock so timeouts can be crossed without sleeping
- A wired service with small economic parameters
- Helpers that encrypt inputs and create requests
- Flask test client over the same service
"""

import os
import sys

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

# Keep test runs off the filesystem and quiet
os.environ["STORAGE_BACKEND"] = "memory"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from monitoring import metrics  # noqa: E402
from optimizer_config import OptimizerConfig  # noqa: E402
from route_service import RouteOptimizerService  # noqa: E402

OWNER = "0x" + "0a" * 20
OPERATOR = "0x" + "0b" * 20
PAUSER = "0x" + "0c" * 20
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
TREASURY = "0x" + "7e" * 20

START_TIME = 1_700_000_000


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, now: int = START_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


@pytest.fixture(autouse=True)
def reset_metrics():
    """Fresh metrics for every test."""
    metrics.reset()
    yield


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def config():
    return OptimizerConfig(
        min_stake=10,
        fee_percent=2,
        owner=OWNER,
        operators=[OPERATOR],
        pausers=[PAUSER],
    )


@pytest.fixture
def service(config, clock):
    return RouteOptimizerService(config, clock=clock)


@pytest.fixture
def encrypt(service):
    """Encrypt a plaintext with the service's engine."""

    def _encrypt(value: int, bits: int = 32):
        return service.engine.encrypt(value, bits=bits)

    return _encrypt


@pytest.fixture
def make_request(service, encrypt):
    """Create a request; by default Scenario A's: 5 items, deposit 50."""

    def _make(owner: str = ALICE, item_count: int = 5, deposit: int = 50) -> int:
        return service.create_request(owner, item_count, encrypt(1000), encrypt(500), deposit)

    return _make


@pytest.fixture
def add_items(service, encrypt):
    """
    Upload items as (x, y, weight, price) tuples, index = position.
    """

    def _add(request_id: int, items, owner: str = ALICE):
        for index, (x, y, weight, price) in enumerate(items):
            service.add_item(
                owner, request_id, index, encrypt(x), encrypt(y), encrypt(weight), encrypt(price)
            )

    return _add


@pytest.fixture
def app(service):
    from api import create_app

    flask_app = create_app(service)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()
