"""Shared pytest fixtures for catalog-mirror tests."""

from datetime import datetime, timedelta, timezone

import pytest
from dotenv import load_dotenv

from catalog_mirror.config import Config
from catalog_mirror.config_schema import SyncConfig
from catalog_mirror.core.static_source import (
    StaticSource,
    case,
    category,
    procedure,
)
from catalog_mirror.storage import InMemoryAuditLog, InMemoryMirror
from catalog_mirror.sync.lock import SyncLock
from catalog_mirror.sync.service import SyncService

load_dotenv()

TENANT = "tenant-a-token"


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live catalog API",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live catalog API"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


class FixedClock:
    """Deterministic UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def mock_config():
    """Create a Config instance for testing."""
    return Config(
        api_url="https://catalog.example.com",
        api_token="tok-abcdef123456",
        property_id="42",
        insecure=False,
    )


@pytest.fixture
def tenant():
    return TENANT


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def mirror():
    return InMemoryMirror()


@pytest.fixture
def audit_log(clock):
    return InMemoryAuditLog(clock=clock)


@pytest.fixture
def sample_source():
    """One category, one procedure under it and one case using it."""
    return StaticSource(
        categories=[category("1", "Breast")],
        procedures=[procedure("10", "Augmentation", parent="1")],
        cases=[case("100", ["10"], details="<p>Great result</p>")],
    )


@pytest.fixture
def make_service(mirror, audit_log, clock):
    """Factory for a SyncService over the shared in-memory stores."""

    def _make(sources, **settings):
        return SyncService(
            sources,
            mirror,
            audit_log,
            lock=SyncLock(),
            settings=SyncConfig(page_delay=0, **settings),
            clock=clock,
            sleep=lambda _: None,
        )

    return _make
