"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import pytest
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.liveaid.cache import ContentReadyCache
from src.liveaid.content import FactPoolQuestionGenerator
from src.liveaid.curriculum import default_fact_pool
from src.liveaid.locks import TubeLocks
from src.liveaid.models import Stitch, TubeId
from src.liveaid.persistence import InMemoryStateStore
from src.liveaid.scheduler import SchedulerConfig, SchedulerService
from src.liveaid.state import UserStateRegistry


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "property: Hypothesis property tests")
    config.addinivalue_line("markers", "integration: Integration tests (sqlite database)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "property" in str(item.fspath):
            item.add_marker(pytest.mark.property)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def registry():
    return UserStateRegistry()


@pytest.fixture
def locks():
    return TubeLocks(timeout_seconds=0.5)


@pytest.fixture
def make_user(registry):
    """
    Factory creating a user whose tubes hold the given stitch ids.

    ``make_user("u1", {TubeId.TUBE1: ["A", "B", "C"]})`` places A..C at
    positions 1..3 of tube1. Pass ``{position: id}`` dicts for sparse maps.
    """

    def _make(user_id="u1", tubes=None, concept_code="0001"):
        state = registry.create(user_id)
        for tube_id, stitches in (tubes or {}).items():
            items = stitches.items() if isinstance(stitches, dict) else enumerate(stitches, start=1)
            for position, stitch_id in items:
                state.add_stitch(Stitch(id=stitch_id, tube_id=tube_id, concept_code=concept_code), position)
        return state

    return _make


@pytest.fixture
def small_seed():
    """Five stitches per tube, all backed by the default fact pool."""
    codes = {TubeId.TUBE1: "0001", TubeId.TUBE2: "0005", TubeId.TUBE3: "1001"}
    seed = {}
    for n, tube_id in enumerate(TubeId, start=1):
        seed[tube_id] = [
            (pos, Stitch(id=f"s{n}_{pos}", tube_id=tube_id, concept_code=codes[tube_id], creation_order=pos))
            for pos in range(1, 6)
        ]
    return seed


@pytest.fixture
def generator():
    return FactPoolQuestionGenerator(default_fact_pool())


@pytest.fixture
def cache():
    return ContentReadyCache(max_age_seconds=3600)


@pytest.fixture
def state_store():
    return InMemoryStateStore()


@pytest.fixture
def service(generator, state_store):
    config = SchedulerConfig(lock_timeout_seconds=0.5, compression_gap_threshold=10)
    return SchedulerService(generator, store=state_store, config=config)
