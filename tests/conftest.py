from pathlib import Path

import pytest

from flowmark.config import EngineSettings
from flowmark.engine import HandlerRegistry, WorkflowEngine
from flowmark.persistence import WorkflowStores

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture(params=["memory", "sqlite"])
def stores(request, tmp_path):
    """Run store-level tests against both backends."""
    if request.param == "memory":
        return WorkflowStores.in_memory()
    return WorkflowStores.sqlite(str(tmp_path / "flowmark.db"))


@pytest.fixture
def memory_stores():
    return WorkflowStores.in_memory()


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def engine(memory_stores, registry):
    settings = EngineSettings(lock_retry_attempts=0, max_activities_per_execution=50)
    return WorkflowEngine(memory_stores, handlers=registry, settings=settings)


@pytest.fixture
def fixtures_dir():
    return FIXTURES
