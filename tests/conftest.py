# tests/conftest.py
import pytest
from fastapi.testclient import TestClient

from rentflow.adapters.simulated_rail import SimulatedRail
from rentflow.api.http import app, get_engine  # ensures imports resolve; run tests from repo root
from rentflow.services.engine import build_in_memory_engine


def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def rail():
    return SimulatedRail()


@pytest.fixture
def engine(rail):
    return build_in_memory_engine(rail=rail, sleep=_no_sleep)


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()
