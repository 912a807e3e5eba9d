"""
Pytest configuration and fixtures for insight layer tests.

This conftest.py provides shared fixtures: a controllable epoch-ms clock, an
in-memory state store, a scripted mock provider and an orchestrator factory
wired to all three.
"""
import logging

import pytest

from ai.model_client import MockClient
from ai.orchestrator import InsightOrchestrator
from ai.registry import build_registry
from infra.metrics import QualityRecorder
from infra.state_store import InsightStore, MemoryBackend
from tests.helpers import FakeClock, contract_json


@pytest.fixture(autouse=True)
def quiet_third_party_loggers():
    """Keep SDK and HTTP client chatter out of captured test logs."""
    for name in ("httpx", "openai", "anthropic"):
        logging.getLogger(name).setLevel(logging.WARNING)
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InsightStore(MemoryBackend())


@pytest.fixture
def mock_client():
    return MockClient(default_response=contract_json())


@pytest.fixture
def metrics():
    return QualityRecorder(enabled=True)


@pytest.fixture
def make_orchestrator(clock, store, mock_client):
    """Factory so tests can override registry or client while sharing clock and store."""

    def factory(**kwargs):
        kwargs.setdefault("registry", build_registry())
        kwargs.setdefault("store", store)
        kwargs.setdefault("client", mock_client)
        kwargs.setdefault("clock", clock)
        return InsightOrchestrator(**kwargs)

    return factory
