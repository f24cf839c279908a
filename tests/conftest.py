# tests/conftest.py

import os

import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient

# Load the test environment FIRST, before any lingoflow imports, so the
# settings singleton (and the rate limiter built from it) sees it.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), ".env.test"))

from lingoflow.main import app  # noqa: E402
from lingoflow.services.llm_service import ProviderCredentials  # noqa: E402
from lingoflow.workflows.registry import registry  # noqa: E402
from flow_fakes import FakeLLMService  # noqa: E402


@pytest.fixture
def fake_llm(mocker):
    """Replaces the provider client used by call steps."""
    fake = FakeLLMService()
    mocker.patch("lingoflow.workflows.nodes.llm_service", fake)
    return fake


@pytest.fixture
def credentials():
    return ProviderCredentials(provider="openai", api_key="sk-test0123456789abcdefghijkl")


@pytest.fixture
def handlers():
    """A private copy of the handler registry with a few test-only names."""
    local = registry.copy()
    local.predicate("never")(lambda result: False)
    return local


@pytest.fixture(scope="function")
def test_client(fake_llm):
    """
    Provides a TestClient for API integration tests.
    The app's lifespan (session registry start/shutdown) is managed by the TestClient.
    """
    with TestClient(app) as client:
        yield client
