"""
Pytest configuration for checkout engine tests.

Ensures the project root and this directory are importable and provides
the shared fakes as fixtures.
"""

import sys
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).parent
PROJECT_ROOT = TESTS_DIR.parent
for path in (PROJECT_ROOT, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from checkout_engine.services.event_bus import InMemoryEventBus  # noqa: E402
from checkout_engine.services.navigation import RecordingNavigator  # noqa: E402
from checkout_engine.services.session_store import InMemorySessionStore  # noqa: E402
from fakes import FakeBackendApi, FakeHostedCheckout, FakeSigningSurface, ScriptedPrompts  # noqa: E402


@pytest.fixture
def api():
    return FakeBackendApi()


@pytest.fixture
def authed_api():
    return FakeBackendApi(token="token-1")


@pytest.fixture
def session():
    return InMemorySessionStore()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def navigator():
    return RecordingNavigator()


@pytest.fixture
def hosted_checkout():
    return FakeHostedCheckout()


@pytest.fixture
def surface():
    return FakeSigningSurface()


@pytest.fixture
def prompts():
    return ScriptedPrompts()
