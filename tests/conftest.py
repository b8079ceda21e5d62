"""Shared fixtures for review-loop tests."""

import pytest

from reviewloop.controller import RoundController
from reviewloop.models import Review
from reviewloop.reviewloop_logging import observability_hooks, performance_monitor


@pytest.fixture(autouse=True)
def reset_observability():
    """Keep global metrics and hooks from leaking between tests."""
    performance_monitor.clear()
    saved = {event: list(callbacks) for event, callbacks in observability_hooks.hooks.items()}
    yield
    performance_monitor.clear()
    observability_hooks.hooks.clear()
    observability_hooks.hooks.update(saved)


@pytest.fixture
def review():
    return Review(review_id="001-auth-design", title="Auth Design", document_path="docs/auth.md")


@pytest.fixture
def controller(review):
    return RoundController(review)


@pytest.fixture(autouse=True)
def isolated_storage_env(monkeypatch):
    monkeypatch.delenv("REVIEWLOOP_STORAGE_DIR", raising=False)
    monkeypatch.delenv("REVIEWLOOP_PROJECT_ROOT", raising=False)
