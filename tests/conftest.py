"""Shared test harness configuration."""

import os

# Use litellm's bundled model cost map instead of fetching it over the network at import.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

import pytest
import structlog


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo logging configuration done by a test (e.g. CLI runs bind a captured stderr)."""
    yield
    structlog.reset_defaults()
