"""Pytest fixtures shared across tests."""

import pytest

from unity_docs_rag.api import app, get_pipeline


@pytest.fixture(autouse=True)
def reset_api_pipeline_after_test():
    """Drop dependency overrides and the cached pipeline after each test for isolation."""
    yield
    app.dependency_overrides.clear()
    get_pipeline.cache_clear()
