"""Shared test fixtures for mongoshape tests."""

from __future__ import annotations

import pytest

from tests.models import make_db


@pytest.fixture
def db():
    """Database whose store supports transactions."""
    return make_db()


@pytest.fixture
def optimistic_db():
    """Database whose store rejects transactions like a standalone server."""
    return make_db(supports_transactions=False)
