"""Shared pytest configuration and fixtures."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from weekly_activity.rest_client import NotFoundError, RestClient


NOW = datetime(2024, 1, 20, tzinfo=timezone.utc)


def _lookup(routes: dict, path: str):
    """Return the routed value for a path, raising routed exceptions."""
    if path not in routes:
        raise NotFoundError(f"HTTP 404 for {path}: Not Found", status=404, url=path)
    value = routes[path]
    if isinstance(value, BaseException):
        raise value
    if callable(value):
        return value()
    return value


@pytest.fixture
def make_client():
    """Factory for a RestClient double that answers from a path -> value map.

    Values may be payloads, exceptions to raise, or zero-argument callables.
    Unrouted paths raise NotFoundError. Every call is recorded on the mock.
    """
    def _make(routes: dict) -> MagicMock:
        client = MagicMock(spec=RestClient)
        client.get_list.side_effect = lambda path, params=None, stop=None: _lookup(routes, path)
        client.get_json.side_effect = lambda path, params=None: _lookup(routes, path)
        return client
    return _make


@pytest.fixture
def fixed_now():
    return NOW
