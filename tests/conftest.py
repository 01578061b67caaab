"""Pytest fixtures shared by the test suite."""

from __future__ import annotations

import pytest

from tests.fakes import FakeDecoder


@pytest.fixture
def decoder() -> FakeDecoder:
    return FakeDecoder()
