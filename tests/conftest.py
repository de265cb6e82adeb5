"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure the package and the test helpers are importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fakes import Clock, FakeWallet, make_ctx  # noqa: E402


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def ctx(tmp_path, clock):
    context = make_ctx(tmp_path, clock=clock)
    yield context
    context.db.close()


@pytest.fixture
def wallet_ctx(tmp_path, clock):
    context = make_ctx(tmp_path, wallet=FakeWallet(), clock=clock)
    yield context
    context.db.close()
