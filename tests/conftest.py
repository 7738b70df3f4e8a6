"""Shared fixtures for roomwatch tests."""

import os

import pytest

from roomwatch.config import KNOWN_KEYS


@pytest.fixture(autouse=True)
def _no_sops(monkeypatch):
    """Ensure tests never try to invoke SOPS or read the developer's environment."""
    monkeypatch.setenv("ROOMWATCH_USE_SOPS", "false")
    for key in KNOWN_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def project_root():
    """Return the project root path."""
    return os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
