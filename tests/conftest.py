"""Pytest configuration for psd-export tests."""

from typing import Any

import pytest

from psd_export.config import Config
from psd_export.store import MemoryStore


def pytest_configure(config: Any) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "composite: mark test as requiring composite dependencies (aggdraw, scipy, scikit-image)",
    )


# Check if composite dependencies are available
try:
    import aggdraw  # noqa: F401 # type: ignore
    import scipy  # noqa: F401 # type: ignore
    import skimage  # noqa: F401

    HAS_COMPOSITE = True
except ImportError:
    HAS_COMPOSITE = False


# Marker to skip tests that require composite dependencies
skip_without_composite = pytest.mark.skipif(
    not HAS_COMPOSITE,
    reason="Requires composite dependencies: pip install 'psd-export[composite]'",
)


def pytest_collection_modifyitems(config: Any, items: list) -> None:
    """Skip tests marked ``composite`` when the dependencies are missing."""
    for item in items:
        if "composite" in item.keywords:
            item.add_marker(skip_without_composite)


@pytest.fixture
def config(tmp_path: Any) -> Config:
    return Config(
        public_path=tmp_path / "public",
        uploads_path=tmp_path / "uploads",
        exports_path=tmp_path / "exports",
        db_path=tmp_path / "db" / "test.sqlite3",
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()
