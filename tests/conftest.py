"""Shared test fixtures."""

from pathlib import Path

import pytest

from ledgerline.config import Config
from ledgerline.database.repository import Repository

# Test fixture config directory with synthetic data
FIXTURE_CONFIG_DIR = Path(__file__).parent / "fixtures" / "config"

MIGRATIONS_DIR = Path(__file__).parent.parent / "ledgerline" / "database" / "migrations"


@pytest.fixture
def repo():
    """In-memory repository with the full schema applied."""
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def config():
    return Config(FIXTURE_CONFIG_DIR)
