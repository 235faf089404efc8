"""
Pytest configuration and fixtures for VeilChat tests.

Provides common fixtures and test utilities for unit and integration tests.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from veilchat.backend import InMemoryBackend
from veilchat.config import Config
from veilchat.key_bootstrap import KeyBootstrap
from veilchat.key_store import KeyStore, MemoryKeyStorage


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="veilchat_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def backend() -> InMemoryBackend:
    """Provide an empty in-memory backend."""
    return InMemoryBackend()


@pytest.fixture
def key_store() -> KeyStore:
    """Provide an empty in-memory key cache."""
    return KeyStore(MemoryKeyStorage())


@pytest.fixture
def bootstrap(backend: InMemoryBackend, key_store: KeyStore) -> KeyBootstrap:
    """Provide a key bootstrap wired to the backend and key cache fixtures."""
    return KeyBootstrap(backend, key_store)


@pytest.fixture
def config(temp_dir: Path) -> Config:
    """
    Provide a default configuration rooted in the temporary directory.

    Returns:
        Config: Configuration with data_dir set to temp_dir
    """
    cfg = Config(temp_dir / "config.toml")
    cfg.set("storage", "data_dir", str(temp_dir))
    return cfg


@pytest.fixture
def reset_package_logger() -> Generator[None, None, None]:
    """Remove handlers added by setup_logging after the test."""
    yield
    package_logger = logging.getLogger("veilchat")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def user_a() -> str:
    return "user-alice"


@pytest.fixture
def user_b() -> str:
    return "user-bob"


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add integration marker to integration test modules
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
