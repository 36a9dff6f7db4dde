"""Shared pytest fixtures for the web app deployer tests."""

import sys
from pathlib import Path

import pytest

# src holds the webapp_deployer package, tests holds azure_mock
for path in (Path(__file__).parent.parent / "src", Path(__file__).parent):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from azure_mock import MockAppServiceClient  # noqa: E402


@pytest.fixture
def app_service() -> MockAppServiceClient:
    """Empty in-memory App Service subscription."""
    return MockAppServiceClient()


@pytest.fixture
def build_dir(tmp_path: Path) -> Path:
    """Directory for build artifacts created by a test."""
    directory = tmp_path / "build"
    directory.mkdir()
    return directory
