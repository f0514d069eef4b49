"""Pytest configuration: make the src layout importable without installing."""

import logging
import sys
from pathlib import Path

import pytest

# Add the project root and src directory to Python path so tests can import properly
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(project_root / "src"))


@pytest.fixture(autouse=True)
def _capture_tripflow_logs(caplog):
    """Capture tripflow logs at DEBUG so assertions can inspect them."""
    caplog.set_level(logging.DEBUG, logger="tripflow")
