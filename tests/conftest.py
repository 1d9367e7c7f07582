"""
pytest configuration for avropipe tests.

Adds src directory to Python path for imports and provides shared fixtures.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))


@pytest.fixture(autouse=True)
def _clear_logging_context():
    """Context variables leak between tests that share a thread; reset them."""
    from core.logging.context import clear_log_context
    from core.logging.message_context import clear_message_context

    yield
    clear_log_context()
    clear_message_context()
