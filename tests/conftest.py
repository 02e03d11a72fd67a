"""Global pytest configuration and fixtures."""

import pytest
import sys
import tempfile
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from tests.utils import make_config


@pytest.fixture
def temp_root():
    """Temporary backup storage root."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config(temp_root):
    """Config with the storage root under a temporary directory and no channels."""
    return make_config(temp_root)
