"""
Pytest configuration and shared fixtures.
"""

import sys
from pathlib import Path

# Add backend to path
backend_path = Path(__file__).parent.parent
sys.path.insert(0, str(backend_path))

# Import fixtures
from tests.fixtures.fleet_fixtures import (  # noqa: E402
    fleet,
    hypervisor,
    notifier,
    prober,
    settings,
)

__all__ = [
    "fleet",
    "hypervisor",
    "notifier",
    "prober",
    "settings",
]
