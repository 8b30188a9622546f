"""Root conftest.py for test configuration.

Ensures local src/ directory takes priority over any installed packages.
"""

import sys
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog

# Insert local src directory at the beginning of sys.path
# This ensures that the local nextcov package is used, not any installed one
_src_dir = Path(__file__).parent.parent / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

# Force reimport of nextcov modules if already imported
for module_name in list(sys.modules.keys()):
    if module_name.startswith("nextcov"):
        del sys.modules[module_name]


@pytest.fixture(autouse=True)
def reset_structlog() -> Generator[None, None, None]:
    """Undo configure_logging() between tests so capture_logs sees every level."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def no_worker_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove the worker-count override for tests that depend on auto sizing."""
    monkeypatch.delenv("NEXTCOV_WORKERS", raising=False)
