"""
Pytest configuration and fixtures for place harvester tests.
"""

import os
import tempfile
from pathlib import Path

import pytest
from hypothesis import settings, Verbosity

# Business loggers open their files on first use; keep them out of the repo
_LOG_DIR = tempfile.mkdtemp(prefix="place_harvester_logs_")
os.environ.setdefault("HARVESTER_LOG_DIR", _LOG_DIR)

# Configure Hypothesis for faster test runs
settings.register_profile("fast", max_examples=25, deadline=5000, verbosity=Verbosity.quiet)
settings.register_profile("thorough", max_examples=200, deadline=30000, verbosity=Verbosity.normal)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "fast"))


@pytest.fixture(scope="function")
def temp_state_path(tmp_path):
    """Fresh state file path for each test."""
    return str(Path(tmp_path) / "session_state.json")


@pytest.fixture(scope="function")
def fast_orchestrator_config():
    """Orchestrator timings scaled down to milliseconds."""
    from config import OrchestratorConfig
    return OrchestratorConfig(
        capture_timeout=0.05,
        max_retries=3,
        backoff_base=0.01,
        backoff_cap=0.05,
        stuck_after=60.0,
    )


@pytest.fixture(scope="function")
def fast_panel_config():
    """Panel timings scaled down to milliseconds."""
    from config import PanelConfig
    return PanelConfig(
        stall_timeout=0.3,
        success_cooldown=0.001,
        failure_cooldown=0.001,
        recovery_delay=0.01,
        max_job_wait=1.0,
        max_retries=3,
    )


def pytest_configure(config):
    """Configure pytest with custom settings."""
    import logging
    logging.getLogger("place_harvester").setLevel(logging.WARNING)
    logging.getLogger("business").setLevel(logging.WARNING)
    logging.getLogger("hypothesis").setLevel(logging.WARNING)


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers."""
    for item in items:
        # Mark property-based tests
        if any(marker.name == "given" for marker in item.iter_markers()) \
                or "properties" in item.fspath.basename:
            item.add_marker(pytest.mark.property)

        if "integration" in item.fspath.basename:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
