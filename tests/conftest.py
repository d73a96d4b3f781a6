"""Global pytest configuration and fixtures."""

import pytest
import sys
import tempfile
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from foundry_recovery.config import ClusterConfig, RecoveryConfig, RedisConfig
from tests.utils import FakeCluster


@pytest.fixture
def temp_backup_dir():
    """Create temporary backup directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def recovery_config(temp_backup_dir):
    """Configuration with short waits and no BGSAVE settle delay."""
    return RecoveryConfig(
        cluster=ClusterConfig(poll_interval=0.01, scale_down_timeout=0.05, rollout_timeout=0.05),
        redis=RedisConfig(settle_seconds=0, restart_timeout=0.05, restart_poll_interval=0.01),
        workspace_dir=str(temp_backup_dir),
    )


@pytest.fixture
def fake_cluster():
    return FakeCluster()
