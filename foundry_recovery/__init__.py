from .config import RecoveryConfig
from .models import BackupRun, ComponentResult, Manifest, RemoteLocation, RestoreRun

__version__ = "0.4.0"
__author__ = "Foundry Platform Team"
__url__ = "https://github.com/foundry-platform/foundry-recovery"

__all__ = [
    "RecoveryConfig",
    "BackupRun",
    "RestoreRun",
    "ComponentResult",
    "Manifest",
    "RemoteLocation",
]
