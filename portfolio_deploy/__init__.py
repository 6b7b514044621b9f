from .models import (
    Health, ProbeState, ProcessStatus, DeployStep, Release, Backup, ProcessInfo,
    CheckResult, HealthReport, DeploymentAttempt, DeploymentResult
)
from .config import Settings
from .backup import BackupManager
from .builder import ReleaseBuilder
from .supervisor import ProcessSupervisor
from .edge import EdgeReloader
from .health import HealthChecker, HealthProbe
from .orchestrator import DeploymentOrchestrator
from .failure import FailureInjector

__all__ = [
    "Health", "ProbeState", "ProcessStatus", "DeployStep", "Release", "Backup",
    "ProcessInfo", "CheckResult", "HealthReport", "DeploymentAttempt", "DeploymentResult",
    "Settings", "BackupManager", "ReleaseBuilder", "ProcessSupervisor", "EdgeReloader",
    "HealthChecker", "HealthProbe", "DeploymentOrchestrator", "FailureInjector"
]
