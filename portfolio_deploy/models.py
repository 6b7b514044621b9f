from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


class Health(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ProbeState(str, Enum):
    UNKNOWN = "unknown"
    CHECKING = "checking"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ProcessStatus(str, Enum):
    ONLINE = "online"
    STOPPED = "stopped"
    STOPPING = "stopping"
    LAUNCHING = "launching"
    ERRORED = "errored"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value):
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class DeployStep(str, Enum):
    VALIDATE_ENVIRONMENT = "validate-environment"
    PRE_HOOK = "pre-hook"
    BACKUP = "backup"
    INSTALL_DEPENDENCIES = "install-dependencies"
    BUILD = "build"
    PROCESS_RELOAD = "process-reload"
    EDGE_RELOAD = "edge-reload"
    HEALTH_CHECK = "post-deploy-health-check"
    POST_HOOK = "post-hook"
    CLEANUP = "cleanup-old-backups"


@dataclass(frozen=True)
class Release:
    """One built artifact set, identified by its build timestamp"""
    release_id: str
    path: Path
    created_at: datetime
    source: str = "build"

    def to_dict(self):
        return {
            "release_id": self.release_id,
            "path": str(self.path),
            "created_at": self.created_at.isoformat(),
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            release_id=data["release_id"],
            path=Path(data["path"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            source=data.get("source", "build"),
        )


@dataclass(frozen=True)
class Backup:
    """A retained copy of a previous release"""
    name: str
    path: Path
    created_at: datetime


@dataclass
class ProcessInfo:
    """One row of the process manager's table"""
    name: str
    pm_id: int
    pid: Optional[int] = None
    status: ProcessStatus = ProcessStatus.UNKNOWN
    cpu: float = 0.0
    memory: int = 0  # bytes
    restarts: int = 0
    exec_mode: str = "fork"


@dataclass
class CheckResult:
    name: str
    status: Health
    details: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def healthy(self):
        return self.status == Health.HEALTHY

    def to_dict(self):
        data = {"name": self.name, "status": self.status.value}
        if self.details:
            data["details"] = self.details
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class HealthReport:
    """Aggregate of named sub-check results, produced fresh per probe"""
    timestamp: datetime
    uptime: int  # seconds since the checker started
    version: str
    checks: dict = field(default_factory=dict)  # name -> CheckResult

    @property
    def status(self):
        if all(check.healthy for check in self.checks.values()):
            return Health.HEALTHY
        return Health.UNHEALTHY

    @property
    def healthy(self):
        return self.status == Health.HEALTHY

    def to_dict(self):
        return {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "uptime": self.uptime,
            "version": self.version,
            "checks": {name: check.to_dict() for name, check in self.checks.items()},
        }


@dataclass
class DeploymentAttempt:
    """Tracks which pipeline step is running, for error attribution and rollback"""
    attempt_id: str
    started_at: datetime
    current_step: Optional[DeployStep] = None
    completed_steps: list = field(default_factory=list)
    backup: Optional[Backup] = None
    release: Optional[Release] = None
    failed_step: Optional[DeployStep] = None
    error: Optional[Exception] = None


@dataclass
class DeploymentResult:
    """Results from a deployment run"""
    success: bool
    steps_completed: list = field(default_factory=list)  # DeployStep values, in order
    failed_step: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None  # Class name from the error taxonomy
    rolled_back: bool = False  # Whether the previous release was restored and passed health
    rollback_error: Optional[str] = None
    backup: Optional[str] = None  # Name of the backup taken for this attempt
    release: Optional[str] = None
    history: list = field(default_factory=list)  # Ordered deployment events
