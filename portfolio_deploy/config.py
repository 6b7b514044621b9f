import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import dotenv_values

from .logger import get_logger

logger = get_logger("config")


def _env_str(env, name, default):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _env_bool(env, name, default):
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(env, name, default, minimum=None):
    """Parse an integer env var, falling back to the default on invalid input."""
    raw = env.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw.strip())
        except ValueError:
            logger.warning(f"Invalid integer for {name}: {raw!r}, using {default}")
            value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_float(env, name, default):
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning(f"Invalid number for {name}: {raw!r}, using {default}")
        return default


@dataclass
class Settings:
    """Configuration shared by the deploy CLI and the health server"""
    app_name: str = "portfolio"
    app_version: str = "2.0.0"
    main_app_host: str = "localhost"
    main_app_port: int = 3000
    health_port: int = 3001
    health_interval_s: float = 30.0  # Periodic background check
    health_timeout_s: float = 5.0  # Per-request timeout for HTTP checks
    health_check_url: str = None  # Defaults to the local /health endpoint
    health_check_attempts: int = 10
    health_check_backoff_s: float = 2.0
    startup_grace_s: float = 5.0  # Wait before probing freshly reloaded processes
    log_level: str = "info"
    metrics_enabled: bool = True
    metrics_port: int = 9090
    memory_threshold: float = 90.0  # percent
    cpu_threshold: float = 90.0
    disk_threshold: float = 95.0
    deploy_path: Path = Path("/var/www/portfolio")
    backup_path: Path = Path("/var/backups/portfolio")
    backup_retention: int = 5
    verify_backups: bool = False
    log_file: Path = Path("/var/log/portfolio/deploy.log")
    lock_file: Path = None  # Defaults to <deploy_path>/.deploy.lock
    deploy_user: str = ""  # Empty skips the user check
    rollback_enabled: bool = True
    use_sudo: bool = True
    min_node_version: str = "20.0.0"
    artifact_dir: str = "dist"
    entry_file: str = "index.html"
    metadata_files: tuple = ("package.json", "ecosystem.config.js")
    required_commands: tuple = ("node", "npm", "pm2", "nginx")
    pre_deploy_hook: str = ""
    post_deploy_hook: str = ""
    notify_command: str = "slack-notify"
    health_process_name: str = "portfolio-health-check"

    def __post_init__(self):
        self.deploy_path = Path(self.deploy_path)
        self.backup_path = Path(self.backup_path)
        self.log_file = Path(self.log_file) if self.log_file else None
        if self.lock_file is None:
            self.lock_file = self.deploy_path / ".deploy.lock"
        else:
            self.lock_file = Path(self.lock_file)
        if not self.health_check_url:
            self.health_check_url = f"http://localhost:{self.health_port}/health"

    @property
    def main_app_url(self):
        return f"http://{self.main_app_host}:{self.main_app_port}/"

    @property
    def artifact_path(self):
        return self.deploy_path / self.artifact_dir

    @property
    def entry_path(self):
        return self.artifact_path / self.entry_file

    @property
    def ecosystem_file(self):
        return self.deploy_path / "ecosystem.config.js"

    @classmethod
    def from_env(cls, environ=None, env_file=None):
        """Build settings from an env file overlaid with the process environment.

        Interval and timeout are given in milliseconds, the way the Node
        services read them; everything else uses its natural unit.
        """
        env = {}
        if env_file is not None:
            path = Path(env_file)
            if path.exists():
                env.update({k: v for k, v in dotenv_values(path).items() if v is not None})
            else:
                logger.warning(f"Env file not found: {path}")
        env.update(os.environ if environ is None else environ)

        deploy_path = Path(_env_str(env, "DEPLOY_PATH", "/var/www/portfolio"))
        return cls(
            app_name=_env_str(env, "APP_NAME", "portfolio"),
            app_version=_env_str(env, "APP_VERSION", "2.0.0"),
            main_app_host=_env_str(env, "MAIN_APP_HOST", "localhost"),
            main_app_port=_env_int(env, "PORT", 3000, minimum=1),
            health_port=_env_int(env, "HEALTH_CHECK_PORT", 3001, minimum=1),
            health_interval_s=_env_int(env, "HEALTH_CHECK_INTERVAL", 30000, minimum=1000) / 1000.0,
            health_timeout_s=_env_int(env, "HEALTH_CHECK_TIMEOUT", 5000, minimum=100) / 1000.0,
            health_check_url=_env_str(env, "HEALTH_CHECK_URL", None),
            health_check_attempts=_env_int(env, "HEALTH_CHECK_ATTEMPTS", 10, minimum=1),
            health_check_backoff_s=_env_float(env, "HEALTH_CHECK_BACKOFF", 2.0),
            startup_grace_s=_env_float(env, "STARTUP_GRACE", 5.0),
            log_level=_env_str(env, "LOG_LEVEL", "info"),
            metrics_enabled=_env_bool(env, "ENABLE_METRICS", True),
            metrics_port=_env_int(env, "METRICS_PORT", 9090, minimum=1),
            memory_threshold=_env_float(env, "MEMORY_THRESHOLD", 90.0),
            cpu_threshold=_env_float(env, "CPU_THRESHOLD", 90.0),
            disk_threshold=_env_float(env, "DISK_THRESHOLD", 95.0),
            deploy_path=deploy_path,
            backup_path=Path(_env_str(env, "BACKUP_PATH", "/var/backups/portfolio")),
            backup_retention=_env_int(env, "BACKUP_RETENTION", 5, minimum=1),
            verify_backups=_env_bool(env, "VERIFY_BACKUPS", False),
            log_file=Path(_env_str(env, "DEPLOY_LOG_FILE", "/var/log/portfolio/deploy.log")),
            lock_file=_env_str(env, "DEPLOY_LOCK_FILE", None),
            deploy_user=_env_str(env, "DEPLOY_USER", ""),
            rollback_enabled=_env_bool(env, "ROLLBACK_ENABLED", True),
            use_sudo=_env_bool(env, "USE_SUDO", True),
            min_node_version=_env_str(env, "MIN_NODE_VERSION", "20.0.0"),
            pre_deploy_hook=_env_str(env, "PRE_DEPLOY_HOOK", ""),
            post_deploy_hook=_env_str(env, "POST_DEPLOY_HOOK", ""),
            notify_command=_env_str(env, "NOTIFY_COMMAND", "slack-notify"),
        )

    def env_lines(self):
        """Render the key=value file the services read at start-up."""
        return [
            "NODE_ENV=production",
            f"PORT={self.main_app_port}",
            f"HEALTH_CHECK_PORT={self.health_port}",
            f"LOG_LEVEL={self.log_level}",
            f"HEALTH_CHECK_INTERVAL={int(self.health_interval_s * 1000)}",
            f"HEALTH_CHECK_TIMEOUT={int(self.health_timeout_s * 1000)}",
            f"APP_NAME={self.app_name}",
            f"APP_VERSION={self.app_version}",
            f"APP_DIR={self.deploy_path}",
            f"ENABLE_METRICS={'true' if self.metrics_enabled else 'false'}",
            f"METRICS_PORT={self.metrics_port}",
        ]

    def write_env_file(self, path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(self.env_lines()) + "\n", encoding="utf-8")
        logger.info(f"Wrote environment file {path}")
        return path
