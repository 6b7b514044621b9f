from dataclasses import dataclass, field

from .logger import get_logger, success
from .models import ProcessStatus


@dataclass
class VerificationReport:
    passed: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    warned: list = field(default_factory=list)

    @property
    def ok(self):
        return not self.failed

    def summary(self):
        return f"{len(self.passed)} passed, {len(self.failed)} failed, {len(self.warned)} warnings"


class DeploymentVerifier:
    """Read-only checks that an installed deployment is complete and serving"""

    def __init__(self, settings, runner, supervisor, edge, probe):
        self.settings = settings
        self.runner = runner
        self.supervisor = supervisor
        self.edge = edge
        self.probe = probe
        self.logger = get_logger("verify")
        self.report = VerificationReport()

    def _pass(self, message):
        self.report.passed.append(message)
        success(self.logger, f"PASS: {message}")

    def _fail(self, message):
        self.report.failed.append(message)
        self.logger.error(f"FAIL: {message}")

    def _warn(self, message):
        self.report.warned.append(message)
        self.logger.warning(f"WARN: {message}")

    def check_commands(self):
        self.logger.info("Checking system prerequisites...")
        for name in ("systemctl", "curl", *self.settings.required_commands):
            if self.runner.which(name):
                self._pass(f"{name} is installed")
            else:
                self._fail(f"{name} is not installed or not in PATH")

    def check_directories(self):
        self.logger.info("Checking directories...")
        s = self.settings
        if s.deploy_path.is_dir():
            self._pass(f"Application directory exists: {s.deploy_path}")
        else:
            self._fail(f"Application directory does not exist: {s.deploy_path}")
        if s.log_file is not None:
            if s.log_file.parent.is_dir():
                self._pass(f"Log directory exists: {s.log_file.parent}")
            else:
                self._fail(f"Log directory does not exist: {s.log_file.parent}")
        if s.backup_path.is_dir():
            self._pass(f"Backup directory exists: {s.backup_path}")
        else:
            self._warn(f"Backup directory does not exist yet: {s.backup_path}")

    def check_application_files(self):
        self.logger.info("Checking application files...")
        s = self.settings
        for path in (s.deploy_path / "package.json", s.ecosystem_file, s.entry_path):
            if path.is_file():
                self._pass(f"Essential file exists: {path.name}")
            else:
                self._fail(f"Essential file missing: {path}")

        for directory, label in ((s.deploy_path / "node_modules", "Node modules"), (s.artifact_path, "Build directory")):
            if not directory.is_dir():
                self._fail(f"{label} directory does not exist")
            elif any(directory.iterdir()):
                self._pass(f"{label} directory is not empty")
            else:
                self._fail(f"{label} directory is empty")

    async def check_processes(self):
        self.logger.info("Checking PM2 processes...")
        processes = await self.supervisor.status()
        if not processes:
            self._fail("No PM2 processes found")
            return
        main = [p for p in processes if p.name == self.settings.app_name]
        if main and all(p.status == ProcessStatus.ONLINE for p in main):
            self._pass(f"{self.settings.app_name} is online in PM2 ({len(main)} workers)")
        else:
            self._fail(f"{self.settings.app_name} is not online in PM2")
        health = [p for p in processes if p.name == self.settings.health_process_name]
        if health and health[0].status == ProcessStatus.ONLINE:
            self._pass(f"{self.settings.health_process_name} is online in PM2")
        else:
            self._warn(f"{self.settings.health_process_name} is not online in PM2")

    async def check_nginx(self):
        self.logger.info("Checking nginx configuration...")
        if not self.runner.which("nginx"):
            self._warn("Nginx is not installed")
            return
        if await self.edge.is_active():
            self._pass("Nginx is running")
        else:
            self._warn("Nginx is not running")
        valid, _ = await self.edge.validate()
        if valid:
            self._pass("Nginx configuration is valid")
        else:
            self._fail("Nginx configuration has errors")

    async def check_endpoints(self):
        self.logger.info("Checking network endpoints...")
        if await self.probe.check(self.settings.main_app_url):
            self._pass(f"Application responds on port {self.settings.main_app_port}")
        else:
            self._fail(f"Application does not respond on port {self.settings.main_app_port}")
        if await self.probe.check(self.settings.health_check_url):
            self._pass(f"Health endpoint responds on port {self.settings.health_port}")
        else:
            self._warn(f"Health endpoint does not respond on port {self.settings.health_port}")

    async def run(self):
        self.report = VerificationReport()
        self.check_commands()
        self.check_directories()
        self.check_application_files()
        await self.check_processes()
        await self.check_nginx()
        await self.check_endpoints()
        if self.report.ok:
            success(self.logger, f"Verification completed: {self.report.summary()}")
        else:
            self.logger.error(f"Verification completed: {self.report.summary()}")
        return self.report
