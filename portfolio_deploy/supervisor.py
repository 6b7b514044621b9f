import json
import os
from pathlib import Path

from .errors import ProcessReloadFailed
from .logger import get_logger, success
from .models import ProcessInfo, ProcessStatus, Release
from .runner import CommandFailed

RELEASE_FILE = ".release.json"


def parse_process_table(raw):
    """Parse `pm2 jlist` output into ProcessInfo rows"""
    rows = json.loads(raw or "[]")
    processes = []
    for row in rows:
        env = row.get("pm2_env") or {}
        monit = row.get("monit") or {}
        processes.append(ProcessInfo(
            name=row.get("name", ""),
            pm_id=int(row.get("pm_id", -1)),
            pid=row.get("pid") or None,
            status=ProcessStatus.parse(env.get("status")),
            cpu=float(monit.get("cpu") or 0.0),
            memory=int(monit.get("memory") or 0),
            restarts=int(env.get("restart_time") or 0),
            exec_mode=(env.get("exec_mode") or "fork").replace("_mode", ""),
        ))
    return processes


class ProcessSupervisor:
    """Owns the PM2 process table and the reference to the live release.

    ``replace`` and ``restart`` are the only ways the live release changes.
    """

    def __init__(self, runner, settings):
        self.runner = runner
        self.settings = settings
        self.app_name = settings.app_name
        self.deploy_path = Path(settings.deploy_path)
        self.logger = get_logger("supervisor")
        self._current = None

    @property
    def ecosystem_file(self):
        return self.settings.ecosystem_file

    def desired_instances(self):
        return os.cpu_count() or 1

    def desired_apps(self):
        s = self.settings
        return [
            {
                "name": self.app_name,
                "script": "npm",
                "args": "run serve",
                "instances": "max",
                "exec_mode": "cluster",
                "max_memory_restart": "1G",
                "env_production": {"NODE_ENV": "production", "PORT": s.main_app_port},
                "autorestart": True,
                "max_restarts": 10,
                "min_uptime": "10s",
                "restart_delay": 4000,
                "kill_timeout": 5000,
                "listen_timeout": 3000,
                "wait_ready": True,
                "merge_logs": True,
                "instance_var": "INSTANCE_ID",
            },
            {
                "name": s.health_process_name,
                "script": "portfolio-health",
                "interpreter": "none",
                "instances": 1,
                "exec_mode": "fork",
                "env_production": {
                    "HEALTH_CHECK_PORT": s.health_port,
                    "PORT": s.main_app_port,
                    "DEPLOY_PATH": str(s.deploy_path),
                    "APP_VERSION": s.app_version,
                },
                "autorestart": True,
                "max_restarts": 5,
                "min_uptime": "10s",
                "restart_delay": 2000,
            },
        ]

    def write_ecosystem(self):
        body = json.dumps({"apps": self.desired_apps()}, indent=2)
        self.ecosystem_file.write_text(f"module.exports = {body};\n", encoding="utf-8")
        self.logger.info(f"Wrote process definition {self.ecosystem_file}")

    async def _pm2(self, *args):
        try:
            return await self.runner.check("pm2", *args, cwd=self.deploy_path)
        except CommandFailed as e:
            self.logger.error(f"PM2 command failed: {e}")
            raise ProcessReloadFailed(str(e)) from e

    async def exists(self):
        result = await self.runner.run("pm2", "describe", self.app_name, cwd=self.deploy_path)
        return result.ok

    async def status(self):
        result = await self.runner.run("pm2", "jlist", cwd=self.deploy_path)
        if not result.ok:
            self.logger.warning(f"pm2 jlist failed: {result.stderr.strip()}")
            return []
        try:
            return parse_process_table(result.stdout)
        except (ValueError, TypeError) as e:
            self.logger.warning(f"Unreadable pm2 process table: {e}")
            return []

    async def verify_online(self):
        processes = [p for p in await self.status() if p.name == self.app_name]
        if not processes:
            raise ProcessReloadFailed(f"PM2 process {self.app_name} is not running")
        offline = [p for p in processes if p.status != ProcessStatus.ONLINE]
        if offline:
            states = ", ".join(f"{p.pm_id}:{p.status.value}" for p in offline)
            raise ProcessReloadFailed(f"PM2 process {self.app_name} is not online ({states})")
        self.logger.debug(f"{len(processes)}/{self.desired_instances()} workers online")
        return processes

    def current_release(self):
        if self._current is None:
            path = self.deploy_path / RELEASE_FILE
            if path.is_file():
                try:
                    self._current = Release.from_dict(json.loads(path.read_text()))
                except (ValueError, KeyError) as e:
                    self.logger.warning(f"Ignoring unreadable {path}: {e}")
        return self._current

    def _set_current(self, release):
        self._current = release
        (self.deploy_path / RELEASE_FILE).write_text(json.dumps(release.to_dict(), indent=2))

    async def replace(self, release):
        """Hand the live slot to ``release``: rolling reload, or cold start if nothing runs"""
        self.logger.info("Deploying with PM2...")
        if not self.ecosystem_file.is_file():
            self.write_ecosystem()

        if await self.exists():
            self.logger.info("Reloading existing PM2 process...")
            await self._pm2("reload", str(self.ecosystem_file), "--env", "production")
        else:
            self.logger.info("Starting new PM2 process...")
            await self._pm2("start", str(self.ecosystem_file), "--env", "production")

        # Persist the process table so it is resurrected after a reboot
        await self._pm2("save")
        await self.verify_online()
        self._set_current(release)
        success(self.logger, f"PM2 deployment completed (release {release.release_id})")

    async def restart(self, release):
        """Cold restart from a restored release"""
        stop = await self.runner.run("pm2", "stop", self.app_name, cwd=self.deploy_path)
        if not stop.ok:
            self.logger.warning(f"pm2 stop {self.app_name} failed, starting anyway")
        if not self.ecosystem_file.is_file():
            self.write_ecosystem()
        await self._pm2("start", str(self.ecosystem_file), "--env", "production")
        await self._pm2("save")
        await self.verify_online()
        self._set_current(release)
        success(self.logger, f"PM2 restarted from release {release.release_id}")

    async def logs(self, lines=100):
        result = await self.runner.run("pm2", "logs", self.app_name, "--lines", str(lines), "--nostream",
                                       cwd=self.deploy_path)
        return result.stdout if result.ok else result.stderr
