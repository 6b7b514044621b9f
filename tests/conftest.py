import json
import pytest
from portfolio_deploy.config import Settings
from portfolio_deploy.health import HealthProbe
from portfolio_deploy.runner import CommandFailed, CommandResult


def pm2_table(name="portfolio", statuses=("online", "online"), health_name="portfolio-health-check"):
    rows = [
        {
            "name": name,
            "pm_id": i,
            "pid": 1000 + i,
            "monit": {"cpu": 1.5, "memory": 50_000_000},
            "pm2_env": {"status": status, "restart_time": 0, "exec_mode": "cluster_mode"},
        }
        for i, status in enumerate(statuses)
    ]
    rows.append({
        "name": health_name,
        "pm_id": len(statuses),
        "pid": 2000,
        "monit": {"cpu": 0.2, "memory": 20_000_000},
        "pm2_env": {"status": "online", "restart_time": 0, "exec_mode": "fork_mode"},
    })
    return json.dumps(rows)


class FakeRunner:
    """Scripted stand-in for CommandRunner; unmatched commands succeed silently"""

    def __init__(self, missing=()):
        self.calls = []
        self.responses = {}
        self.missing = set(missing)

    def on(self, *prefix, returncode=0, stdout="", stderr="", action=None):
        self.responses[tuple(prefix)] = (returncode, stdout, stderr, action)
        return self

    def which(self, name):
        return None if name in self.missing else f"/usr/bin/{name}"

    async def run(self, *args, cwd=None, env=None, timeout=None):
        self.calls.append(tuple(args))
        for prefix in sorted(self.responses, key=len, reverse=True):
            if tuple(args[:len(prefix)]) == prefix:
                returncode, stdout, stderr, action = self.responses[prefix]
                if action is not None:
                    action(args, cwd)
                if callable(stdout):
                    stdout = stdout()
                return CommandResult(tuple(args), returncode, stdout, stderr)
        return CommandResult(tuple(args), 0, "", "")

    async def check(self, *args, **kwargs):
        result = await self.run(*args, **kwargs)
        if not result.ok:
            raise CommandFailed(result)
        return result

    def ran(self, *prefix):
        return any(call[:len(prefix)] == prefix for call in self.calls)

    def count(self, *prefix):
        return sum(1 for call in self.calls if call[:len(prefix)] == prefix)


class ScriptedProbe(HealthProbe):
    """HealthProbe whose HTTP responses come from a queue (last entry repeats)"""

    def __init__(self, statuses=(200,), **kwargs):
        kwargs.setdefault("attempts", 3)
        kwargs.setdefault("backoff", 0)
        super().__init__("http://localhost:3001/health", **kwargs)
        self.statuses = list(statuses)
        self.requested = []

    async def _fetch_status(self, url):
        self.requested.append(url)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(status, BaseException):
            raise status
        return status


class FakeProject:
    """An on-disk deploy directory whose `npm run build` writes a numbered release"""

    def __init__(self, root):
        self.deploy_path = root / "app"
        self.backup_path = root / "backups"
        self.builds = 0
        self.produce_entry = True
        self.deploy_path.mkdir(parents=True)
        (self.deploy_path / "package.json").write_text('{"name": "portfolio", "version": "2.0.0"}')
        (self.deploy_path / "package-lock.json").write_text("{}")
        (self.deploy_path / "ecosystem.config.js").write_text("module.exports = {apps: []};\n")

    def write_release(self, label):
        dist = self.deploy_path / "dist"
        (dist / "assets").mkdir(parents=True, exist_ok=True)
        (dist / "index.html").write_text(f"<html>{label}</html>")
        (dist / "assets" / "app.js").write_text(f"console.log('{label}')")

    def build(self, args, cwd):
        self.builds += 1
        dist = self.deploy_path / "dist"
        if self.produce_entry:
            self.write_release(f"build-{self.builds}")
        else:
            dist.mkdir(exist_ok=True)
            if (dist / "index.html").exists():
                (dist / "index.html").unlink()

    def live_index(self):
        return (self.deploy_path / "dist" / "index.html").read_text()


@pytest.fixture
def project(tmp_path):
    proj = FakeProject(tmp_path)
    proj.write_release("initial")
    return proj


@pytest.fixture
def settings(project):
    return Settings(
        deploy_path=project.deploy_path,
        backup_path=project.backup_path,
        log_file=None,
        startup_grace_s=0,
        health_check_attempts=3,
        health_check_backoff_s=0,
        notify_command="",
    )


@pytest.fixture
def runner(project):
    fake = FakeRunner()
    fake.on("node", "--version", stdout="v20.11.1\n")
    fake.on("npm", "run", "build", action=project.build)
    fake.on("pm2", "jlist", stdout=pm2_table())
    return fake


@pytest.fixture
def probe():
    return ScriptedProbe()
