import shutil
import pytest
from portfolio_deploy.backup import BackupManager
from portfolio_deploy.errors import DeploymentInProgress
from portfolio_deploy.lock import DeployLock
from portfolio_deploy.models import DeployStep
from portfolio_deploy.orchestrator import DeploymentOrchestrator


def index_of(backup):
    return (backup.path / "dist" / "index.html").read_text()


class TestBasicDeployment:
    """Happy-path deployment pipeline tests."""

    @pytest.mark.asyncio
    async def test_successful_deploy_runs_all_steps_in_order(self, settings, runner, probe, project):
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        res = await engine.deploy()

        assert res.success is True
        assert res.steps_completed == [step.value for step in DeployStep]
        assert res.failed_step is None
        assert res.rolled_back is False
        assert project.live_index() == "<html>build-1</html>"
        started = [h["step"] for h in res.history if h["event"] == "step_start"]
        assert started == [step.value for step in DeployStep]

    @pytest.mark.asyncio
    async def test_deploy_drives_external_tools(self, settings, runner, probe):
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        await engine.deploy()

        assert runner.ran("npm", "ci", "--production=false")
        assert runner.ran("npm", "run", "build")
        assert runner.ran("pm2", "reload")
        assert runner.ran("pm2", "save")
        assert runner.ran("sudo", "nginx", "-t")
        assert runner.ran("sudo", "systemctl", "reload", "nginx")
        # nginx is validated before it is reloaded
        assert runner.calls.index(("sudo", "nginx", "-t")) < runner.calls.index(("sudo", "systemctl", "reload", "nginx"))

    @pytest.mark.asyncio
    async def test_successful_deploy_leaves_exactly_one_backup(self, settings, runner, probe, project):
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        res = await engine.deploy()

        backups = BackupManager(project.deploy_path, project.backup_path).list_backups()
        assert len(backups) == 1
        assert res.backup == backups[0].name
        assert index_of(backups[0]) == "<html>initial</html>"

    @pytest.mark.asyncio
    async def test_three_sequential_deployments(self, settings, runner, probe, project):
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        for _ in range(3):
            res = await engine.deploy()
            assert res.success is True

        backups = BackupManager(project.deploy_path, project.backup_path).list_backups()
        assert len(backups) == 3
        assert index_of(backups[0]) == "<html>build-2</html>"  # pre-D3 state
        assert index_of(backups[-1]) == "<html>initial</html>"  # pre-D1 state
        assert project.live_index() == "<html>build-3</html>"

    @pytest.mark.asyncio
    async def test_retention_applied_after_many_deployments(self, settings, runner, probe, project):
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        for _ in range(7):
            assert (await engine.deploy()).success is True

        backups = BackupManager(project.deploy_path, project.backup_path).list_backups()
        assert len(backups) == 5
        assert index_of(backups[0]) == "<html>build-6</html>"

    @pytest.mark.asyncio
    async def test_first_deploy_without_live_release(self, settings, runner, probe, project):
        shutil.rmtree(project.deploy_path / "dist")
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        res = await engine.deploy()

        assert res.success is True
        assert res.backup is None
        assert BackupManager(project.deploy_path, project.backup_path).list_backups() == []

    @pytest.mark.asyncio
    async def test_cold_start_when_app_not_running(self, settings, runner, probe):
        runner.on("pm2", "describe", returncode=1, stderr="process not found")
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        res = await engine.deploy()

        assert res.success is True
        assert runner.ran("pm2", "start")
        assert not runner.ran("pm2", "reload")

    @pytest.mark.asyncio
    async def test_current_release_recorded(self, settings, runner, probe):
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        res = await engine.deploy()

        assert engine.supervisor.current_release().release_id == res.release
        status = await engine.status()
        assert status["release"]["release_id"] == res.release
        assert len(status["processes"]) == 3
        assert status["processes"][0]["status"] == "online"

    @pytest.mark.asyncio
    async def test_npm_install_without_lockfile(self, settings, runner, probe, project):
        (project.deploy_path / "package-lock.json").unlink()
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        await engine.deploy()
        assert runner.ran("npm", "install")
        assert not runner.ran("npm", "ci")


class TestHooks:
    """Pre/post deployment hooks."""

    @pytest.mark.asyncio
    async def test_configured_hooks_run(self, settings, runner, probe):
        settings.pre_deploy_hook = "./hooks/pre.sh --fast"
        settings.post_deploy_hook = "./hooks/post.sh"
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        await engine.deploy()

        assert runner.ran("./hooks/pre.sh", "--fast")
        assert runner.ran("./hooks/post.sh")
        assert runner.calls.index(("./hooks/pre.sh", "--fast")) < runner.calls.index(("npm", "run", "build"))

    @pytest.mark.asyncio
    async def test_notifier_used_when_installed(self, settings, runner, probe):
        settings.notify_command = "slack-notify"
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        await engine.deploy()
        assert runner.count("slack-notify") == 2

    @pytest.mark.asyncio
    async def test_notifier_skipped_when_missing(self, settings, runner, probe):
        settings.notify_command = "slack-notify"
        runner.missing.add("slack-notify")
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        res = await engine.deploy()
        assert res.success is True
        assert not runner.ran("slack-notify")

    @pytest.mark.asyncio
    async def test_failed_warm_up_does_not_fail_deploy(self, settings, runner, probe):
        # health x1, main app check x1, then warm-up fails
        probe.statuses = [200, 200, 502]
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        res = await engine.deploy()
        assert res.success is True


class TestConcurrencyGuard:
    """Overlapping invocations are rejected."""

    @pytest.mark.asyncio
    async def test_deploy_rejected_while_lock_held(self, settings, runner, probe, project):
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        with DeployLock(settings.lock_file):
            with pytest.raises(DeploymentInProgress, match="deployment already in progress"):
                await engine.deploy()

        assert runner.calls == []
        assert BackupManager(project.deploy_path, project.backup_path).list_backups() == []

    @pytest.mark.asyncio
    async def test_lock_released_after_deploy(self, settings, runner, probe):
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        await engine.deploy()
        lock = DeployLock(settings.lock_file)
        lock.acquire()
        assert lock.held
        lock.release()

    @pytest.mark.asyncio
    async def test_lock_released_after_failed_deploy(self, settings, runner, probe, project):
        project.produce_entry = False
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        res = await engine.deploy()
        assert res.success is False
        with DeployLock(settings.lock_file) as lock:
            assert lock.held
