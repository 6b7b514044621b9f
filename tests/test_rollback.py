import pytest
from conftest import pm2_table
from portfolio_deploy.backup import BackupManager
from portfolio_deploy.cli import exit_code_for
from portfolio_deploy.errors import BackupNotFound, DeploymentError, RollbackFailed
from portfolio_deploy.failure import FailureInjector
from portfolio_deploy.models import DeployStep, ProbeState
from portfolio_deploy.orchestrator import DeploymentOrchestrator


class TestRollbackScenarios:
    """Rollback functionality tests."""

    @pytest.mark.asyncio
    async def test_failure_at_process_reload_rolls_back(self, settings, runner, probe, project):
        engine = DeploymentOrchestrator(
            settings, runner=runner, probe=probe,
            failure_injector=FailureInjector(fail_steps={DeployStep.PROCESS_RELOAD: 1}),
        )

        res = await engine.deploy()

        assert res.success is False
        assert res.failed_step == "process-reload"
        assert res.rolled_back is True
        assert res.rollback_error is None
        assert project.live_index() == "<html>initial</html>"
        assert probe.state == ProbeState.HEALTHY
        assert exit_code_for(res) == 1
        assert "edge-reload" not in res.steps_completed

    @pytest.mark.asyncio
    async def test_unhealthy_after_reload_restores_preceding_backup(self, settings, runner, probe, project):
        # Three failed attempts during the deploy, healthy again after restore
        probe.statuses = [503, 503, 503, 200]
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        res = await engine.deploy()

        assert res.success is False
        assert res.failed_step == "post-deploy-health-check"
        assert res.error_type == "HealthCheckTimeout"
        assert res.rolled_back is True
        assert project.live_index() == "<html>initial</html>"
        assert len(probe.requested) >= 4
        assert runner.ran("pm2", "stop", "portfolio")
        events = [h["event"] for h in res.history]
        assert events[-2:] == ["rollback_start", "rollback_completed"]

    @pytest.mark.asyncio
    async def test_rollback_uses_backup_of_this_attempt(self, settings, runner, probe, project):
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        assert (await engine.deploy()).success is True  # live is now build-1

        probe.statuses = [503, 503, 503, 200]
        res = await engine.deploy()

        assert res.rolled_back is True
        assert project.live_index() == "<html>build-1</html>"
        backups = BackupManager(project.deploy_path, project.backup_path).list_backups()
        assert res.backup == backups[0].name

    @pytest.mark.asyncio
    async def test_build_incomplete_never_reloads_processes(self, settings, runner, probe, project):
        project.produce_entry = False
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        res = await engine.deploy()

        assert res.success is False
        assert res.error_type == "BuildIncomplete"
        assert res.failed_step == "build"
        started = [h["step"] for h in res.history if h["event"] == "step_start"]
        assert "process-reload" not in started
        assert not runner.ran("pm2", "reload")
        assert res.rolled_back is True
        assert project.live_index() == "<html>initial</html>"

    @pytest.mark.asyncio
    async def test_failed_rollback_is_reported_separately(self, settings, runner, probe, project):
        probe.statuses = [503]
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        res = await engine.deploy()

        assert res.success is False
        assert res.rolled_back is False
        assert "not healthy" in res.rollback_error
        assert exit_code_for(res) == 2
        # The restore itself still happened, exactly once
        assert project.live_index() == "<html>initial</html>"
        assert runner.count("pm2", "start") == 1
        failed = [h for h in res.history if h["event"] == "rollback_failed"]
        assert failed[0]["error_type"] == "RollbackFailed"

    @pytest.mark.asyncio
    async def test_process_table_offline_after_reload(self, settings, runner, probe, project):
        tables = [pm2_table(statuses=("online", "errored"))]
        runner.on("pm2", "jlist", stdout=lambda: tables.pop(0) if tables else pm2_table())
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        res = await engine.deploy()

        assert res.failed_step == "process-reload"
        assert res.error_type == "ProcessReloadFailed"
        assert "1:errored" in res.error
        assert res.rolled_back is True

    @pytest.mark.asyncio
    async def test_invalid_edge_config_never_applied(self, settings, runner, probe, project):
        runner.on("sudo", "nginx", "-t", returncode=1, stderr="nginx: configuration file /etc/nginx/nginx.conf test failed")
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        res = await engine.deploy()

        assert res.error_type == "EdgeConfigInvalid"
        assert not runner.ran("sudo", "systemctl", "reload", "nginx")
        # Rollback cannot reload nginx either, so it needs manual attention
        assert res.rollback_error is not None
        assert exit_code_for(res) == 2

    @pytest.mark.asyncio
    async def test_rollback_disabled_surfaces_failure(self, settings, runner, probe, project):
        settings.rollback_enabled = False
        probe.statuses = [503]
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        res = await engine.deploy()

        assert res.success is False
        assert res.rolled_back is False
        assert project.live_index() == "<html>build-1</html>"
        assert {"event": "rollback_skipped", "reason": "disabled"} in res.history
        assert exit_code_for(res) == 1

    @pytest.mark.asyncio
    async def test_failure_before_live_release_touched_skips_rollback(self, settings, runner, probe, project):
        runner.missing.add("pm2")
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        res = await engine.deploy()

        assert res.failed_step == "validate-environment"
        assert res.error_type == "PrerequisiteMissing"
        assert res.rolled_back is False
        assert res.rollback_error is None
        assert BackupManager(project.deploy_path, project.backup_path).list_backups() == []
        assert not runner.ran("npm")

    @pytest.mark.asyncio
    async def test_first_deploy_failure_has_nothing_to_restore(self, settings, runner, probe, project):
        import shutil
        shutil.rmtree(project.deploy_path / "dist")
        probe.statuses = [503]
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)

        res = await engine.deploy()

        assert res.success is False
        assert "No backup found" in res.rollback_error
        assert exit_code_for(res) == 2


class TestExplicitRollback:
    """The --rollback entry point."""

    @pytest.mark.asyncio
    async def test_explicit_rollback_restores_last_backup(self, settings, runner, probe, project):
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        await engine.deploy()
        assert project.live_index() == "<html>build-1</html>"

        release = await engine.rollback()

        assert project.live_index() == "<html>initial</html>"
        assert release.source.startswith("backup:")
        assert engine.supervisor.current_release() == release

    @pytest.mark.asyncio
    async def test_explicit_rollback_to_named_backup(self, settings, runner, probe, project):
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        first = (await engine.deploy()).backup
        await engine.deploy()

        await engine.rollback(first)

        assert project.live_index() == "<html>initial</html>"

    @pytest.mark.asyncio
    async def test_explicit_rollback_without_backups(self, settings, runner, probe):
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        with pytest.raises(BackupNotFound, match="No backup found"):
            await engine.rollback()

    @pytest.mark.asyncio
    async def test_explicit_rollback_unhealthy_raises(self, settings, runner, probe, project):
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        await engine.deploy()
        probe.statuses = [503]
        with pytest.raises(RollbackFailed):
            await engine.rollback()

    @pytest.mark.asyncio
    async def test_explicit_rollback_disabled(self, settings, runner, probe):
        settings.rollback_enabled = False
        engine = DeploymentOrchestrator(settings, runner=runner, probe=probe)
        with pytest.raises(DeploymentError, match="Rollback is disabled"):
            await engine.rollback()
