import asyncio
import shlex
import uuid
from dataclasses import asdict
from datetime import datetime

from .backup import BackupManager
from .builder import ReleaseBuilder
from .edge import EdgeReloader
from .errors import (
    BackupNotFound, DeploymentError, HealthCheckTimeout, HookFailed, RollbackFailed
)
from .failure import FailureInjector
from .health import HealthProbe
from .lock import DeployLock
from .logger import get_logger, success
from .models import DeploymentAttempt, DeploymentResult, DeployStep
from .prereqs import check_prerequisites
from .runner import CommandFailed, CommandRunner
from .supervisor import ProcessSupervisor

# Steps that run before the live release is touched; failing here needs no rollback
PRE_MUTATION_STEPS = (DeployStep.VALIDATE_ENVIRONMENT, DeployStep.PRE_HOOK, DeployStep.BACKUP)


class DeploymentOrchestrator:
    def __init__(self, settings, runner=None, failure_injector=None, backups=None,
                 builder=None, supervisor=None, edge=None, probe=None):
        self.settings = settings
        self.runner = runner if runner else CommandRunner()
        self.failure_injector = failure_injector if failure_injector else FailureInjector()
        self.backups = backups if backups else BackupManager.from_settings(settings)
        self.builder = builder if builder else ReleaseBuilder.from_settings(self.runner, settings)
        self.supervisor = supervisor if supervisor else ProcessSupervisor(self.runner, settings)
        self.edge = edge if edge else EdgeReloader(self.runner, use_sudo=settings.use_sudo)
        self.probe = probe if probe else HealthProbe.from_settings(settings)
        self.logger = get_logger("orchestrator")

    def plan_steps(self):
        """The fixed deployment pipeline, in execution order"""
        return [
            (DeployStep.VALIDATE_ENVIRONMENT, self._validate_environment),
            (DeployStep.PRE_HOOK, self._pre_hook),
            (DeployStep.BACKUP, self._backup),
            (DeployStep.INSTALL_DEPENDENCIES, self._install_dependencies),
            (DeployStep.BUILD, self._build),
            (DeployStep.PROCESS_RELOAD, self._process_reload),
            (DeployStep.EDGE_RELOAD, self._edge_reload),
            (DeployStep.HEALTH_CHECK, self._post_deploy_health_check),
            (DeployStep.POST_HOOK, self._post_hook),
            (DeployStep.CLEANUP, self._cleanup_old_backups),
        ]

    # Pipeline steps

    async def _validate_environment(self, attempt, result):
        await check_prerequisites(self.runner, self.edge, self.settings)

    async def _pre_hook(self, attempt, result):
        self.logger.info("Running pre-deployment hooks...")
        await self._notify(f"Starting deployment of {self.settings.app_name}")
        await self._run_hook(self.settings.pre_deploy_hook)
        success(self.logger, "Pre-deployment hooks completed")

    async def _backup(self, attempt, result):
        self.logger.info("Creating backup...")
        attempt.backup = self.backups.create_backup(self.supervisor.current_release())
        if attempt.backup is not None:
            result.backup = attempt.backup.name

    async def _install_dependencies(self, attempt, result):
        await self.builder.install()

    async def _build(self, attempt, result):
        attempt.release = await self.builder.build()
        result.release = attempt.release.release_id

    async def _process_reload(self, attempt, result):
        await self.supervisor.replace(attempt.release)

    async def _edge_reload(self, attempt, result):
        await self.edge.reload()

    async def _post_deploy_health_check(self, attempt, result):
        self.logger.info("Running post-deployment checks...")
        if self.settings.startup_grace_s > 0:
            await asyncio.sleep(self.settings.startup_grace_s)
        await self.supervisor.verify_online()
        await self.probe.wait_until_healthy()
        if not await self.probe.check(self.settings.main_app_url):
            raise HealthCheckTimeout("Main application is not responding")
        success(self.logger, "Post-deployment checks passed")

    async def _post_hook(self, attempt, result):
        self.logger.info("Running post-deployment hooks...")
        # Cache warm-up; a miss here is not a deployment failure
        if not await self.probe.check(self.settings.main_app_url):
            self.logger.warning("Warm-up request to the main application failed")
        await self._run_hook(self.settings.post_deploy_hook)
        await self._notify(f"Deployment of {self.settings.app_name} completed successfully")
        success(self.logger, "Post-deployment hooks completed")

    async def _cleanup_old_backups(self, attempt, result):
        self.logger.info("Cleaning up old backups...")
        self.backups.cleanup(keep=self.settings.backup_retention)

    async def _run_hook(self, command):
        if not command:
            return
        try:
            args = shlex.split(command)
        except ValueError as e:
            raise HookFailed(f"Invalid hook command {command!r}: {e}") from e
        try:
            await self.runner.check(*args, cwd=self.settings.deploy_path)
        except CommandFailed as e:
            raise HookFailed(f"Hook failed: {e}") from e

    async def _notify(self, message):
        notifier = self.settings.notify_command
        if not notifier or self.runner.which(notifier) is None:
            return
        result = await self.runner.run(notifier, message)
        if not result.ok:
            self.logger.warning(f"Notification via {notifier} failed: {result.stderr.strip()}")

    # Pipeline driver

    async def _run_step(self, step, action, attempt, result):
        attempt.current_step = step
        self.logger.info(f"Step {step.value} started")
        result.history.append({"event": "step_start", "step": step.value, "at": datetime.now().isoformat()})

        delay = self.failure_injector.delay_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        self.failure_injector.raise_if_scheduled(step)

        try:
            await action(attempt, result)
        except DeploymentError:
            raise
        except Exception as e:
            raise DeploymentError(f"{step.value}: {e}", step=step.value) from e

        attempt.completed_steps.append(step)
        result.steps_completed.append(step.value)
        result.history.append({"event": "step_completed", "step": step.value, "at": datetime.now().isoformat()})

    def _record_failure(self, attempt, result, error):
        step = attempt.current_step
        if error.step is None:
            error.step = step.value
        attempt.failed_step = step
        attempt.error = error
        result.failed_step = step.value
        result.error = str(error)
        result.error_type = type(error).__name__
        self.logger.error(f"Deployment failed at step {step.value} ({result.error_type}): {error}")
        result.history.append({
            "event": "step_failed",
            "step": step.value,
            "error": str(error),
            "error_type": result.error_type,
            "at": datetime.now().isoformat(),
        })

    async def _handle_failure(self, attempt, result):
        """Decide between rollback and surfacing the failure as-is"""
        if not self.settings.rollback_enabled:
            self.logger.error("Rollback is disabled; leaving the system as it is")
            result.history.append({"event": "rollback_skipped", "reason": "disabled"})
            return
        if attempt.failed_step in PRE_MUTATION_STEPS:
            self.logger.info("Live release was not touched, no rollback needed")
            result.history.append({"event": "rollback_skipped", "reason": "live release untouched"})
            return

        self.logger.error("Deployment failed, initiating rollback...")
        result.history.append({"event": "rollback_start", "backup": result.backup})
        try:
            if attempt.backup is None:
                raise BackupNotFound("No backup found for rollback")
            await self._rollback(attempt.backup)
        except DeploymentError as e:
            result.rollback_error = str(e)
            self.logger.critical(f"ROLLBACK FAILED ({type(e).__name__}): {e}. Manual intervention required.")
            result.history.append({"event": "rollback_failed", "error": str(e), "error_type": type(e).__name__})
            return

        result.rolled_back = True
        result.history.append({"event": "rollback_completed", "backup": result.backup})

    async def _rollback(self, backup=None):
        backup = backup or self.backups.last_recorded()
        if backup is None:
            raise BackupNotFound("No backup found for rollback")

        self.logger.warning(f"Rolling back to {backup.path}")
        try:
            release = self.backups.restore(backup)
        except OSError as e:
            raise RollbackFailed(f"Restoring {backup.name} failed: {e}") from e

        try:
            await self.supervisor.restart(release)
            await self.edge.reload()
            if self.settings.startup_grace_s > 0:
                await asyncio.sleep(self.settings.startup_grace_s)
            await self.probe.wait_until_healthy()
        except DeploymentError as e:
            raise RollbackFailed(f"Restored {backup.name} but the service is not healthy: {e}") from e

        success(self.logger, f"Rollback completed (release {release.release_id})")
        return release

    async def _deploy(self):
        attempt = DeploymentAttempt(attempt_id=uuid.uuid4().hex[:12], started_at=datetime.now())
        result = DeploymentResult(success=False)
        self.logger.info(f"Starting zero-downtime deployment of {self.settings.app_name} (attempt {attempt.attempt_id})")

        try:
            for step, action in self.plan_steps():
                await self._run_step(step, action, attempt, result)
        except DeploymentError as e:
            self._record_failure(attempt, result, e)
            await self._handle_failure(attempt, result)
            return result

        result.success = True
        success(self.logger, "Zero-downtime deployment completed successfully!")
        return result

    # Entry points

    async def deploy(self):
        """Run the whole pipeline under the deploy lock"""
        with DeployLock(self.settings.lock_file):
            return await self._deploy()

    async def rollback(self, backup_name=None):
        if not self.settings.rollback_enabled:
            raise DeploymentError("Rollback is disabled")
        with DeployLock(self.settings.lock_file):
            backup = self.backups.get(backup_name) if backup_name else None
            return await self._rollback(backup)

    async def status(self):
        release = self.supervisor.current_release()
        processes = await self.supervisor.status()
        return {
            "app": self.settings.app_name,
            "release": release.to_dict() if release else None,
            "processes": [
                {**asdict(p), "status": p.status.value} for p in processes
            ],
            "backups": [b.name for b in self.backups.list_backups()],
        }

    async def logs(self, lines=100):
        return await self.supervisor.logs(lines)

    async def health_check(self, attempts=5):
        return await self.probe.wait_until_healthy(attempts=attempts)
