from datetime import datetime
from pathlib import Path

from .errors import BuildFailed, BuildIncomplete, DependencyInstallFailed
from .logger import get_logger, success
from .models import Release
from .runner import CommandFailed


class ReleaseBuilder:
    """Installs dependencies and produces the built artifact tree"""

    def __init__(self, runner, deploy_path, artifact_dir="dist", entry_file="index.html"):
        self.runner = runner
        self.deploy_path = Path(deploy_path)
        self.artifact_dir = artifact_dir
        self.entry_file = entry_file
        self.logger = get_logger("builder")

    @classmethod
    def from_settings(cls, runner, settings):
        return cls(runner, settings.deploy_path, settings.artifact_dir, settings.entry_file)

    async def install(self):
        self.logger.info("Installing dependencies...")
        # Dev dependencies are needed by the build step
        if (self.deploy_path / "package-lock.json").is_file():
            args = ("npm", "ci", "--production=false")
        else:
            self.logger.warning("No package-lock.json, falling back to npm install")
            args = ("npm", "install")
        try:
            await self.runner.check(*args, cwd=self.deploy_path)
        except CommandFailed as e:
            self.logger.error(f"Dependency install failed: {e}")
            raise DependencyInstallFailed(str(e)) from e
        success(self.logger, "Dependencies installed successfully")

    async def build(self):
        self.logger.info("Building application...")
        try:
            await self.runner.check("npm", "run", "build", cwd=self.deploy_path)
        except CommandFailed as e:
            self.logger.error(f"Build command failed: {e}")
            raise BuildFailed(str(e)) from e

        entry = self.deploy_path / self.artifact_dir / self.entry_file
        if not entry.is_file():
            raise BuildIncomplete(f"Build failed: {self.artifact_dir}/{self.entry_file} not found")

        created_at = datetime.now()
        release = Release(
            release_id=created_at.strftime("%Y%m%d_%H%M%S"),
            path=self.deploy_path / self.artifact_dir,
            created_at=created_at,
        )
        success(self.logger, f"Application built successfully (release {release.release_id})")
        return release
