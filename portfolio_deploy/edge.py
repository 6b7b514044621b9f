from .errors import EdgeConfigInvalid, EdgeReloadFailed
from .logger import get_logger, success


class EdgeReloader:
    """Validates and gracefully reloads the nginx configuration"""

    def __init__(self, runner, use_sudo=True, service="nginx"):
        self.runner = runner
        self.use_sudo = use_sudo
        self.service = service
        self.logger = get_logger("edge")

    def _cmd(self, *args):
        return ("sudo", *args) if self.use_sudo else args

    async def validate(self):
        result = await self.runner.run(*self._cmd("nginx", "-t"))
        # nginx -t reports on stderr even when the test passes
        output = (result.stderr or result.stdout).strip()
        return result.ok, output

    async def is_active(self):
        result = await self.runner.run("systemctl", "is-active", "--quiet", self.service)
        return result.ok

    async def reload(self):
        self.logger.info("Reloading Nginx configuration...")
        valid, output = await self.validate()
        if not valid:
            self.logger.error(f"Nginx configuration test failed:\n{output}")
            raise EdgeConfigInvalid("Nginx configuration test failed; live configuration left untouched")

        result = await self.runner.run(*self._cmd("systemctl", "reload", self.service))
        if not result.ok:
            raise EdgeReloadFailed(f"systemctl reload {self.service} exited with {result.returncode}: {result.stderr.strip()}")
        success(self.logger, "Nginx reloaded successfully")
