import asyncio
import shlex
import shutil
from dataclasses import dataclass

from .logger import get_logger


@dataclass
class CommandResult:
    args: tuple
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self):
        return self.returncode == 0

    @property
    def command_line(self):
        return shlex.join(self.args)


class CommandFailed(Exception):
    def __init__(self, result):
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip()
        message = f"`{result.command_line}` exited with {result.returncode}"
        if detail:
            message = f"{message}: {detail.splitlines()[-1]}"
        super().__init__(message)


class CommandRunner:
    """Runs external tools (npm, pm2, nginx, systemctl) as subprocesses"""

    def __init__(self, default_timeout=600.0):
        self.default_timeout = default_timeout
        self.logger = get_logger("runner")

    def which(self, name):
        return shutil.which(name)

    async def run(self, *args, cwd=None, env=None, timeout=None):
        timeout = timeout or self.default_timeout
        self.logger.debug(f"$ {shlex.join(args)}" + (f" (cwd={cwd})" if cwd else ""))
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return CommandResult(tuple(args), 127, "", f"{args[0]}: command not found")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            self.logger.error(f"`{shlex.join(args)}` timed out after {timeout}s")
            return CommandResult(tuple(args), -9, "", f"timed out after {timeout}s")

        return CommandResult(
            tuple(args),
            process.returncode,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    async def check(self, *args, **kwargs):
        result = await self.run(*args, **kwargs)
        if not result.ok:
            raise CommandFailed(result)
        return result
