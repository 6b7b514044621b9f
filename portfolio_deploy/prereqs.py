import getpass
import os
import re

from .errors import PrerequisiteMissing
from .logger import get_logger, success

logger = get_logger("prereqs")


def parse_version(text):
    """'v20.11.1' -> (20, 11, 1)"""
    match = re.search(r"(\d+)(?:\.(\d+))?(?:\.(\d+))?", text or "")
    if not match:
        raise ValueError(f"Unparseable version: {text!r}")
    return tuple(int(part or 0) for part in match.groups())


def check_user(deploy_user):
    if not deploy_user:
        return
    current = getpass.getuser()
    if os.geteuid() == 0 and deploy_user != "root":
        raise PrerequisiteMissing(f"This should not be run as root. Switch to {deploy_user} user.")
    if current != deploy_user:
        raise PrerequisiteMissing(f"This should be run as {deploy_user} user (running as {current}).")


async def check_prerequisites(runner, edge, settings):
    """Fail fast when a tool the pipeline shells out to is absent."""
    logger.info("Checking prerequisites...")
    check_user(settings.deploy_user)

    missing = [name for name in settings.required_commands if runner.which(name) is None]
    if missing:
        raise PrerequisiteMissing(f"Required commands not installed: {', '.join(missing)}")

    if not await edge.is_active():
        raise PrerequisiteMissing("Nginx is not running. Please start nginx first.")

    result = await runner.run("node", "--version")
    if not result.ok:
        raise PrerequisiteMissing("Node.js is not installed.")
    try:
        node_version = parse_version(result.stdout)
    except ValueError:
        raise PrerequisiteMissing(f"Cannot determine Node.js version from {result.stdout.strip()!r}")
    required = parse_version(settings.min_node_version)
    if node_version < required:
        raise PrerequisiteMissing(
            f"Node.js version {'.'.join(map(str, node_version))} is less than required {settings.min_node_version}"
        )

    success(logger, "Prerequisites check passed")
