class DeploymentError(Exception):
    """Base class for every failure that stops the deployment pipeline"""

    def __init__(self, message, step=None):
        super().__init__(message)
        self.step = step


class PrerequisiteMissing(DeploymentError):
    """A required tool, runtime or service is absent"""


class DeploymentInProgress(DeploymentError):
    """Another deploy or rollback holds the lock"""


class HookFailed(DeploymentError):
    pass


class BackupNotFound(DeploymentError):
    pass


class BackupCorrupted(DeploymentError):
    """Checksum manifest does not match the backup contents"""


class DependencyInstallFailed(DeploymentError):
    pass


class BuildFailed(DeploymentError):
    pass


class BuildIncomplete(DeploymentError):
    """The build exited cleanly but the entry file is missing"""


class ProcessReloadFailed(DeploymentError):
    pass


class EdgeConfigInvalid(DeploymentError):
    """Reverse-proxy configuration failed validation; live config untouched"""


class EdgeReloadFailed(DeploymentError):
    pass


class HealthCheckTimeout(DeploymentError):
    pass


class RollbackFailed(DeploymentError):
    """Restore ran but the service is still unhealthy; needs manual intervention"""
