"""Exceptions raised by the runner."""


class RunnerError(Exception):
    """Base class for runner errors."""


class ProvisioningError(RunnerError):
    """A required dependency or artifact could not be provisioned."""


class AuthenticationError(RunnerError):
    """Provider authentication is required but failed."""


class LaunchError(RunnerError):
    """A supervised command could not be started."""
