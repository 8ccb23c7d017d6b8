"""Custom exceptions for dhyve."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class NotInitialized(ManagerError):
    """No identity has been created for the VM yet."""


class AlreadyExists(ManagerError):
    """An identity already exists and overwrite was not confirmed."""


class AlreadyRunning(ManagerError):
    """A live hypervisor is already recorded for the VM."""


class NotRunning(ManagerError):
    """No hypervisor pid is recorded for the VM."""


class StartupTimeout(ManagerError):
    """The guest did not become ready before the deadline."""


class SubprocessLaunchFailure(ManagerError):
    """An external binary could not be started or died immediately."""


class IOFailure(ManagerError):
    """Reading or writing the VM config directory failed."""


class LockBusy(ManagerError):
    """Another invocation is changing the state of the same VM."""


class OperationCancelled(ManagerError):
    """A polling loop was interrupted by the operator."""
