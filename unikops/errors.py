"""Exception types raised by the unikops core.

Core modules raise these; only the CLI turns them into an exit status.
"""


class OpsError(RuntimeError):
    """Base class for every error the control plane raises."""


class NotFoundError(OpsError):
    """A named resource does not exist."""


class InstanceNotFoundError(NotFoundError):
    def __init__(self, name: str):
        super().__init__(f"instance '{name}' not found")
        self.name = name


class ImageNotFoundError(NotFoundError):
    def __init__(self, name: str):
        super().__init__(f"image '{name}' not found")
        self.name = name


class VolumeNotFoundError(NotFoundError):
    def __init__(self, name: str):
        super().__init__(f"volume '{name}' not found")
        self.name = name


class SecurityGroupNotFoundError(NotFoundError):
    def __init__(self, name: str):
        super().__init__(f"security group '{name}' not found")
        self.name = name


class PackageNotFoundError(NotFoundError):
    pass


class VpcMismatchError(OpsError):
    """A security group found by name lives in a different VPC."""

    def __init__(self, group: str, expected_vpc: str, actual_vpc: str):
        super().__init__(
            f"vpc mismatch: expected '{group}' to have vpc '{expected_vpc}', "
            f"got '{actual_vpc}'"
        )
        self.group = group
        self.expected_vpc = expected_vpc
        self.actual_vpc = actual_vpc


class WaitTimeoutError(OpsError):
    def __init__(self, what: str, elapsed: float):
        super().__init__(f"{what}: timed out after {elapsed:.1f}s")
        self.what = what
        self.elapsed = elapsed


class WaitFailureError(OpsError):
    def __init__(self, what: str, state: str):
        super().__init__(f"{what}: entered failure state '{state}'")
        self.what = what
        self.state = state


class SetupError(OpsError):
    """The local environment cannot support the requested operation."""


class CredentialsError(SetupError):
    pass


class HypervisorNotFoundError(SetupError):
    pass


class PrivilegeError(SetupError):
    pass


class ProviderDisabledError(SetupError):
    pass


class CommandError(OpsError):
    def __init__(self, args: list[str], returncode: int, stderr: str):
        super().__init__(
            f"command failed ({returncode}): {' '.join(args)}: {stderr.strip()}"
        )
        self.cmd = list(args)
        self.returncode = returncode
        self.stderr = stderr


class PortSpecError(ValueError):
    def __init__(self, spec: str):
        super().__init__(f"invalid port specification: '{spec}'")
        self.spec = spec


class PartialCreateError(OpsError):
    """A multi-step create failed after some resources were already made.

    Nothing is rolled back; ``created`` lists what was left behind.
    """

    def __init__(self, message: str, created: list[str]):
        leftovers = ", ".join(created)
        super().__init__(
            f"{message}; manual cleanup required for: {leftovers}"
            if created
            else message
        )
        self.created = list(created)
