class ProvisionError(Exception):
    """Base class for every failure srvinit reports to the operator."""


class ConfigError(ProvisionError):
    pass


class CommandFailed(ProvisionError):
    def __init__(self, cmd: list[str], returncode: int, stderr: str = ''):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ''
        super().__init__(f"'{' '.join(cmd)}' exited with {returncode}{detail}")


class TimedOut(ProvisionError):
    def __init__(self, cmd: list[str], timeout: float):
        self.cmd = cmd
        self.timeout = timeout
        super().__init__(f"'{' '.join(cmd)}' did not finish within {timeout:g}s")


class CertificateError(ProvisionError):
    pass


class AuthorityMissingOrCorrupt(CertificateError):
    pass


class AuthorityGenerationFailed(AuthorityMissingOrCorrupt):
    pass


class LeafIssuanceFailed(CertificateError):
    pass


class ServiceApplyFailed(ProvisionError):
    pass


class ServiceRestartFailed(ServiceApplyFailed):
    pass


class SchedulerRaceDetected(ProvisionError):
    """Another srvinit process holds the certificate directory lock."""
