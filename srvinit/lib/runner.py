import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import Optional

from srvinit.lib.errors import CommandFailed, ServiceApplyFailed, ServiceRestartFailed, TimedOut

LOG = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300


def run_command(cmd: list[str], timeout: float = DEFAULT_TIMEOUT, input: Optional[str] = None,
                check: bool = True) -> subprocess.CompletedProcess:
    LOG.debug("running: %s", ' '.join(cmd))
    try:
        result = subprocess.run(
            cmd, input=input, capture_output=True, text=True, timeout=timeout
        )
    except subprocess.TimeoutExpired as e:
        raise TimedOut(cmd, timeout) from e
    except FileNotFoundError as e:
        raise CommandFailed(cmd, 127, f"{cmd[0]} not found in PATH") from e

    if result.stderr:
        LOG.debug("stderr: %s", result.stderr.strip())
    if check and result.returncode != 0:
        raise CommandFailed(cmd, result.returncode, result.stderr)
    return result


def run_shell(cmd: str, timeout: float = DEFAULT_TIMEOUT, input: Optional[str] = None) -> int:
    """Run an operator-supplied hook command, returns its exit status."""
    LOG.debug("running hook: %s", cmd)
    try:
        result = subprocess.run(
            cmd, shell=True, input=input, capture_output=True, text=True, timeout=timeout
        )
    except subprocess.TimeoutExpired as e:
        raise TimedOut([cmd], timeout) from e
    if result.returncode != 0:
        LOG.warning("hook '%s' exited with %s: %s", cmd, result.returncode, result.stderr.strip())
    return result.returncode


# ── Package installer ────────────────────────────────

class PackageInstaller(ABC):

    def __init__(self, dry_run: bool = False, timeout: float = DEFAULT_TIMEOUT):
        self.dry_run = dry_run
        self.timeout = timeout

    @abstractmethod
    def is_installed(self, package: str) -> bool:
        """Return True when package is already present on the host."""

    @abstractmethod
    def install_missing(self, packages: list[str]) -> None:
        """Install packages without checking whether they are present."""

    def install(self, packages: list[str]) -> list[str]:
        """Install whatever is missing from packages, returns what was (or would be) installed."""
        missing = []
        for pkg in sorted(set(packages)):
            if self.is_installed(pkg):
                LOG.info("package %s already installed", pkg)
            else:
                missing.append(pkg)

        if not missing:
            return []
        if self.dry_run:
            LOG.info("[dry-run] would install: %s", ', '.join(missing))
            return missing

        self.install_missing(missing)
        return missing


class AptInstaller(PackageInstaller):

    def __init__(self, dry_run: bool = False, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(dry_run, timeout)
        self.executable = shutil.which('apt-get') or 'apt-get'
        self.query_tool = shutil.which('dpkg-query') or 'dpkg-query'

    def is_installed(self, package: str) -> bool:
        result = run_command(
            [self.query_tool, '-W', '-f=${Status}', package],
            timeout=self.timeout, check=False,
        )
        return result.returncode == 0 and 'install ok installed' in result.stdout

    def install_missing(self, packages: list[str]) -> None:
        run_command([self.executable, 'install', '-y', *packages], timeout=self.timeout)


# ── Service controller ───────────────────────────────

class ServiceController(ABC):

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    @abstractmethod
    def restart(self, unit: str) -> None:
        """Restart unit, raising ServiceRestartFailed when it does not come back."""

    @abstractmethod
    def is_active(self, unit: str) -> bool:
        pass

    @abstractmethod
    def run(self, cmd: list[str]) -> None:
        """Run a service-specific command (reload, plugin setup)."""

    @abstractmethod
    def daemon_reload(self) -> None:
        pass

    def reload(self, unit: str, reload_cmd: Optional[list[str]] = None) -> None:
        if reload_cmd:
            self.run(reload_cmd)
        else:
            self.restart(unit)


class SystemdController(ServiceController):

    def restart(self, unit: str) -> None:
        try:
            run_command(['systemctl', 'restart', unit], timeout=self.timeout)
        except CommandFailed as e:
            raise ServiceRestartFailed(f"{unit} failed to restart: {e}") from e

    def is_active(self, unit: str) -> bool:
        result = run_command(['systemctl', 'is-active', '--quiet', unit],
                             timeout=self.timeout, check=False)
        return result.returncode == 0

    def run(self, cmd: list[str]) -> None:
        try:
            run_command(cmd, timeout=self.timeout)
        except CommandFailed as e:
            raise ServiceRestartFailed(f"service command failed: {e}") from e

    def daemon_reload(self) -> None:
        try:
            run_command(['systemctl', 'daemon-reload'], timeout=self.timeout)
        except CommandFailed as e:
            raise ServiceApplyFailed(f"systemctl daemon-reload failed: {e}") from e
