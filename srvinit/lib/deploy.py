"""Local service provisioning: certificates, config files, renewal job.

A service module describes itself with a ServiceDeployer spec::

    deployer = ServiceDeployer({
        'name': 'rabbitmq',
        'unit': 'rabbitmq-server',
        'account': 'rabbitmq',
        'templates_dir': BASE / 'templates',
        'config_dir': '/etc/rabbitmq',
        'cert_dir': '/etc/rabbitmq/ssl',
        'cert_names': {...},
        'files': [('rabbitmq.conf.j2', 'rabbitmq.conf', 'replace')],
        'defaults': {'port': 5671},
        'log_file': '/var/log/rabbitmq_cert_renewal.log',
    })

File targets are relative to config_dir. The strategy is ``replace`` (srvinit
owns the whole file) or ``block:<name>`` (srvinit owns a delimited block inside
a distribution-provided file).

``unit_files`` are systemd drop-ins relative to unit_dir, written root-owned and
followed by a daemon reload. ``setup_commands`` run on every provision, after
the files are in place and before the restart decision.
"""
import logging
import os
import socket
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from srvinit.certs import deploy as certs
from srvinit.certs.openssl import CertificateAuthorityTool
from srvinit.lib.errors import ConfigError, ServiceApplyFailed, ServiceRestartFailed
from srvinit.lib.files import backup_once, replace_block, set_owner, write_file
from srvinit.lib.jinja import create_jinja_env, render_template
from srvinit.lib.lock import directory_lock
from srvinit.lib.runner import DEFAULT_TIMEOUT, PackageInstaller, ServiceController

LOG = logging.getLogger(__name__)

CRON_DIR = Path('/etc/cron.daily')
UNIT_DIR = Path('/etc/systemd/system')
UNIT = 'unit'
TLS_VERSIONS = ('TLSv1.2', 'TLSv1.3')

GREEN = '\033[0;32m'
YELLOW = '\033[1;33m'
RESET = '\033[0m'


def _changed(msg: str) -> None:
    print(f"  {YELLOW}→{RESET} {msg}")


def _ok(msg: str) -> None:
    print(f"  {GREEN}✓{RESET} {msg}")


@dataclass(frozen=True)
class ServiceOptions:
    service: str
    port: int
    mode: str
    config_dir: Path
    cert_dir: Path
    hostname: str
    log_file: Path
    subject_alt_names: tuple[str, ...] = ()
    days_valid: int = certs.SSL_DAYS_VALID
    threshold_days: int = certs.RENEWAL_DAYS_BEFORE_EXPIRY
    account: Optional[str] = None
    unit_dir: Path = UNIT_DIR
    extra: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class RenderedFile:
    template: str
    target: Path
    strategy: str
    content: str

    @property
    def block(self) -> Optional[str]:
        if self.strategy.startswith('block:'):
            return self.strategy.split(':', 1)[1]
        return None

    def merged(self, current: str) -> str:
        if self.block is None:
            return self.content
        return replace_block(current, self.block, self.content)


@dataclass
class ProvisionResult:
    service: str
    certificate_issued: bool = False
    changed_files: list[Path] = field(default_factory=list)
    restarted: bool = False
    renewal_script: Optional[Path] = None


class ServiceDeployer:

    def __init__(self, spec: dict):
        self.name: str = spec['name']
        self.unit: str = spec['unit']
        self.account: Optional[str] = spec.get('account')
        self.templates_dir: Path = Path(spec['templates_dir'])
        self.config_dir = Path(spec['config_dir'])
        self.cert_dir = Path(spec['cert_dir'])
        self.cert_dir_mode: int = spec.get('cert_dir_mode', 0o755)
        self.cert_names: dict[str, str] = spec['cert_names']
        self.files: list[tuple[str, str, str]] = spec.get('files', [])
        self.unit_files: list[tuple[str, str]] = spec.get('unit_files', [])
        self.setup_commands: list[list[str]] = spec.get('setup_commands', [])
        self.packages: list[str] = spec.get('packages', [])
        self.defaults: dict[str, Any] = spec.get('defaults', {})
        self.log_file = Path(spec['log_file'])
        self.reload_cmd: tuple[str, ...] = tuple(spec.get('reload_cmd', ()))
        self.san_hostname: bool = spec.get('san_hostname', False)
        self.context: Optional[Callable[[ServiceOptions], dict]] = spec.get('context')
        self.env = create_jinja_env(self.templates_dir)

    # ── options ──────────────────────────────────────

    def resolve(self, configured: Optional[dict] = None, **overrides) -> ServiceOptions:
        """Merge built-in defaults, config file values and command line overrides."""
        values: dict[str, Any] = dict(self.defaults)
        values.update(configured or {})
        values.update({k: v for k, v in overrides.items() if v is not None and v != ()})

        mode = values.pop('mode', certs.LOCAL_CA)
        if mode not in (certs.LOCAL_CA, certs.SELF_SIGNED):
            raise ConfigError(f"{self.name}: unknown certificate mode '{mode}'")
        if 'port' not in values:
            raise ConfigError(f"{self.name}: no port configured")

        config_dir = Path(values.pop('config_dir', self.config_dir))
        if 'cert_dir' in values:
            cert_dir = Path(values.pop('cert_dir'))
        elif config_dir != self.config_dir and self.cert_dir.is_relative_to(self.config_dir):
            cert_dir = config_dir / self.cert_dir.relative_to(self.config_dir)
        else:
            cert_dir = self.cert_dir
        hostname = values.pop('hostname', None) or socket.gethostname()

        san = list(values.pop('subject_alt_names', None) or [])
        if self.san_hostname and hostname not in san:
            san.insert(0, hostname)

        port = int(values.pop('port'))
        days_valid = int(values.pop('days_valid', certs.SSL_DAYS_VALID))
        threshold_days = int(values.pop('threshold_days', certs.RENEWAL_DAYS_BEFORE_EXPIRY))
        if days_valid <= 0 or threshold_days < 0:
            raise ConfigError(f"{self.name}: days_valid must be positive and threshold_days >= 0")

        return ServiceOptions(
            service=self.name,
            port=port,
            mode=mode,
            config_dir=config_dir,
            cert_dir=cert_dir,
            hostname=hostname,
            log_file=Path(values.pop('log_file', self.log_file)),
            subject_alt_names=tuple(san),
            days_valid=days_valid,
            threshold_days=threshold_days,
            account=values.pop('account', self.account) or None,
            unit_dir=Path(values.pop('unit_dir', UNIT_DIR)),
            extra=values,
        )

    def cert_paths(self, cert_dir: Path) -> certs.CertPaths:
        return certs.CertPaths.in_directory(cert_dir, self.cert_names)

    def owns(self, cert_dir: Path) -> bool:
        """True when cert_dir holds a server certificate named the way this service names it."""
        return self.cert_paths(cert_dir).server_cert.exists()

    # ── rendering ────────────────────────────────────

    def build_context(self, options: ServiceOptions) -> dict:
        paths = self.cert_paths(options.cert_dir)
        ctx = {
            'service': self.name,
            'port': options.port,
            'mode': options.mode,
            'hostname': options.hostname,
            'paths': paths,
            'ca_file': paths.ca_cert if options.mode == certs.LOCAL_CA else paths.server_cert,
            'cert_file': paths.server_cert,
            'key_file': paths.server_key,
            'tls_versions': TLS_VERSIONS,
            **options.extra,
        }
        if self.context is not None:
            ctx.update(self.context(options))
        return ctx

    def render(self, options: ServiceOptions) -> list[RenderedFile]:
        ctx = self.build_context(options)
        rendered = [
            RenderedFile(tpl, options.config_dir / target, strategy,
                         render_template(self.env, tpl, ctx))
            for tpl, target, strategy in self.files
        ]
        rendered += [
            RenderedFile(tpl, options.unit_dir / target, UNIT, render_template(self.env, tpl, ctx))
            for tpl, target in self.unit_files
        ]
        return rendered

    def renewal_job(self, options: ServiceOptions, alert_command: Optional[str] = None,
                    lock_timeout: float = 60) -> certs.RenewalJob:
        return certs.RenewalJob(
            service=self.name,
            unit=self.unit,
            paths=self.cert_paths(options.cert_dir),
            mode=options.mode,
            hostname=options.hostname,
            log_file=options.log_file,
            subject_alt_names=options.subject_alt_names,
            days_valid=options.days_valid,
            threshold_days=options.threshold_days,
            account=options.account,
            reload_cmd=self.reload_cmd,
            alert_command=alert_command,
            lock_timeout=lock_timeout,
        )

    def render_renewal_script(self, job: certs.RenewalJob, python: str = sys.executable,
                              command_timeout: float = DEFAULT_TIMEOUT) -> str:
        env = create_jinja_env(certs.TEMPLATES_DIR)
        return render_template(env, 'renew_cert.cron.j2', {
            'python': python,
            'service': job.service,
            'cert_dir': job.paths.directory,
            'mode': job.mode,
            'hostname': job.hostname,
            'account': job.account,
            'subject_alt_names': job.subject_alt_names,
            'days_valid': job.days_valid,
            'threshold_days': job.threshold_days,
            'lock_timeout': f'{job.lock_timeout:g}',
            'command_timeout': f'{command_timeout:g}',
            'alert_command': job.alert_command,
            'log_file': job.log_file,
        })

    def renewal_script_path(self, cron_dir: Path = CRON_DIR) -> Path:
        return cron_dir / f'renew_{self.name}_server_cert'

    # ── provisioning ─────────────────────────────────

    def _prepare_cert_dir(self, options: ServiceOptions) -> None:
        options.cert_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(options.cert_dir, self.cert_dir_mode)
        set_owner(options.cert_dir, options.account)

    def _issue_certificate(self, options: ServiceOptions, tool: CertificateAuthorityTool,
                           force_reissue: bool) -> bool:
        paths = self.cert_paths(options.cert_dir)
        ca = None
        if options.mode == certs.LOCAL_CA:
            ca = certs.ensure_authority(tool, paths, options.hostname, owner=options.account)

        if not force_reissue and certs.leaf_is_current(tool, paths, options.mode,
                                                       options.threshold_days):
            _ok(f"{paths.server_cert.name} still valid, kept")
            return False

        certs.issue_server_certificate(tool, ca, paths, options.hostname,
                                       options.subject_alt_names, owner=options.account,
                                       days=options.days_valid)
        _changed(f"{paths.server_cert.name} issued for {options.hostname}")
        return True

    def _apply_files(self, options: ServiceOptions) -> list[Path]:
        changed: list[Path] = []
        for rendered in self.render(options):
            target = rendered.target
            try:
                backup_once(target)
                current = target.read_text(encoding='utf-8') if target.exists() else ''
                owner = None if rendered.strategy == UNIT else options.account
                if write_file(target, rendered.merged(current), owner=owner):
                    changed.append(target)
                    _changed(f"{target} updated ({rendered.strategy})")
                else:
                    _ok(f"{target} unchanged ({rendered.strategy})")
            except OSError as e:
                raise ServiceApplyFailed(f"cannot write {target}: {e}") from e
        return changed

    def provision(self, options: ServiceOptions, tool: CertificateAuthorityTool,
                  controller: ServiceController, installer: Optional[PackageInstaller] = None,
                  force_reissue: bool = False, lock_timeout: float = 60,
                  alert_command: Optional[str] = None, cron_dir: Path = CRON_DIR,
                  python: str = sys.executable,
                  command_timeout: float = DEFAULT_TIMEOUT) -> ProvisionResult:
        print(f"{YELLOW}→{RESET} provisioning {self.name} (port {options.port}, {options.mode})")
        result = ProvisionResult(service=self.name)

        if installer is not None and self.packages:
            for pkg in installer.install(self.packages):
                _changed(f"package {pkg} installed")

        self._prepare_cert_dir(options)
        with directory_lock(options.cert_dir, lock_timeout):
            result.certificate_issued = self._issue_certificate(options, tool, force_reissue)

        result.changed_files = self._apply_files(options)
        if any(path.is_relative_to(options.unit_dir) for path in result.changed_files):
            controller.daemon_reload()
            _ok("systemd units reloaded")

        for command in self.setup_commands:
            controller.run(command)
            _ok(" ".join(command))

        if result.certificate_issued or result.changed_files:
            controller.restart(self.unit)
            if not controller.is_active(self.unit):
                raise ServiceRestartFailed(f"{self.unit} is not active after restart")
            result.restarted = True
            _ok(f"{self.unit} restarted")
        else:
            _ok("no changes, skipping restart")

        job = self.renewal_job(options, alert_command=alert_command, lock_timeout=lock_timeout)
        script = self.renewal_script_path(cron_dir)
        content = self.render_renewal_script(job, python=python, command_timeout=command_timeout)
        try:
            if write_file(script, content, mode=0o755):
                _changed(f"renewal job {script} installed")
            else:
                _ok(f"renewal job {script} unchanged")
        except OSError as e:
            raise ServiceApplyFailed(f"cannot install renewal job {script}: {e}") from e
        result.renewal_script = script

        print(f"{GREEN}✓{RESET} {self.name} done\n")
        return result

    def plan(self, options: ServiceOptions, tool: CertificateAuthorityTool,
             force_reissue: bool = False, lock_timeout: float = 60,
             alert_command: Optional[str] = None, cron_dir: Path = CRON_DIR,
             python: str = sys.executable,
             command_timeout: float = DEFAULT_TIMEOUT) -> dict[str, bool]:
        """What provision would change, without touching the host."""
        pending: dict[str, bool] = {}
        paths = self.cert_paths(options.cert_dir)
        if options.mode == certs.LOCAL_CA:
            pending[str(paths.ca_cert)] = not (paths.ca_key.exists() and paths.ca_cert.exists())
        pending[str(paths.server_cert)] = force_reissue or not certs.leaf_is_current(
            tool, paths, options.mode, options.threshold_days)

        merged: dict[Path, str] = {}
        for rendered in self.render(options):
            target = rendered.target
            if target not in merged:
                merged[target] = target.read_text(encoding='utf-8') if target.exists() else ''
            merged[target] = rendered.merged(merged[target])
        for target, content in merged.items():
            current = target.read_text(encoding='utf-8') if target.exists() else None
            pending[str(target)] = current != content

        job = self.renewal_job(options, alert_command=alert_command, lock_timeout=lock_timeout)
        script = self.renewal_script_path(cron_dir)
        current = script.read_text(encoding='utf-8') if script.exists() else None
        pending[str(script)] = current != self.render_renewal_script(
            job, python=python, command_timeout=command_timeout)

        for name, changes in pending.items():
            if changes:
                _changed(f"[dry-run] {name} would change")
            else:
                _ok(f"[dry-run] {name} up to date")
        return pending
