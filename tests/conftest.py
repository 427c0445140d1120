import itertools
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Sequence

import pytest

from srvinit import services
from srvinit.certs import deploy as certs
from srvinit.certs.openssl import CertificateAuthorityTool
from srvinit.lib.errors import CommandFailed, ServiceRestartFailed
from srvinit.lib.runner import PackageInstaller, ServiceController

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeCATool(CertificateAuthorityTool):
    """Writes JSON "certificates" so tests can control dates and issuers."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime.now(timezone.utc)
        self.calls: list[str] = []
        self.fail: set[str] = set()
        self._ids = itertools.count(1)

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise CommandFailed(['openssl', name], 1, 'simulated failure')

    def _write_cert(self, cert: Path, subject: str, ident: str, issuer: str, serial: str,
                    days: int, sans: Sequence[str] = ()) -> None:
        cert.write_text(json.dumps({
            'subject': subject,
            'id': ident,
            'issuer': issuer,
            'serial': serial,
            'sans': list(sans),
            'not_before': self.now.isoformat(),
            'not_after': (self.now + timedelta(days=days)).isoformat(),
        }))

    def read(self, cert: Path) -> dict:
        try:
            return json.loads(cert.read_text())
        except (OSError, ValueError) as e:
            raise CommandFailed(['openssl', 'x509', '-in', str(cert)], 1, str(e)) from e

    def generate_key(self, key, bits):
        self._record('generate_key')
        key.write_text(f'key {bits}\n')

    def create_ca_certificate(self, key, cert, subject, days):
        self._record('create_ca_certificate')
        ident = f'ca-{next(self._ids)}'
        self._write_cert(cert, subject, ident, ident, '00', days)

    def create_csr(self, key, csr, subject):
        self._record('create_csr')
        csr.write_text(json.dumps({'subject': subject}))

    def sign(self, csr, ca_cert, ca_key, serial, cert, days, extfile=None):
        self._record('sign')
        ca = self.read(ca_cert)
        number = int(serial.read_text(), 16) + 1 if serial.exists() else 1
        serial.write_text(f'{number:02X}\n')
        sans = []
        if extfile is not None:
            sans = [line.split('=', 1)[1].strip() for line in extfile.read_text().splitlines()
                    if line.startswith('DNS.')]
        self._write_cert(cert, self.read(csr)['subject'], f'leaf-{number}', ca['id'],
                         f'{number:02X}', days, sans)

    def create_self_signed(self, key, cert, subject, days, bits, subject_alt_names=()):
        self._record('create_self_signed')
        key.write_text(f'key {bits}\n')
        ident = f'self-{next(self._ids)}'
        self._write_cert(cert, subject, ident, ident, ident, days, subject_alt_names)

    def not_after(self, cert):
        return datetime.fromisoformat(self.read(cert)['not_after'])

    def not_before(self, cert):
        return datetime.fromisoformat(self.read(cert)['not_before'])

    def serial(self, cert):
        return self.read(cert)['serial']

    def verify(self, ca_cert, cert):
        try:
            return self.read(cert)['issuer'] == self.read(ca_cert)['id']
        except CommandFailed:
            return False


class FakeController(ServiceController):

    def __init__(self, fail: bool = False):
        super().__init__()
        self.fail = fail
        self.restarts: list[str] = []
        self.commands: list[list[str]] = []
        self.daemon_reloads = 0

    def restart(self, unit):
        if self.fail:
            raise ServiceRestartFailed(f"{unit} failed to restart")
        self.restarts.append(unit)

    def is_active(self, unit):
        return unit in self.restarts

    def run(self, cmd):
        if self.fail:
            raise ServiceRestartFailed(f"{cmd} failed")
        self.commands.append(list(cmd))

    def daemon_reload(self):
        self.daemon_reloads += 1


class FakeInstaller(PackageInstaller):

    def __init__(self, present: Sequence[str] = (), dry_run: bool = False):
        super().__init__(dry_run=dry_run)
        self.present = set(present)
        self.installed: list[str] = []

    def is_installed(self, package):
        return package in self.present

    def install_missing(self, packages):
        self.installed.extend(packages)
        self.present.update(packages)


@pytest.fixture
def tool():
    return FakeCATool()


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def pg_paths(tmp_path):
    cert_dir = tmp_path / 'ssl'
    cert_dir.mkdir()
    return services.get('postgres').cert_paths(cert_dir)


@pytest.fixture
def rabbit_paths(tmp_path):
    cert_dir = tmp_path / 'rabbit-ssl'
    cert_dir.mkdir()
    return services.get('rabbitmq').cert_paths(cert_dir)


@pytest.fixture
def issue_leaf():
    """Issue a CA-signed leaf that has days_left days remaining at NOW."""

    def issue(tool: FakeCATool, paths: certs.CertPaths, days_left: int,
              hostname: str = 'db1.example.com', sans: Sequence[str] = ()):
        tool.now = NOW - timedelta(days=certs.SSL_DAYS_VALID - days_left)
        ca = certs.ensure_authority(tool, paths, 'test-ca')
        certs.issue_server_certificate(tool, ca, paths, hostname, sans)
        tool.now = NOW
        return ca

    return issue
