"""
Service TLS certificate lifecycle.

Creates a local CA (or a self-signed leaf), issues the server certificate a
service presents to clients, and renews it from a daily cron job once it gets
within RENEWAL_DAYS_BEFORE_EXPIRY days of expiry.

States of a leaf: absent -> issued -> valid -> expiring -> renewed -> valid.
"""
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional, Sequence

from srvinit.certs.openssl import CertificateAuthorityTool, subject_for
from srvinit.lib.errors import (
    AuthorityGenerationFailed,
    AuthorityMissingOrCorrupt,
    CommandFailed,
    LeafIssuanceFailed,
    ProvisionError,
    TimedOut,
)
from srvinit.lib.files import set_owner, write_file
from srvinit.lib.jinja import create_jinja_env, render_template
from srvinit.lib.lock import directory_lock
from srvinit.lib.log import JSONFormatter
from srvinit.lib.runner import ServiceController, run_shell

LOG = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"

SSL_DAYS_VALID = 365
CA_DAYS_VALID = 36500
RENEWAL_DAYS_BEFORE_EXPIRY = 30
CA_KEY_BITS = 4096
SERVER_KEY_BITS = 2048

LOCAL_CA = "local_ca"
SELF_SIGNED = "self_signed"


@dataclass(frozen=True)
class CertPaths:
    directory: Path
    ca_key: Path
    ca_cert: Path
    server_key: Path
    server_csr: Path
    server_cert: Path
    server_ext: Path

    @property
    def serial(self) -> Path:
        return self.directory / "ca.srl"

    @classmethod
    def in_directory(cls, directory: Path, names: dict[str, str]) -> "CertPaths":
        return cls(directory=directory, **{k: directory / v for k, v in names.items()})


@dataclass(frozen=True)
class CertificateAuthority:
    key: Path
    cert: Path


@dataclass(frozen=True)
class ServerCertificate:
    key: Path
    cert: Path
    csr: Optional[Path] = None


@dataclass(frozen=True)
class RenewalJob:
    service: str
    unit: str
    paths: CertPaths
    mode: str
    hostname: str
    log_file: Path
    subject_alt_names: tuple[str, ...] = ()
    days_valid: int = SSL_DAYS_VALID
    threshold_days: int = RENEWAL_DAYS_BEFORE_EXPIRY
    account: Optional[str] = None
    reload_cmd: tuple[str, ...] = ()
    alert_command: Optional[str] = None
    lock_timeout: float = 60


class RenewalOutcome(str, Enum):
    VALID = "valid"
    RENEWED = "renewed"
    WOULD_RENEW = "would_renew"


# ── Authority ────────────────────────────────────────

def ensure_authority(tool: CertificateAuthorityTool, paths: CertPaths, common_name: str,
                     owner: Optional[str] = None, days: int = CA_DAYS_VALID,
                     bits: int = CA_KEY_BITS) -> CertificateAuthority:
    """Reuse the CA in paths.directory, creating it when key or cert is missing."""
    ca = CertificateAuthority(key=paths.ca_key, cert=paths.ca_cert)
    if paths.ca_key.exists() and paths.ca_cert.exists():
        LOG.info("using existing CA %s", paths.ca_cert)
        return ca

    LOG.info("generating CA key and certificate in %s", paths.directory)
    try:
        tool.generate_key(paths.ca_key, bits)
        os.chmod(paths.ca_key, 0o600)
        tool.create_ca_certificate(paths.ca_key, paths.ca_cert, subject_for(common_name), days)
        os.chmod(paths.ca_cert, 0o644)
    except (CommandFailed, OSError) as e:
        raise AuthorityGenerationFailed(f"cannot create CA in {paths.directory}: {e}") from e
    set_owner(paths.ca_key, owner)
    set_owner(paths.ca_cert, owner)
    return ca


def load_authority(tool: CertificateAuthorityTool, paths: CertPaths) -> CertificateAuthority:
    """Existing CA for renewal; a renewal never mints a new CA behind the clients' back."""
    if not paths.ca_key.exists() or not paths.ca_cert.exists():
        raise AuthorityMissingOrCorrupt(f"CA key or certificate missing in {paths.directory}")
    try:
        tool.not_after(paths.ca_cert)
    except (CommandFailed, ValueError) as e:
        raise AuthorityMissingOrCorrupt(f"{paths.ca_cert} is unreadable: {e}") from e
    return CertificateAuthority(key=paths.ca_key, cert=paths.ca_cert)


# ── Leaf ─────────────────────────────────────────────

def _staging(path: Path) -> Path:
    return path.with_name(f".{path.name}.new")


def render_extensions(subject_alt_names: Sequence[str]) -> str:
    env = create_jinja_env(TEMPLATES_DIR)
    return render_template(env, "server_cert_ext.cnf.j2",
                           {"subject_alt_names": list(subject_alt_names)})


def issue_server_certificate(tool: CertificateAuthorityTool, ca: Optional[CertificateAuthority],
                             paths: CertPaths, common_name: str,
                             subject_alt_names: Sequence[str] = (), owner: Optional[str] = None,
                             days: int = SSL_DAYS_VALID,
                             bits: int = SERVER_KEY_BITS) -> ServerCertificate:
    """Issue a fresh leaf, replacing any previous one at the same paths.

    With ca=None the leaf is self-signed. Key, CSR and certificate are staged
    next to their final names and only moved into place once signing worked,
    so a failure leaves the previous leaf untouched.
    """
    key, csr, cert = _staging(paths.server_key), _staging(paths.server_csr), _staging(paths.server_cert)
    subject = subject_for(common_name)
    LOG.info("issuing server certificate for %s (%s)", common_name,
             "self-signed" if ca is None else f"signed by {ca.cert}")
    try:
        if ca is None:
            tool.create_self_signed(key, cert, subject, days, bits, subject_alt_names)
        else:
            tool.generate_key(key, bits)
            tool.create_csr(key, csr, subject)
            extfile = None
            if subject_alt_names:
                write_file(paths.server_ext, render_extensions(subject_alt_names), mode=0o644)
                extfile = paths.server_ext
            tool.sign(csr, ca.cert, ca.key, paths.serial, cert, days, extfile)
        os.chmod(key, 0o600)
        os.chmod(cert, 0o644)
        for staged in (key, cert):
            set_owner(staged, owner)

        os.replace(key, paths.server_key)
        os.replace(cert, paths.server_cert)
        if csr.exists():
            os.replace(csr, paths.server_csr)
    except (CommandFailed, OSError) as e:
        raise LeafIssuanceFailed(f"cannot issue certificate in {paths.directory}: {e}") from e
    finally:
        for staged in (key, csr, cert):
            staged.unlink(missing_ok=True)

    return ServerCertificate(key=paths.server_key, cert=paths.server_cert,
                             csr=paths.server_csr if ca is not None else None)


def read_expiry(tool: CertificateAuthorityTool, cert: Path) -> Optional[datetime]:
    if not cert.exists():
        return None
    try:
        return tool.not_after(cert)
    except (CommandFailed, ValueError) as e:
        LOG.warning("cannot read expiry of %s: %s", cert, e)
        return None


def needs_renewal(expiry: Optional[datetime], threshold_days: int,
                  now: Optional[datetime] = None) -> bool:
    if expiry is None:
        return True
    now = now or datetime.now(timezone.utc)
    return expiry - now < timedelta(days=threshold_days)


def leaf_is_current(tool: CertificateAuthorityTool, paths: CertPaths, mode: str,
                    threshold_days: int, now: Optional[datetime] = None) -> bool:
    """True when the existing leaf can be kept by a re-run of provisioning."""
    if not paths.server_key.exists():
        return False
    if needs_renewal(read_expiry(tool, paths.server_cert), threshold_days, now):
        return False
    if mode == LOCAL_CA:
        return tool.verify(paths.ca_cert, paths.server_cert)
    return True


# ── Renewal ──────────────────────────────────────────

def check_and_renew(job: RenewalJob, tool: CertificateAuthorityTool,
                    controller: ServiceController, now: Optional[datetime] = None,
                    dry_run: bool = False) -> RenewalOutcome:
    now = now or datetime.now(timezone.utc)
    fields = {"service": job.service, "cert": str(job.paths.server_cert)}

    with directory_lock(job.paths.directory, job.lock_timeout):
        expiry = read_expiry(tool, job.paths.server_cert)
        if not needs_renewal(expiry, job.threshold_days, now):
            days = (expiry - now).days
            LOG.info("certificate is valid for %s more days, no action needed", days,
                     extra={"event": "valid", "days_left": days, **fields})
            return RenewalOutcome.VALID

        days = None if expiry is None else (expiry - now).days
        if dry_run:
            LOG.info("[dry-run] certificate would be renewed (%s days left)", days,
                     extra={"event": "would_renew", "days_left": days, **fields})
            return RenewalOutcome.WOULD_RENEW

        LOG.info("certificate expires in less than %s days, renewing", job.threshold_days,
                 extra={"event": "renewing", "days_left": days, **fields})
        ca = load_authority(tool, job.paths) if job.mode == LOCAL_CA else None
        issue_server_certificate(tool, ca, job.paths, job.hostname, job.subject_alt_names,
                                 owner=job.account, days=job.days_valid)
        controller.reload(job.unit, list(job.reload_cmd) or None)

    try:
        serial = tool.serial(job.paths.server_cert)
    except (CommandFailed, ValueError):
        serial = None
    LOG.info("%s reloaded with the new certificate", job.unit,
             extra={"event": "renewed", "serial": serial, **fields})
    return RenewalOutcome.RENEWED


@contextmanager
def job_log(log_file: Path) -> Iterator[None]:
    """Append srvinit log records to log_file as JSON lines while the block runs."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    log_file.touch(exist_ok=True)
    os.chmod(log_file, 0o644)

    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setLevel(logging.INFO)
    handler.setFormatter(JSONFormatter())
    logger = logging.getLogger("srvinit")
    previous_level = logger.level
    if logger.getEffectiveLevel() > logging.INFO:
        logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    try:
        yield
    finally:
        logger.removeHandler(handler)
        logger.setLevel(previous_level)
        handler.close()


def send_alert(job: RenewalJob, message: str, timeout: float = 60) -> None:
    if not job.alert_command:
        return
    try:
        run_shell(job.alert_command, timeout=timeout, input=message + "\n")
    except TimedOut as e:
        LOG.warning("alert command timed out: %s", e)


def run_renewal(job: RenewalJob, tool: CertificateAuthorityTool, controller: ServiceController,
                dry_run: bool = False, now: Optional[datetime] = None) -> int:
    """Entry point of the daily job: 0 when valid or renewed, 1 on any failure."""
    with job_log(job.log_file):
        try:
            check_and_renew(job, tool, controller, now=now, dry_run=dry_run)
        except ProvisionError as e:
            LOG.error("certificate renewal failed: %s", e,
                      extra={"event": "renewal_failed", "service": job.service,
                             "error": type(e).__name__})
            send_alert(job, f"{job.service}: certificate renewal failed: {e}")
            return 1
    return 0


# ── Status ───────────────────────────────────────────

@dataclass
class CertificateStatus:
    service: str
    ca_present: bool
    leaf_present: bool
    not_after: Optional[datetime] = None
    days_left: Optional[int] = None
    needs_renewal: bool = True
    notes: list[str] = field(default_factory=list)


def certificate_status(tool: CertificateAuthorityTool, service: str, paths: CertPaths,
                       mode: str, threshold_days: int = RENEWAL_DAYS_BEFORE_EXPIRY,
                       now: Optional[datetime] = None) -> CertificateStatus:
    now = now or datetime.now(timezone.utc)
    status = CertificateStatus(
        service=service,
        ca_present=paths.ca_key.exists() and paths.ca_cert.exists(),
        leaf_present=paths.server_cert.exists(),
    )
    expiry = read_expiry(tool, paths.server_cert)
    if expiry is not None:
        status.not_after = expiry
        status.days_left = (expiry - now).days
    status.needs_renewal = needs_renewal(expiry, threshold_days, now)
    if mode == LOCAL_CA and status.leaf_present and status.ca_present \
            and not tool.verify(paths.ca_cert, paths.server_cert):
        status.notes.append("leaf does not verify against CA")
    return status
