"""Certificate authority operations, backed by the openssl binary."""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from srvinit.lib.errors import CommandFailed
from srvinit.lib.runner import DEFAULT_TIMEOUT, run_command

OPENSSL_DATE_FORMAT = "%b %d %H:%M:%S %Y %Z"


def parse_openssl_date(value: str) -> datetime:
    return datetime.strptime(value.strip(), OPENSSL_DATE_FORMAT).replace(tzinfo=timezone.utc)


def subject_for(common_name: str) -> str:
    return f"/CN={common_name}"


class CertificateAuthorityTool(ABC):

    @abstractmethod
    def generate_key(self, key: Path, bits: int) -> None:
        pass

    @abstractmethod
    def create_ca_certificate(self, key: Path, cert: Path, subject: str, days: int) -> None:
        pass

    @abstractmethod
    def create_csr(self, key: Path, csr: Path, subject: str) -> None:
        pass

    @abstractmethod
    def sign(self, csr: Path, ca_cert: Path, ca_key: Path, serial: Path, cert: Path,
             days: int, extfile: Optional[Path] = None) -> None:
        pass

    @abstractmethod
    def create_self_signed(self, key: Path, cert: Path, subject: str, days: int, bits: int,
                           subject_alt_names: Sequence[str] = ()) -> None:
        pass

    @abstractmethod
    def not_after(self, cert: Path) -> datetime:
        """Expiry of cert; raises CommandFailed if the file is not a certificate."""

    @abstractmethod
    def not_before(self, cert: Path) -> datetime:
        pass

    @abstractmethod
    def serial(self, cert: Path) -> str:
        pass

    @abstractmethod
    def verify(self, ca_cert: Path, cert: Path) -> bool:
        pass


class OpenSSLTool(CertificateAuthorityTool):

    def __init__(self, executable: str = "openssl", timeout: float = DEFAULT_TIMEOUT):
        self.executable = executable
        self.timeout = timeout

    def _run(self, *args: str, check: bool = True):
        return run_command([self.executable, *args], timeout=self.timeout, check=check)

    def generate_key(self, key: Path, bits: int) -> None:
        self._run("genrsa", "-out", str(key), str(bits))

    def create_ca_certificate(self, key: Path, cert: Path, subject: str, days: int) -> None:
        self._run("req", "-x509", "-new", "-nodes", "-key", str(key), "-sha256",
                  "-days", str(days), "-out", str(cert), "-subj", subject)

    def create_csr(self, key: Path, csr: Path, subject: str) -> None:
        self._run("req", "-new", "-key", str(key), "-out", str(csr), "-subj", subject)

    def sign(self, csr: Path, ca_cert: Path, ca_key: Path, serial: Path, cert: Path,
             days: int, extfile: Optional[Path] = None) -> None:
        args = ["x509", "-req", "-in", str(csr), "-CA", str(ca_cert), "-CAkey", str(ca_key),
                "-CAserial", str(serial), "-CAcreateserial",
                "-out", str(cert), "-days", str(days), "-sha256"]
        if extfile is not None:
            args += ["-extfile", str(extfile)]
        self._run(*args)

    def create_self_signed(self, key: Path, cert: Path, subject: str, days: int, bits: int,
                           subject_alt_names: Sequence[str] = ()) -> None:
        args = ["req", "-x509", "-newkey", f"rsa:{bits}", "-nodes", "-keyout", str(key),
                "-out", str(cert), "-days", str(days), "-sha256", "-subj", subject]
        if subject_alt_names:
            san = ",".join(f"DNS:{name}" for name in subject_alt_names)
            args += ["-addext", f"subjectAltName={san}"]
        self._run(*args)

    def _field(self, flag: str, cert: Path) -> str:
        cmd = ["x509", flag, "-noout", "-in", str(cert)]
        out = self._run(*cmd).stdout.strip()
        if "=" not in out:
            raise CommandFailed([self.executable, *cmd], 0, f"unexpected output {out!r}")
        return out.split("=", 1)[1]

    def not_after(self, cert: Path) -> datetime:
        return parse_openssl_date(self._field("-enddate", cert))

    def not_before(self, cert: Path) -> datetime:
        return parse_openssl_date(self._field("-startdate", cert))

    def serial(self, cert: Path) -> str:
        return self._field("-serial", cert)

    def verify(self, ca_cert: Path, cert: Path) -> bool:
        try:
            result = self._run("verify", "-CAfile", str(ca_cert), str(cert), check=False)
        except CommandFailed:
            return False
        return result.returncode == 0
