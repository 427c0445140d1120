"""YAML configuration for srvinit.

The file is optional. Values are layered: built-in service defaults, then the
``services.<name>`` mapping from the file, then command line flags. Files whose
name ends in ``.enc.yaml`` are decrypted with sops first.

Example::

    command_timeout: 300
    lock_timeout: 60
    alert_command: "mail -s 'cert renewal failed' ops@example.com"
    services:
      postgres:
        port: 5433
        mode: local_ca
        subject_alt_names: [db1.example.com]
      rabbitmq:
        port: 5671
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from srvinit.lib.errors import ConfigError
from srvinit.lib.runner import DEFAULT_TIMEOUT
from srvinit.lib.sops import decrypt_sops

LOG = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path('/etc/srvinit/config.yaml')
DEFAULT_LOCK_TIMEOUT = 60

MODES = ('local_ca', 'self_signed')

SERVICE_KEYS = {
    'port': int,
    'management_port': int,
    'cert_dir': str,
    'mode': str,
    'hostname': str,
    'subject_alt_names': list,
    'days_valid': int,
    'threshold_days': int,
    'log_file': str,
    'account': str,
    'hba_method': str,
    'config_dir': str,
    'listen_addresses': str,
    'unit_dir': str,
    'nofile_limit': int,
}


@dataclass(frozen=True)
class Settings:
    services: dict[str, dict[str, Any]] = field(default_factory=dict)
    command_timeout: float = DEFAULT_TIMEOUT
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    alert_command: Optional[str] = None

    def service(self, name: str) -> dict[str, Any]:
        return dict(self.services.get(name, {}))


def _check_service(name: str, values: Any) -> dict[str, Any]:
    if values is None:
        return {}
    if not isinstance(values, dict):
        raise ConfigError(f"services.{name} must be a mapping")
    for key, value in values.items():
        expected = SERVICE_KEYS.get(key)
        if expected is None:
            raise ConfigError(f"services.{name}: unknown key '{key}'")
        if not isinstance(value, expected) or isinstance(value, bool):
            raise ConfigError(f"services.{name}.{key} must be {expected.__name__}")
    if not all(isinstance(n, str) for n in values.get('subject_alt_names', [])):
        raise ConfigError(f"services.{name}.subject_alt_names must list host names")
    if values.get('mode', 'local_ca') not in MODES:
        raise ConfigError(f"services.{name}.mode must be one of {', '.join(MODES)}")
    return values


def parse_config(data: Any) -> Settings:
    if data is None:
        return Settings()
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")

    services = data.get('services') or {}
    if not isinstance(services, dict):
        raise ConfigError("services must be a mapping")

    try:
        command_timeout = float(data.get('command_timeout', DEFAULT_TIMEOUT))
        lock_timeout = float(data.get('lock_timeout', DEFAULT_LOCK_TIMEOUT))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid timeout: {e}") from e
    if command_timeout <= 0 or lock_timeout < 0:
        raise ConfigError("timeouts must be positive")

    alert_command = data.get('alert_command')
    if alert_command is not None and not isinstance(alert_command, str):
        raise ConfigError("alert_command must be a string")

    return Settings(
        services={name: _check_service(name, values) for name, values in services.items()},
        command_timeout=command_timeout,
        lock_timeout=lock_timeout,
        alert_command=alert_command,
    )


def load_config(path: Optional[Path] = None) -> Settings:
    """Load settings; a missing default file yields built-in defaults."""
    explicit = path is not None
    path = path or DEFAULT_CONFIG_FILE

    if not path.exists():
        if explicit:
            raise ConfigError(f"config file {path} not found")
        LOG.debug("no config file at %s, using defaults", path)
        return Settings()

    if path.name.endswith('.enc.yaml'):
        data = decrypt_sops(path)
    else:
        try:
            data = yaml.safe_load(path.read_text(encoding='utf-8'))
        except yaml.YAMLError as e:
            raise ConfigError(f"cannot parse {path}: {e}") from e

    LOG.debug("loaded config from %s", path)
    return parse_config(data)
