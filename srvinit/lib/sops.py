from pathlib import Path

import yaml

from srvinit.lib.errors import CommandFailed, ConfigError
from srvinit.lib.runner import DEFAULT_TIMEOUT, run_command


def decrypt_sops(file_path: Path, timeout: float = DEFAULT_TIMEOUT) -> dict:
    try:
        result = run_command(['sops', '-d', str(file_path)], timeout=timeout)
    except CommandFailed as e:
        raise ConfigError(f"SOPS decryption of {file_path} failed: {e}") from e
    try:
        return yaml.safe_load(result.stdout) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{file_path} decrypted to invalid YAML: {e}") from e
