from pathlib import Path
from typing import Optional

from srvinit.lib.deploy import ServiceDeployer
from srvinit.lib.errors import ConfigError
from srvinit.postgres.deploy import deployer as postgres
from srvinit.rabbitmq.deploy import deployer as rabbitmq

SERVICES: dict[str, ServiceDeployer] = {
    'postgres': postgres,
    'rabbitmq': rabbitmq,
}


def get(name: str) -> ServiceDeployer:
    try:
        return SERVICES[name]
    except KeyError:
        raise ConfigError(f"unknown service '{name}' (known: {', '.join(SERVICES)})") from None


def detect(cert_dir: Path) -> Optional[ServiceDeployer]:
    """Guess which service a certificate directory belongs to from its file names."""
    for deployer in SERVICES.values():
        if deployer.owns(cert_dir):
            return deployer
    return None
