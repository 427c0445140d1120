"""PostgreSQL 16: TLS with a local CA, pg_hba restricted to hostssl, resource-based tuning."""
from pathlib import Path

from srvinit.lib.deploy import ServiceDeployer, ServiceOptions
from srvinit.postgres.tuning import HostInspector, compute_tuning

BASE = Path(__file__).parent
PG_VERSION = 16
CONFIG_DIR = f'/etc/postgresql/{PG_VERSION}/main'


def tuning_context(options: ServiceOptions) -> dict:
    profile = options.extra.get('profile') or HostInspector().collect()
    return {
        'profile': profile,
        'tuning': compute_tuning(profile).as_settings(),
    }


deployer = ServiceDeployer({
    'name': 'postgres',
    'unit': 'postgresql',
    'account': 'postgres',
    'templates_dir': BASE / 'templates',
    'config_dir': CONFIG_DIR,
    'cert_dir': f'{CONFIG_DIR}/ssl',
    'cert_dir_mode': 0o700,
    'cert_names': {
        'ca_key': 'ca.key',
        'ca_cert': 'ca.crt',
        'server_key': 'server.key',
        'server_csr': 'server.csr',
        'server_cert': 'server.crt',
        'server_ext': 'server_ext.cnf',
    },
    'files': [
        ('postgresql.tls.conf.j2', 'postgresql.conf', 'block:tls'),
        ('postgresql.tuning.conf.j2', 'postgresql.conf', 'block:tuning'),
        ('pg_hba.conf.j2', 'pg_hba.conf', 'replace'),
    ],
    'packages': ['openssl', 'cron'],
    'defaults': {
        'port': 5432,
        'listen_addresses': '*',
        'hba_method': 'md5',
    },
    'log_file': '/var/log/postgresql_cert_renewal.log',
    'context': tuning_context,
})
