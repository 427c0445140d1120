"""RabbitMQ: TLS-only AMQP and management listeners with a local CA."""
from pathlib import Path

from srvinit.lib.deploy import ServiceDeployer

BASE = Path(__file__).parent

deployer = ServiceDeployer({
    'name': 'rabbitmq',
    'unit': 'rabbitmq-server',
    'account': 'rabbitmq',
    'templates_dir': BASE / 'templates',
    'config_dir': '/etc/rabbitmq',
    'cert_dir': '/etc/rabbitmq/ssl',
    'cert_names': {
        'ca_key': 'ca.key.pem',
        'ca_cert': 'ca.cert.pem',
        'server_key': 'server.key.pem',
        'server_csr': 'server.csr.pem',
        'server_cert': 'server.cert.pem',
        'server_ext': 'server_cert_ext.cnf',
    },
    'files': [
        ('rabbitmq.conf.j2', 'rabbitmq.conf', 'replace'),
    ],
    'unit_files': [
        ('limits.conf.j2', 'rabbitmq-server.service.d/limits.conf'),
    ],
    'setup_commands': [
        ['rabbitmq-plugins', 'enable', 'rabbitmq_management'],
    ],
    'packages': ['openssl', 'cron'],
    'defaults': {
        'port': 5671,
        'management_port': 15671,
        'verify': 'verify_peer',
        'fail_if_no_peer_cert': False,
        'nofile_limit': 65536,
    },
    'san_hostname': True,
    # renewal clears the broker's PEM cache instead of restarting it
    'reload_cmd': ['rabbitmqctl', 'eval', 'ssl:clear_pem_cache().'],
    'log_file': '/var/log/rabbitmq_cert_renewal.log',
})
