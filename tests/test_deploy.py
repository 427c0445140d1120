import dataclasses
import os
import shlex
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import FakeCATool, FakeController, FakeInstaller
from srvinit import cli, services
from srvinit.certs import deploy as certs
from srvinit.lib.errors import ConfigError, ServiceRestartFailed
from srvinit.postgres.tuning import HostResourceProfile, StorageMedium

PROFILE = HostResourceProfile(4096, 4, StorageMedium.SOLID_STATE)
PYTHON = '/usr/bin/python3'


@pytest.fixture
def postgres_options(tmp_path):
    return services.get('postgres').resolve(
        {'config_dir': str(tmp_path / 'postgresql'), 'account': None, 'profile': PROFILE},
        port=5433, hostname='db1.example.com',
    )


@pytest.fixture
def rabbitmq_options(tmp_path):
    return services.get('rabbitmq').resolve(
        {'config_dir': str(tmp_path / 'rabbitmq'), 'unit_dir': str(tmp_path / 'systemd'),
         'account': None},
        hostname='mq1.example.com',
    )


def provision(name, options, tmp_path, **kwargs):
    kwargs.setdefault('tool', FakeCATool())
    kwargs.setdefault('controller', FakeController())
    return services.get(name).provision(options, cron_dir=tmp_path / 'cron.daily',
                                        python=PYTHON, **kwargs)


# ── resolve ──────────────────────────────────────────

def test_resolve_layers_defaults_config_and_flags():
    deployer = services.get('postgres')
    options = deployer.resolve({'port': 6000, 'mode': 'self_signed'}, port=6001,
                               hostname='db1', mode=None)

    assert options.port == 6001
    assert options.mode == 'self_signed'
    assert options.cert_dir == Path('/etc/postgresql/16/main/ssl')
    assert options.account == 'postgres'
    assert options.extra == {'listen_addresses': '*', 'hba_method': 'md5'}


def test_resolve_moves_cert_dir_with_config_dir(tmp_path):
    options = services.get('rabbitmq').resolve({'config_dir': str(tmp_path)}, hostname='mq1')
    assert options.cert_dir == tmp_path / 'ssl'
    assert options.subject_alt_names == ('mq1',)


def test_resolve_explicit_cert_dir_and_sans(tmp_path):
    options = services.get('rabbitmq').resolve(None, cert_dir=tmp_path / 'certs',
                                               hostname='mq1', subject_alt_names=('mq',))
    assert options.cert_dir == tmp_path / 'certs'
    assert options.subject_alt_names == ('mq1', 'mq')


@pytest.mark.parametrize('overrides', [
    {'mode': 'letsencrypt'},
    {'days_valid': 0},
    {'threshold_days': -1},
])
def test_resolve_rejects_bad_values(overrides):
    with pytest.raises(ConfigError):
        services.get('postgres').resolve(None, hostname='db1', **overrides)


def test_unknown_service():
    with pytest.raises(ConfigError, match='unknown service'):
        services.get('mysql')


def test_detect_service_from_cert_names(tmp_path):
    assert services.detect(tmp_path) is None
    (tmp_path / 'server.crt').write_text('x')
    assert services.detect(tmp_path) is services.get('postgres')
    (tmp_path / 'server.crt').unlink()
    (tmp_path / 'server.cert.pem').write_text('x')
    assert services.detect(tmp_path) is services.get('rabbitmq')


# ── rendering ────────────────────────────────────────

def test_postgres_render(postgres_options):
    rendered = {r.template: r for r in services.get('postgres').render(postgres_options)}
    ssl_dir = postgres_options.cert_dir

    tls = rendered['postgresql.tls.conf.j2']
    assert tls.block == 'tls'
    assert 'port = 5433' in tls.content
    assert "listen_addresses = '*'" in tls.content
    assert f"ssl_ca_file = '{ssl_dir / 'ca.crt'}'" in tls.content
    assert f"ssl_key_file = '{ssl_dir / 'server.key'}'" in tls.content
    assert "ssl_min_protocol_version = 'TLSv1.2'" in tls.content
    assert "ssl_max_protocol_version = 'TLSv1.3'" in tls.content

    tuning = rendered['postgresql.tuning.conf.j2'].content
    assert 'shared_buffers = 1024MB' in tuning
    assert 'effective_io_concurrency = 200' in tuning
    assert 'random_page_cost = 1.1' in tuning

    hba = rendered['pg_hba.conf.j2']
    assert hba.block is None
    assert 'local   all       postgres              peer' in hba.content
    assert 'hostssl all       all       0.0.0.0/0   md5' in hba.content
    assert 'hostssl all       all       ::0/0       md5' in hba.content


def test_postgres_self_signed_has_no_ca_file(tmp_path):
    options = services.get('postgres').resolve(
        {'config_dir': str(tmp_path), 'profile': PROFILE, 'hba_method': 'scram-sha-256'},
        mode='self_signed', hostname='db1',
    )
    rendered = {r.template: r.content for r in services.get('postgres').render(options)}
    assert 'ssl_ca_file' not in rendered['postgresql.tls.conf.j2']
    assert 'scram-sha-256' in rendered['pg_hba.conf.j2']


def test_rabbitmq_render(rabbitmq_options):
    conf, limits = services.get('rabbitmq').render(rabbitmq_options)
    ssl_dir = rabbitmq_options.cert_dir

    assert conf.target == rabbitmq_options.config_dir / 'rabbitmq.conf'
    assert 'listeners.tcp = none' in conf.content
    assert 'listeners.ssl.default = 5671' in conf.content
    assert f"ssl_options.cacertfile = {ssl_dir / 'ca.cert.pem'}" in conf.content
    assert 'ssl_options.verify = verify_peer' in conf.content
    assert 'ssl_options.fail_if_no_peer_cert = false' in conf.content
    assert 'ssl_options.versions.1 = tlsv1.2' in conf.content
    assert 'ssl_options.versions.2 = tlsv1.3' in conf.content
    assert 'management.ssl.port       = 15671' in conf.content

    assert limits.target == rabbitmq_options.unit_dir / 'rabbitmq-server.service.d' / 'limits.conf'
    assert limits.strategy == 'unit'
    assert '[Service]\nLimitNOFILE=65536\n' in limits.content


def test_renewal_script_bakes_in_every_value(rabbitmq_options):
    deployer = services.get('rabbitmq')
    job = deployer.renewal_job(rabbitmq_options, alert_command="mail -s 'cert failed' ops",
                               lock_timeout=30)
    script = deployer.render_renewal_script(job, python=PYTHON, command_timeout=120)

    assert script.startswith('#!/bin/sh\n')
    assert f'exec {PYTHON} -m srvinit --log-format json renew' in script
    assert f'--cert-dir {rabbitmq_options.cert_dir}' in script
    assert '--service rabbitmq' in script
    assert '--mode local_ca' in script
    assert "--account ''" in script
    assert '--san mq1.example.com' in script
    assert '--days-valid 365' in script
    assert '--threshold-days 30' in script
    assert '--lock-timeout 30' in script
    assert '--command-timeout 120' in script
    assert "--alert-cmd 'mail -s '\"'\"'cert failed'\"'\"' ops'" in script
    assert '--log-file /var/log/rabbitmq_cert_renewal.log' in script
    assert deployer.renewal_script_path() == Path('/etc/cron.daily/renew_rabbitmq_server_cert')


def _parse_renewal_script(script):
    command = script[script.index('exec '):].replace('\\\n', ' ')
    argv = shlex.split(command)
    assert argv[:6] == ['exec', PYTHON, '-m', 'srvinit', '--log-format', 'json']
    return cli.build_parser().parse_args(argv[4:])


@pytest.mark.parametrize('account', ['pgsvc', None])
def test_renewal_script_rebuilds_the_same_job(postgres_options, account):
    deployer = services.get('postgres')
    options = dataclasses.replace(postgres_options, account=account,
                                  subject_alt_names=('db1', 'db.internal'))
    job = deployer.renewal_job(options, alert_command='logger -t srvinit', lock_timeout=45)
    script = deployer.render_renewal_script(job, python=PYTHON, command_timeout=90)

    args = _parse_renewal_script(script)

    assert args.func is cli.cmd_renew
    assert args.command_timeout == 90
    assert cli.renewal_job_from_args(args) == job


# ── provisioning ─────────────────────────────────────

def test_postgres_provision(postgres_options, tmp_path):
    conf = postgres_options.config_dir / 'postgresql.conf'
    conf.parent.mkdir(parents=True)
    conf.write_text("data_directory = '/var/lib/postgresql/16/main'\n")
    tool, controller, installer = FakeCATool(), FakeController(), FakeInstaller(['openssl'])

    result = provision('postgres', postgres_options, tmp_path, tool=tool,
                       controller=controller, installer=installer)

    assert result.certificate_issued and result.restarted
    assert controller.restarts == ['postgresql']
    assert installer.installed == ['cron']

    paths = services.get('postgres').cert_paths(postgres_options.cert_dir)
    assert postgres_options.cert_dir.stat().st_mode & 0o777 == 0o700
    assert tool.verify(paths.ca_cert, paths.server_cert)
    assert tool.read(paths.server_cert)['subject'] == '/CN=db1.example.com'

    text = conf.read_text()
    assert text.startswith("data_directory = '/var/lib/postgresql/16/main'\n")
    assert '# BEGIN srvinit tls' in text and '# BEGIN srvinit tuning' in text
    assert (conf.parent / 'postgresql.conf.bak').read_text() == \
        "data_directory = '/var/lib/postgresql/16/main'\n"
    assert 'hostssl' in (conf.parent / 'pg_hba.conf').read_text()

    script = tmp_path / 'cron.daily' / 'renew_postgres_server_cert'
    assert result.renewal_script == script
    assert script.stat().st_mode & 0o777 == 0o755
    assert '--san' not in script.read_text()


def test_postgres_provision_rerun_changes_nothing(postgres_options, tmp_path):
    tool, controller = FakeCATool(), FakeController()
    provision('postgres', postgres_options, tmp_path, tool=tool, controller=controller)
    conf = postgres_options.config_dir / 'postgresql.conf'
    first = conf.read_text()

    result = provision('postgres', postgres_options, tmp_path, tool=tool,
                       controller=controller)

    assert not result.certificate_issued
    assert result.changed_files == []
    assert not result.restarted
    assert controller.restarts == ['postgresql']
    assert conf.read_text() == first
    assert first.count('# BEGIN srvinit tuning') == 1
    assert tool.calls.count('create_ca_certificate') == 1
    assert tool.calls.count('sign') == 1


def test_port_change_rewrites_block_and_restarts(postgres_options, tmp_path):
    controller = FakeController()
    tool = FakeCATool()
    provision('postgres', postgres_options, tmp_path, tool=tool, controller=controller)

    moved = services.get('postgres').resolve(
        {'config_dir': str(postgres_options.config_dir), 'account': None, 'profile': PROFILE},
        port=5434, hostname='db1.example.com',
    )
    result = provision('postgres', moved, tmp_path, tool=tool, controller=controller)

    text = (moved.config_dir / 'postgresql.conf').read_text()
    assert result.changed_files == [moved.config_dir / 'postgresql.conf']
    assert not result.certificate_issued
    assert 'port = 5434' in text and 'port = 5433' not in text
    assert text.count('# BEGIN srvinit tls') == 1
    assert controller.restarts == ['postgresql', 'postgresql']


def test_force_reissue(postgres_options, tmp_path):
    tool = FakeCATool()
    provision('postgres', postgres_options, tmp_path, tool=tool)
    result = provision('postgres', postgres_options, tmp_path, tool=tool, force_reissue=True)

    assert result.certificate_issued and result.restarted
    assert tool.calls.count('sign') == 2
    assert tool.calls.count('create_ca_certificate') == 1


def test_expiring_leaf_is_reissued_on_rerun(postgres_options, tmp_path):
    tool = FakeCATool()
    provision('postgres', postgres_options, tmp_path, tool=tool)
    paths = services.get('postgres').cert_paths(postgres_options.cert_dir)
    original = tool.now
    tool.now = original - timedelta(days=350)
    certs.issue_server_certificate(tool, certs.load_authority(tool, paths), paths,
                                   'db1.example.com')
    tool.now = original

    assert provision('postgres', postgres_options, tmp_path, tool=tool).certificate_issued


def test_rabbitmq_provision(rabbitmq_options, tmp_path):
    tool, controller = FakeCATool(), FakeController()
    result = provision('rabbitmq', rabbitmq_options, tmp_path, tool=tool,
                       controller=controller)

    paths = services.get('rabbitmq').cert_paths(rabbitmq_options.cert_dir)
    assert result.restarted
    assert controller.restarts == ['rabbitmq-server']
    assert tool.read(paths.server_cert)['sans'] == ['mq1.example.com']
    assert 'DNS.1 = mq1.example.com' in paths.server_ext.read_text()
    assert (rabbitmq_options.config_dir / 'rabbitmq.conf').exists()
    assert not (rabbitmq_options.config_dir / 'rabbitmq.conf.bak').exists()

    limits = rabbitmq_options.unit_dir / 'rabbitmq-server.service.d' / 'limits.conf'
    assert 'LimitNOFILE=65536' in limits.read_text()
    assert limits in result.changed_files
    assert controller.daemon_reloads == 1
    assert controller.commands == [['rabbitmq-plugins', 'enable', 'rabbitmq_management']]


def test_rabbitmq_rerun_enables_plugin_without_reload(rabbitmq_options, tmp_path):
    tool, controller = FakeCATool(), FakeController()
    provision('rabbitmq', rabbitmq_options, tmp_path, tool=tool, controller=controller)
    result = provision('rabbitmq', rabbitmq_options, tmp_path, tool=tool,
                       controller=controller)

    assert not result.restarted
    assert controller.daemon_reloads == 1
    assert len(controller.commands) == 2


def test_self_signed_provision(tmp_path):
    options = services.get('rabbitmq').resolve(
        {'config_dir': str(tmp_path / 'rabbitmq'), 'unit_dir': str(tmp_path / 'systemd'),
         'account': None},
        hostname='mq1.example.com', mode='self_signed',
    )
    tool = FakeCATool()
    provision('rabbitmq', options, tmp_path, tool=tool)

    paths = services.get('rabbitmq').cert_paths(options.cert_dir)
    assert not paths.ca_cert.exists()
    assert tool.calls == ['create_self_signed']
    conf = (options.config_dir / 'rabbitmq.conf').read_text()
    assert f'ssl_options.cacertfile = {paths.server_cert}' in conf


def test_restart_failure_propagates(postgres_options, tmp_path):
    with pytest.raises(ServiceRestartFailed):
        provision('postgres', postgres_options, tmp_path, controller=FakeController(fail=True))
    assert (postgres_options.config_dir / 'pg_hba.conf').exists()


class InactiveController(FakeController):

    def is_active(self, unit):
        return False


def test_unit_not_active_after_restart(postgres_options, tmp_path):
    with pytest.raises(ServiceRestartFailed, match='not active'):
        provision('postgres', postgres_options, tmp_path, controller=InactiveController())
    assert not (tmp_path / 'cron.daily').exists()


def test_plan_reports_pending_changes(postgres_options, tmp_path):
    deployer = services.get('postgres')
    tool = FakeCATool()
    kwargs = dict(cron_dir=tmp_path / 'cron.daily', python=PYTHON)

    pending = deployer.plan(postgres_options, tool, **kwargs)
    assert all(pending.values())
    assert not postgres_options.config_dir.exists()

    provision('postgres', postgres_options, tmp_path, tool=tool)
    assert not any(deployer.plan(postgres_options, tool, **kwargs).values())
    assert any(deployer.plan(postgres_options, tool, force_reissue=True, **kwargs).values())


def test_cert_dir_owner(postgres_options, tmp_path, monkeypatch):
    owners = []
    monkeypatch.setattr('srvinit.lib.files.shutil.chown',
                        lambda path, user, group: owners.append((Path(path).name, user)))
    options = services.get('postgres').resolve(
        {'config_dir': str(postgres_options.config_dir), 'profile': PROFILE}, hostname='db1',
    )
    provision('postgres', options, tmp_path)

    assert ('ssl', 'postgres') in owners
    assert ('server.key', 'postgres') in owners or ('.server.key.new', 'postgres') in owners
    assert os.path.exists(options.cert_dir / 'server.key')
