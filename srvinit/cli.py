"""srvinit - TLS certificates and tuning for services on Ubuntu hosts"""
import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from srvinit import services
from srvinit.certs import deploy as certs
from srvinit.certs.openssl import OpenSSLTool
from srvinit.lib.config import DEFAULT_CONFIG_FILE, DEFAULT_LOCK_TIMEOUT, MODES, load_config
from srvinit.lib.deploy import CRON_DIR
from srvinit.lib.errors import ConfigError, ProvisionError
from srvinit.lib.log import configure_logging
from srvinit.lib.runner import DEFAULT_TIMEOUT, AptInstaller, SystemdController

LOG = logging.getLogger(__name__)


def ensure_root() -> None:
    if os.geteuid() != 0:
        raise ProvisionError("provisioning must run as root (use --dry-run to preview)")


def _overrides(args: argparse.Namespace) -> dict:
    return {
        'port': getattr(args, 'port', None),
        'cert_dir': getattr(args, 'cert_dir', None),
        'mode': args.mode,
        'hostname': args.hostname,
        'subject_alt_names': tuple(args.san or ()),
        'days_valid': args.days_valid,
        'threshold_days': args.threshold_days,
    }


# ── Commands ─────────────────────────────────────────

def cmd_provision(args: argparse.Namespace) -> int:
    settings = load_config(args.config)
    deployer = services.get(args.service)
    options = deployer.resolve(settings.service(args.service), **_overrides(args))
    tool = OpenSSLTool(timeout=settings.command_timeout)
    kwargs = dict(
        force_reissue=args.force_reissue,
        lock_timeout=settings.lock_timeout,
        alert_command=settings.alert_command,
        cron_dir=args.cron_dir,
        command_timeout=settings.command_timeout,
    )

    if args.dry_run:
        if not args.skip_packages:
            AptInstaller(dry_run=True, timeout=settings.command_timeout).install(deployer.packages)
        deployer.plan(options, tool, **kwargs)
        return 0

    ensure_root()
    installer = None if args.skip_packages else AptInstaller(timeout=settings.command_timeout)
    controller = SystemdController(timeout=settings.command_timeout)
    deployer.provision(options, tool, controller, installer=installer, **kwargs)
    return 0


def renewal_job_from_args(args: argparse.Namespace) -> certs.RenewalJob:
    """Rebuild the renewal job from the arguments the cron script passes."""
    if args.service:
        deployer = services.get(args.service)
    else:
        deployer = services.detect(args.cert_dir)
        if deployer is None:
            raise ConfigError(f"no known certificate layout in {args.cert_dir}, pass --service")

    overrides = _overrides(args)
    overrides['log_file'] = args.job_log
    overrides['account'] = args.account
    options = deployer.resolve(None, **overrides)
    return deployer.renewal_job(options, alert_command=args.alert_cmd,
                                lock_timeout=args.lock_timeout)


def cmd_renew(args: argparse.Namespace) -> int:
    job = renewal_job_from_args(args)
    return certs.run_renewal(job, OpenSSLTool(timeout=args.command_timeout),
                             SystemdController(timeout=args.command_timeout),
                             dry_run=args.dry_run)


def cmd_status(args: argparse.Namespace) -> int:
    settings = load_config(args.config)
    names = [args.service] if args.service else list(services.SERVICES)
    tool = OpenSSLTool(timeout=settings.command_timeout)

    for name in names:
        deployer = services.get(name)
        options = deployer.resolve(settings.service(name))
        paths = deployer.cert_paths(options.cert_dir)
        status = certs.certificate_status(tool, name, paths, options.mode,
                                          options.threshold_days)

        print(f"\n\033[1;36m── {name} ({options.cert_dir}) ──\033[0m")
        if status.not_after is not None:
            icon = "⚠️ " if status.needs_renewal else "✅"
            print(f"  leaf:     {icon} {status.days_left} days left "
                  f"({status.not_after:%Y-%m-%d %H:%M} UTC)")
        elif status.leaf_present:
            print("  leaf:     ❌ unreadable")
        else:
            print("  leaf:     ❌ not issued")
        if options.mode == certs.LOCAL_CA:
            print(f"  ca:       {'✅ present' if status.ca_present else '❌ missing'}")
        script = deployer.renewal_script_path(args.cron_dir)
        print(f"  renewal:  {'✅ ' + str(script) if script.exists() else '❌ no cron job'}")
        for note in status.notes:
            print(f"  note:     ⚠️  {note}")
    print()
    return 0


def cmd_render(args: argparse.Namespace) -> int:
    settings = load_config(args.config)
    deployer = services.get(args.service)
    options = deployer.resolve(settings.service(args.service), **_overrides(args))

    for rendered in deployer.render(options):
        print(f"\033[1;33m═══ {rendered.template.removesuffix('.j2')} → "
              f"{rendered.target} ({rendered.strategy}) ═══\033[0m")
        print(rendered.content)

    job = deployer.renewal_job(options, alert_command=settings.alert_command,
                               lock_timeout=settings.lock_timeout)
    print(f"\033[1;33m═══ renewal job → {deployer.renewal_script_path(args.cron_dir)} ═══\033[0m")
    print(deployer.render_renewal_script(job, command_timeout=settings.command_timeout))
    return 0


# ── Main ─────────────────────────────────────────────

def _add_certificate_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--mode', choices=MODES, help='Certificate mode (default: local_ca)')
    parser.add_argument('--hostname', help='Certificate common name (default: this host)')
    parser.add_argument('--san', action='append', metavar='NAME',
                        help='DNS subject alternative name, repeatable')
    parser.add_argument('--days-valid', type=int, help='Server certificate validity in days')
    parser.add_argument('--threshold-days', type=int,
                        help='Renew when fewer days than this remain')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='srvinit',
        description='TLS certificates, config and tuning for PostgreSQL and RabbitMQ hosts',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
examples:
  srvinit provision --service=postgres --port=5433
  srvinit provision --service=rabbitmq --dry-run
  srvinit renew --cert-dir=/etc/postgresql/16/main/ssl
  srvinit status
  srvinit render --service=postgres
        """
    )
    parser.add_argument('-c', '--config', type=Path,
                        help=f'YAML config file (default: {DEFAULT_CONFIG_FILE} if present)')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Increase logging verbosity (-vv for debug)')
    parser.add_argument('--log-format', choices=('text', 'json'), default='text')
    parser.add_argument('--log-file', type=Path, help='Also write JSON logs to this file')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('provision', help='Issue certificates, write service config, install renewal job')
    p.add_argument('--service', required=True, choices=sorted(services.SERVICES))
    p.add_argument('--port', type=int, help='Service TLS port')
    p.add_argument('--ca-dir', dest='cert_dir', type=Path, help='Certificate directory')
    _add_certificate_options(p)
    p.add_argument('--force-reissue', action='store_true',
                   help='Issue a new server certificate even if the current one is valid')
    p.add_argument('--skip-packages', action='store_true',
                   help='Do not install prerequisite packages')
    p.add_argument('--cron-dir', type=Path, default=CRON_DIR, help=argparse.SUPPRESS)
    p.add_argument('--dry-run', action='store_true', help='Show what would change')
    p.set_defaults(func=cmd_provision)

    r = sub.add_parser('renew', help='Renew the server certificate if it is close to expiry')
    r.add_argument('--cert-dir', required=True, type=Path)
    r.add_argument('--service', choices=sorted(services.SERVICES),
                   help='Owning service (default: detected from file names)')
    _add_certificate_options(r)
    r.add_argument('--log-file', dest='job_log', type=Path,
                   help="Renewal log (default: the service's renewal log)")
    r.add_argument('--account',
                   help="Owner of renewed key and certificate files ('' keeps root)")
    r.add_argument('--alert-cmd', help='Shell command run with the error on stdin when renewal fails')
    r.add_argument('--lock-timeout', type=float, default=DEFAULT_LOCK_TIMEOUT)
    r.add_argument('--command-timeout', type=float, default=DEFAULT_TIMEOUT)
    r.add_argument('--dry-run', action='store_true', help='Check only, change nothing')
    r.set_defaults(func=cmd_renew)

    s = sub.add_parser('status', help='Show certificate expiry per service')
    s.add_argument('--service', choices=sorted(services.SERVICES))
    s.add_argument('--cron-dir', type=Path, default=CRON_DIR, help=argparse.SUPPRESS)
    s.set_defaults(func=cmd_status)

    d = sub.add_parser('render', help='Print generated config files without applying them')
    d.add_argument('--service', required=True, choices=sorted(services.SERVICES))
    d.add_argument('--port', type=int)
    _add_certificate_options(d)
    d.add_argument('--cron-dir', type=Path, default=CRON_DIR, help=argparse.SUPPRESS)
    d.set_defaults(func=cmd_render)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.log_format, args.log_file)
    try:
        return args.func(args)
    except ProvisionError as e:
        LOG.error("%s failed: %s", args.command, e, extra={'error': type(e).__name__})
        print(f"\033[0;31mERROR:\033[0m {e}", file=sys.stderr)
        return 1
