"""
Command line entry point for the directory sync engine.

Loads configuration, configures logging and dispatches to the sync
orchestrator, the account provisioner or the scheduler. Results are printed
as JSON.
"""

import os
import sys
import json
import getpass
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, List, Optional

from directory_sync import __version__
from directory_sync.audit import LoggingAuditSink
from directory_sync.config import (
    ConfigurationError,
    DirectoryConfigStore,
    DirectoryConnectionConfig,
    load_config,
)
from directory_sync.errors import (
    AuthenticationError,
    DirectoryConnectionError,
    DirectoryTimeoutError,
    ProvisioningError,
    SyncInProgressError,
    ValidationError,
)
from directory_sync.hr_source import YamlHrRecordSource
from directory_sync.ldap_client import check_connection
from directory_sync.logging_setup import setup_logging, get_logging_stats
from directory_sync.models import AccountSpec, SyncAction
from directory_sync.provisioner import provision_employee_account
from directory_sync.report import write_csv_report
from directory_sync.scheduler import ScheduleStore, SyncScheduler
from directory_sync.sync import SyncOrchestrator, summarize_results

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_CONFIG = 2
EXIT_DIRECTORY = 3
EXIT_UNEXPECTED = 4

NEW_ACCOUNT_PASSWORD_ENV = 'NEW_ACCOUNT_PASSWORD'


class Application:
    """Wires configuration, the directory and the HR source for one CLI invocation."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.config = None
        self.connection_config = None
        self.audit_sink = LoggingAuditSink()
        self._orchestrator = None

    def load(self):
        """Load configuration and set up logging."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")
        setup_logging(self.config.get('logging', {}))
        self.connection_config = DirectoryConnectionConfig.from_dict(self.config['directory'])
        logger.debug(f"Using {self.connection_config!r}")

    @property
    def performed_by(self) -> str:
        return self.config.get('sync', {}).get('performed_by', 'system')

    @property
    def orchestrator(self) -> SyncOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = SyncOrchestrator(
                self.connection_config,
                YamlHrRecordSource(self.config['hris']['records_file']),
                audit_sink=self.audit_sink,
                error_handling=self.config.get('error_handling', {}),
                performed_by=self.performed_by
            )
        return self._orchestrator

    def schedule_store(self) -> ScheduleStore:
        return ScheduleStore(self.config['schedule']['state_file'])

    def settings_store(self) -> DirectoryConfigStore:
        return DirectoryConfigStore(self.config_path or os.getenv('CONFIG_PATH', 'config.yaml'))

    def provision(self, args) -> Dict[str, Any]:
        password = os.getenv(args.password_env) or getpass.getpass(f"Password for {args.username}: ")
        spec = AccountSpec(
            username=args.username,
            password=password,
            display_name=args.display_name,
            first_name=args.first_name or '',
            last_name=args.last_name or '',
            email=args.email or '',
            title=args.title or '',
            department=args.department or '',
            company=args.company or '',
            office=args.office or '',
            employee_id=args.employee_id or '',
            container_dn=args.container or '',
            groups=args.group or []
        )
        outcome = provision_employee_account(
            self.connection_config, spec,
            audit_sink=self.audit_sink,
            performed_by=self.performed_by,
            error_handling=self.config.get('error_handling', {})
        )
        return outcome.to_dict()

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of configuration, directory and HR source.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            if self.config is None:
                self.load()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        result = check_connection(self.connection_config)
        if result['success']:
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': 'Directory bind successful',
                'root_dse': {key: str(value) for key, value in result['root_dse'].items()}
            }
        else:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f"Directory connection failed: {result['error']}",
                'code': result['code']
            }
            health_status['status'] = 'unhealthy'

        try:
            records = self.orchestrator.hr_source.fetch_all_records()
            health_status['checks']['hris'] = {
                'status': 'pass',
                'message': f'{len(records)} HR records readable'
            }
        except Exception as e:
            health_status['checks']['hris'] = {
                'status': 'fail',
                'message': f'HR source error: {e}'
            }
            health_status['status'] = 'unhealthy'

        health_status['logging'] = get_logging_stats()
        return health_status


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str, ensure_ascii=False))


def _sync_exit_code(results) -> int:
    if any(result.action is SyncAction.FAILED for result in results):
        return EXIT_PARTIAL
    return EXIT_OK


def _run_sync_command(app: Application, args) -> int:
    if args.command == 'test':
        results = app.orchestrator.test()
    elif args.command == 'manual':
        results = app.orchestrator.manual(args.employee_ids)
    else:
        results = app.orchestrator.full()

    _print_json({
        'mode': args.command,
        'summary': summarize_results(results),
        'results': [result.to_dict() for result in results],
    })
    if args.csv:
        write_csv_report(results, args.csv)
        logger.info(f"Wrote CSV report to {args.csv}")
    return _sync_exit_code(results)


def _run_schedule_command(app: Application, args) -> int:
    store = app.schedule_store()
    if args.schedule_command == 'set':
        state = store.update_schedule(enabled=args.enabled, frequency=args.frequency)
    else:
        state = store.get()
    _print_json(state.to_dict())
    return EXIT_OK


def _run_scheduler(app: Application, args) -> int:
    interval = args.interval or app.config['schedule']['check_interval_seconds']
    scheduler = SyncScheduler(app.orchestrator, app.schedule_store(), interval_seconds=interval)
    scheduler.run_forever()
    return EXIT_OK


def run_command(app: Application, args) -> int:
    """
    Run one sub-command.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        if args.command == 'health-check':
            health_status = app.health_check()
            _print_json(health_status)
            return EXIT_OK if health_status['status'] == 'healthy' else EXIT_PARTIAL

        app.load()

        if args.command in ('test', 'manual', 'full'):
            return _run_sync_command(app, args)
        if args.command == 'query':
            _print_json(app.orchestrator.query_directory_users())
            return EXIT_OK
        if args.command == 'provision':
            _print_json(app.provision(args))
            return EXIT_OK
        if args.command == 'schedule':
            return _run_schedule_command(app, args)
        if args.command == 'settings':
            _print_json(app.settings_store().read())
            return EXIT_OK
        if args.command == 'scheduler':
            return _run_scheduler(app, args)

        logger.error(f"Unknown command: {args.command}")
        return EXIT_CONFIG

    except (ConfigurationError, ValidationError) as e:
        logger.error(f"Configuration error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except (DirectoryConnectionError, AuthenticationError, DirectoryTimeoutError, ProvisioningError) as e:
        logger.error(f"Directory error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_DIRECTORY
    except SyncInProgressError as e:
        logger.warning(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_PARTIAL
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_UNEXPECTED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='directory-sync', description='HR to directory sync and provisioning')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    subparsers = parser.add_subparsers(dest='command', required=True)

    for name, help_text in (('test', 'Dry run over all HR records'),
                            ('full', 'Apply changes for all HR records')):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('--csv', help='Also write the results to this CSV file')

    manual = subparsers.add_parser('manual', help='Apply changes for selected employees')
    manual.add_argument('employee_ids', nargs='+', metavar='EMPLOYEE_ID')
    manual.add_argument('--csv', help='Also write the results to this CSV file')

    subparsers.add_parser('query', help='List directory users and their tracked attributes')

    provision = subparsers.add_parser('provision', help='Create an account and apply group memberships')
    provision.add_argument('--username', required=True)
    provision.add_argument('--display-name', required=True)
    provision.add_argument('--password-env', default=NEW_ACCOUNT_PASSWORD_ENV,
                           help='Environment variable holding the initial password (prompted if unset)')
    provision.add_argument('--first-name')
    provision.add_argument('--last-name')
    provision.add_argument('--email')
    provision.add_argument('--title')
    provision.add_argument('--department')
    provision.add_argument('--company')
    provision.add_argument('--office')
    provision.add_argument('--employee-id')
    provision.add_argument('--container', help='Target container DN (defaults to the working OU)')
    provision.add_argument('--group', action='append', help='Role-specific group; may be repeated')

    schedule = subparsers.add_parser('schedule', help='Show or change the sync schedule')
    schedule_sub = schedule.add_subparsers(dest='schedule_command', required=True)
    schedule_sub.add_parser('show')
    schedule_set = schedule_sub.add_parser('set')
    toggle = schedule_set.add_mutually_exclusive_group()
    toggle.add_argument('--enable', dest='enabled', action='store_true', default=None)
    toggle.add_argument('--disable', dest='enabled', action='store_false')
    schedule_set.add_argument('--frequency', choices=['daily', 'weekly', 'monthly'])

    settings = subparsers.add_parser('settings', help='Show directory settings with the secret masked')
    settings_sub = settings.add_subparsers(dest='settings_command', required=True)
    settings_sub.add_parser('show')

    scheduler = subparsers.add_parser('scheduler', help='Run the background scheduler in the foreground')
    scheduler.add_argument('--interval', type=int, help='Due-check interval in seconds')

    subparsers.add_parser('health-check', help='Check configuration, directory and HR source')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)
    app = Application(config_path=args.config)
    sys.exit(run_command(app, args))


if __name__ == "__main__":
    main()
