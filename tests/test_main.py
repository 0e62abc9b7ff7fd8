#!/usr/bin/env python3
"""
Unit tests for the command line entry point.
"""

import io
import json
import os
import shutil
import sys
import tempfile
import unittest
import yaml
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.config import SECRET_MASK
from directory_sync.errors import AuthenticationError, SyncInProgressError
from directory_sync.main import (
    EXIT_CONFIG,
    EXIT_DIRECTORY,
    EXIT_OK,
    EXIT_PARTIAL,
    Application,
    build_parser,
    run_command,
)
from directory_sync.models import FieldChange, SyncAction, SyncResult


@patch('directory_sync.main.setup_logging')
class TestRunCommand(unittest.TestCase):
    """Test cases for run_command."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='directory_sync_cli_')
        self.addCleanup(shutil.rmtree, self.temp_dir, ignore_errors=True)
        self.config_path = os.path.join(self.temp_dir, 'config.yaml')
        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump({
                'directory': {
                    'server': 'dc01.corp.local',
                    'base_dn': 'DC=corp,DC=local',
                    'bind_account': 'svc-sync',
                    'bind_secret': 'Secret#2024',
                },
                'hris': {'records_file': os.path.join(self.temp_dir, 'hr.yaml')},
                'schedule': {'state_file': os.path.join(self.temp_dir, 'schedule.yaml')},
            }, f)

    def run_cli(self, argv, orchestrator=None):
        args = build_parser().parse_args(['--config', self.config_path] + argv)
        app = Application(config_path=self.config_path)
        if orchestrator is not None:
            app._orchestrator = orchestrator
        with patch('sys.stdout', new_callable=io.StringIO) as stdout, \
                patch('sys.stderr', new_callable=io.StringIO):
            exit_code = run_command(app, args)
        return exit_code, stdout.getvalue()

    def test_full_with_failures_exits_partial(self, mock_setup_logging):
        orchestrator = Mock()
        orchestrator.full.return_value = [
            SyncResult('E1', 'Budi', {'department': FieldChange('IT', 'ICT')}, SyncAction.UPDATED),
            SyncResult('E2', 'Dewi', action=SyncAction.FAILED, error='no directory match'),
        ]

        exit_code, output = self.run_cli(['full'], orchestrator)

        self.assertEqual(exit_code, EXIT_PARTIAL)
        payload = json.loads(output)
        self.assertEqual(payload['summary']['Updated'], 1)
        self.assertEqual(payload['results'][0]['diff']['department']['proposed'], 'ICT')

    def test_test_mode_writes_csv(self, mock_setup_logging):
        orchestrator = Mock()
        orchestrator.test.return_value = [
            SyncResult('E1', 'Budi', {'title': FieldChange('Dev', 'Lead')}, SyncAction.WOULD_UPDATE),
        ]
        csv_path = os.path.join(self.temp_dir, 'report.csv')

        exit_code, _ = self.run_cli(['test', '--csv', csv_path], orchestrator)

        self.assertEqual(exit_code, EXIT_OK)
        with open(csv_path, encoding='utf-8') as f:
            self.assertIn('WouldUpdate', f.read())

    def test_manual_passes_ids(self, mock_setup_logging):
        orchestrator = Mock()
        orchestrator.manual.return_value = []

        self.run_cli(['manual', 'E1', 'E2'], orchestrator)

        orchestrator.manual.assert_called_once_with(['E1', 'E2'])

    def test_directory_error_exit_code(self, mock_setup_logging):
        orchestrator = Mock()
        orchestrator.query_directory_users.side_effect = AuthenticationError('rejected', code=49)

        exit_code, _ = self.run_cli(['query'], orchestrator)

        self.assertEqual(exit_code, EXIT_DIRECTORY)

    def test_sync_in_progress(self, mock_setup_logging):
        orchestrator = Mock()
        orchestrator.full.side_effect = SyncInProgressError('busy')
        self.assertEqual(self.run_cli(['full'], orchestrator)[0], EXIT_PARTIAL)

    def test_schedule_set_and_show(self, mock_setup_logging):
        exit_code, output = self.run_cli(['schedule', 'set', '--enable', '--frequency', 'monthly'])
        self.assertEqual(exit_code, EXIT_OK)
        self.assertTrue(json.loads(output)['enabled'])
        self.assertIsNotNone(json.loads(output)['next_run'])

        _, output = self.run_cli(['schedule', 'show'])
        self.assertEqual(json.loads(output)['frequency'], 'monthly')

    def test_settings_show_masks_secret(self, mock_setup_logging):
        exit_code, output = self.run_cli(['settings', 'show'])

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(json.loads(output)['bind_secret'], SECRET_MASK)
        self.assertNotIn('Secret#2024', output)

    def test_missing_config(self, mock_setup_logging):
        args = build_parser().parse_args(['--config', '/tmp/missing_directory_sync.yaml', 'full'])
        with patch('sys.stderr', new_callable=io.StringIO):
            exit_code = run_command(Application('/tmp/missing_directory_sync.yaml'), args)
        self.assertEqual(exit_code, EXIT_CONFIG)

    @patch('directory_sync.main.provision_employee_account')
    def test_provision_reads_password_from_environment(self, mock_provision, mock_setup_logging):
        mock_provision.return_value.to_dict.return_value = {'account_created': True}

        with patch.dict(os.environ, {'NEW_ACCOUNT_PASSWORD': 'Welcome#2024'}):
            exit_code, _ = self.run_cli(['provision', '--username', 'jdoe', '--display-name', 'Jane Doe',
                                         '--group', 'ACL-FINANCE'])

        self.assertEqual(exit_code, EXIT_OK)
        spec = mock_provision.call_args[0][1]
        self.assertEqual(spec.password, 'Welcome#2024')
        self.assertEqual(spec.groups, ['ACL-FINANCE'])


class TestParser(unittest.TestCase):

    def test_manual_requires_ids(self):
        with patch('sys.stderr', new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                build_parser().parse_args(['manual'])

    def test_schedule_frequency_choices(self):
        with patch('sys.stderr', new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                build_parser().parse_args(['schedule', 'set', '--frequency', 'hourly'])


if __name__ == '__main__':
    unittest.main()
