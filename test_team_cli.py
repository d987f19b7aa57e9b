#!/usr/bin/env python3
"""
CLI tests with a mocked job manager.
"""

import io
import json
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from rich.console import Console

sys.path.append(str(Path(__file__).parent))

from tmux_team.cli.team_cli import TeamCLI
from tmux_team.exceptions import InvalidJobIdError

COMPLETED = {
    'jobId': 'team-abc123',
    'status': 'completed',
    'elapsedSeconds': 42.0,
    'result': {
        'status': 'completed',
        'teamName': 'alpha',
        'taskResults': [{'taskId': '1', 'status': 'completed', 'summary': 'parser built'}],
    },
}


class TestTeamCLI(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.output = io.StringIO()
        self.console_patch = patch('tmux_team.cli.team_cli.console',
                                   Console(file=self.output, width=120, force_terminal=False))
        self.console_patch.start()
        self.manager = MagicMock()
        self.cli = TeamCLI(manager=self.manager)

    def tearDown(self):
        self.console_patch.stop()
        shutil.rmtree(self.test_dir)

    def test_no_command_prints_help(self):
        self.assertEqual(self.cli.run([]), 1)

    def test_start_fills_in_cwd(self):
        path = Path(self.test_dir) / 'team.json'
        path.write_text(json.dumps({
            'teamName': 'alpha', 'agentTypes': ['claude'], 'tasks': [{'subject': 'one'}],
        }))
        self.manager.start.return_value = {'jobId': 'team-abc123', 'pid': 100, 'message': 'Team started.'}

        self.assertEqual(self.cli.run(['start', '--config', str(path)]), 0)

        config = self.manager.start.call_args.args[0]
        self.assertEqual(config['cwd'], str(Path.cwd().resolve()))
        self.assertIn('team-abc123', self.output.getvalue())

    def test_start_spawn_failure(self):
        path = Path(self.test_dir) / 'team.json'
        path.write_text(json.dumps({'teamName': 'alpha', 'cwd': self.test_dir}))
        self.manager.start.return_value = {'jobId': 'team-abc123', 'pid': None,
                                           'message': 'Team failed to start: boom'}
        self.assertEqual(self.cli.run(['start', '-c', str(path)]), 1)

    def test_status_shows_tasks(self):
        self.manager.status.return_value = COMPLETED
        self.assertEqual(self.cli.run(['status', 'team-abc123']), 0)
        self.assertIn('parser built', self.output.getvalue())

    def test_status_json(self):
        self.manager.status.return_value = COMPLETED
        self.assertEqual(self.cli.run(['status', 'team-abc123', '--json']), 0)
        self.assertEqual(json.loads(self.output.getvalue())['status'], 'completed')

    def test_status_unknown_job(self):
        self.manager.status.return_value = {'error': 'No job found: team-nope'}
        self.assertEqual(self.cli.run(['status', 'team-nope']), 1)

    def test_invalid_job_id(self):
        self.manager.status.side_effect = InvalidJobIdError("Invalid job id: '../x'")
        self.assertEqual(self.cli.run(['status', '../x']), 1)
        self.assertIn('Invalid job id', self.output.getvalue())

    def test_wait_exit_codes(self):
        self.manager.wait.return_value = COMPLETED
        self.assertEqual(self.cli.run(['wait', 'team-abc123', '--timeout-ms', '1000']), 0)
        self.assertEqual(self.manager.wait.call_args.kwargs['timeout_ms'], 1000)

        self.manager.wait.return_value = {
            'jobId': 'team-abc123', 'status': 'timeout', 'elapsedSeconds': 1.0,
            'error': 'Timed out waiting for job team-abc123 after 1s', 'stderr': 'last [log] line',
        }
        self.assertEqual(self.cli.run(['wait', 'team-abc123']), 1)
        self.assertIn('last [log] line', self.output.getvalue())

    def test_cleanup(self):
        self.manager.cleanup.return_value = {'jobId': 'team-abc123', 'message': 'Cleaned up 2 worker pane(s)'}
        self.assertEqual(self.cli.run(['cleanup', 'team-abc123', '--grace-ms', '0']), 0)
        self.manager.cleanup.assert_called_once_with('team-abc123', grace_ms=0)

        self.manager.cleanup.return_value = {'error': 'No job found: team-abc123'}
        self.assertEqual(self.cli.run(['cleanup', 'team-abc123']), 1)

    def test_jobs_table(self):
        self.manager.list_jobs.return_value = [COMPLETED]
        self.assertEqual(self.cli.run(['jobs']), 0)
        self.assertIn('1/1 completed', self.output.getvalue())

    def test_no_jobs(self):
        self.manager.list_jobs.return_value = []
        self.assertEqual(self.cli.run(['jobs']), 0)
        self.assertIn('No jobs found', self.output.getvalue())


if __name__ == '__main__':
    unittest.main()
