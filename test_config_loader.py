#!/usr/bin/env python3
"""
Settings loader and team config parsing tests.
"""

import json
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.append(str(Path(__file__).parent))

from tmux_team.core.team_state import TeamConfig
from tmux_team.exceptions import InvalidTeamConfigError
from tmux_team.utils.config_loader import ConfigLoader, Settings, load_team_config_file


class TestConfigLoader(unittest.TestCase):
    """YAML/JSON settings with validation"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.env_patch = patch.dict(os.environ, {})
        self.env_patch.start()
        os.environ.pop('TMUX_TEAM_JOBS_DIR', None)

    def tearDown(self):
        self.env_patch.stop()
        shutil.rmtree(self.test_dir)

    def write(self, name, content):
        path = Path(self.test_dir) / name
        path.write_text(content)
        return path

    def test_missing_file_gives_defaults(self):
        settings = ConfigLoader(Path(self.test_dir) / 'absent.yaml').load_settings()
        self.assertEqual(settings, Settings())

    def test_yaml_settings(self):
        path = self.write('config.yaml', """
poll_interval_ms: 2000
stall_threshold_s: 120
log_level: debug
pane_patterns:
  codex:
    busy: ['working\\.\\.\\.']
""")
        settings = ConfigLoader(path).load_settings()

        self.assertEqual(settings.poll_interval_ms, 2000)
        self.assertEqual(settings.stall_threshold_s, 120)
        self.assertEqual(settings.log_level, 'DEBUG')
        self.assertEqual(settings.pane_patterns['codex']['busy'], [r'working\.\.\.'])
        self.assertEqual(settings.watchdog_interval_ms, 3000)

    def test_json_settings(self):
        path = self.write('config.json', json.dumps({'kill_grace_ms': 0, 'message_max_chars': 500}))
        settings = ConfigLoader(path).load_settings()
        self.assertEqual(settings.kill_grace_ms, 0)
        self.assertEqual(settings.message_max_chars, 500)

    def test_invalid_values_fall_back_with_warning(self):
        path = self.write('config.yaml', "poll_interval_ms: 5\nkill_grace_ms: true\nlog_level: LOUD\n")

        with self.assertLogs('tmux_team.utils.config_loader', level='WARNING') as logs:
            settings = ConfigLoader(path).load_settings()

        self.assertEqual(settings.poll_interval_ms, 5000)
        self.assertEqual(settings.kill_grace_ms, 10000)
        self.assertEqual(settings.log_level, 'INFO')
        self.assertEqual(len(logs.output), 3)

    def test_environment_substitution(self):
        os.environ['TEAM_HOME'] = self.test_dir
        path = self.write('config.yaml', "jobs_dir: ${TEAM_HOME}/jobs\n")

        settings = ConfigLoader(path).load_settings()
        self.assertEqual(settings.jobs_dir, Path(self.test_dir) / 'jobs')

    def test_jobs_dir_environment_override(self):
        os.environ['TMUX_TEAM_JOBS_DIR'] = '/var/tmp/team-jobs'
        path = self.write('config.yaml', "jobs_dir: /somewhere/else\n")

        settings = ConfigLoader(path).load_settings()
        self.assertEqual(settings.jobs_dir, Path('/var/tmp/team-jobs'))

    def test_config_path_from_environment(self):
        path = self.write('custom.yaml', "poll_interval_ms: 750\n")
        os.environ['TMUX_TEAM_CONFIG'] = str(path)
        self.assertEqual(ConfigLoader().load_settings().poll_interval_ms, 750)

    def test_non_mapping_file(self):
        path = self.write('config.yaml', "- just\n- a list\n")
        with self.assertLogs('tmux_team.utils.config_loader', level='WARNING'):
            self.assertEqual(ConfigLoader(path).load_settings(), Settings())


class TestTeamConfigFile(unittest.TestCase):
    """Team config files read by the start command"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_yaml_team_config(self):
        path = Path(self.test_dir) / 'team.yaml'
        path.write_text("""
teamName: alpha
agentTypes: [claude, codex]
tasks:
  - subject: Build parser
    description: Write the parser
""")
        data = load_team_config_file(path)
        self.assertEqual(data['agentTypes'], ['claude', 'codex'])

    def test_json_team_config(self):
        path = Path(self.test_dir) / 'team.json'
        path.write_text(json.dumps({'teamName': 'alpha'}))
        self.assertEqual(load_team_config_file(path), {'teamName': 'alpha'})

    def test_missing_and_malformed(self):
        with self.assertRaises(ValueError):
            load_team_config_file(Path(self.test_dir) / 'nope.yaml')

        path = Path(self.test_dir) / 'team.yaml'
        path.write_text("just a string\n")
        with self.assertRaises(ValueError):
            load_team_config_file(path)


class TestTeamConfig(unittest.TestCase):
    """TeamConfig.from_dict validation"""

    BASE = {
        'teamName': 'alpha',
        'agentTypes': ['claude', 'codex'],
        'tasks': [{'subject': 'one'}],
        'cwd': '/tmp/project',
    }

    def test_worker_count_defaults_to_agent_types(self):
        config = TeamConfig.from_dict(self.BASE)
        self.assertEqual(config.worker_count, 2)
        self.assertEqual(config.worker_names, ['worker-1', 'worker-2'])

    def test_agent_type_fallback(self):
        config = TeamConfig.from_dict({**self.BASE, 'workerCount': 3})
        self.assertEqual(config.agent_type_for(1), 'codex')
        self.assertEqual(config.agent_type_for(2), 'claude')

    def test_missing_fields_are_named(self):
        with self.assertRaises(InvalidTeamConfigError) as ctx:
            TeamConfig.from_dict({'teamName': 'alpha', 'tasks': []})
        message = str(ctx.exception)
        for name in ('agentTypes', 'tasks', 'cwd'):
            self.assertIn(name, message)

    def test_task_needs_subject(self):
        with self.assertRaises(InvalidTeamConfigError):
            TeamConfig.from_dict({**self.BASE, 'tasks': [{'description': 'no subject'}]})

    def test_to_dict_keeps_optional_fields(self):
        data = TeamConfig.from_dict({**self.BASE, 'model': 'opus', 'pollIntervalMs': 1000}).to_dict()
        self.assertEqual(data['model'], 'opus')
        self.assertEqual(data['pollIntervalMs'], 1000)
        self.assertEqual(data['workerCount'], 2)


if __name__ == '__main__':
    unittest.main()
