#!/usr/bin/env python3
"""
Tmux session controller and messenger tests. Every tmux call is replaced by a
recording fake; no tmux server is needed.
"""

import json
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.append(str(Path(__file__).parent))

from tmux_team.exceptions import TmuxCommandError, TmuxSessionRequiredError, TmuxUnavailableError
from tmux_team.tmux.messaging import TmuxMessenger
from tmux_team.tmux.pane_state import PaneState
from tmux_team.tmux.session_controller import TeamSession, TmuxSessionController, sanitize_name, session_name


class RecordingTmux:
    """Stands in for TmuxSessionController.run_tmux"""

    def __init__(self, responses=None, fail_on=None):
        self.calls = []
        self.responses = responses or {}
        self.fail_on = fail_on or set()
        self.split_ids = iter(['%5\n', '%6\n', '%7\n'])

    def __call__(self, args, timeout=5):
        self.calls.append(list(args))
        if args[0] in self.fail_on:
            raise TmuxCommandError(args, 1, 'no such pane')
        if args[0] == 'split-window':
            return next(self.split_ids)
        key = ' '.join(args)
        for prefix, value in self.responses.items():
            if key.startswith(prefix):
                return value
        return ''

    def commands(self, name):
        return [c for c in self.calls if c[0] == name]


class TestSanitizeName(unittest.TestCase):
    """Name sanitisation for tmux targets"""

    def test_strips_invalid_characters(self):
        self.assertEqual(sanitize_name('my team!'), 'myteam')
        self.assertEqual(sanitize_name('team_1.x'), 'team1x')

    def test_truncates_to_fifty(self):
        self.assertEqual(len(sanitize_name('a' * 80)), 50)

    def test_rejects_empty_and_short(self):
        with self.assertRaises(ValueError):
            sanitize_name('!!!')
        with self.assertRaises(ValueError):
            sanitize_name('a')

    def test_session_name(self):
        self.assertEqual(session_name('my team', 'worker-1'), 'tmux-team-myteam-worker-1')

    def test_team_session_record(self):
        record = {'sessionName': 'main:1', 'leaderPaneId': '%0', 'workerPaneIds': ['%1', '%2']}
        session = TeamSession.from_dict(record)
        self.assertEqual(session, TeamSession('main:1', '%0', ['%1', '%2']))
        self.assertEqual(session.to_dict(), record)

        self.assertIsNone(TeamSession.from_dict(None))
        self.assertIsNone(TeamSession.from_dict({'sessionName': 'main:1', 'leaderPaneId': '%0'}))


class TestTmuxSessionController(unittest.TestCase):
    """Controller behaviour with tmux calls recorded"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.controller = TmuxSessionController()
        self.sleep_patch = patch('tmux_team.tmux.session_controller.time.sleep')
        self.sleep_patch.start()

    def tearDown(self):
        self.sleep_patch.stop()
        shutil.rmtree(self.test_dir)

    def test_run_tmux_raises_on_failure(self):
        result = MagicMock(returncode=1, stdout='', stderr="can't find pane")
        with patch('tmux_team.tmux.session_controller.subprocess.run', return_value=result):
            with self.assertRaises(TmuxCommandError) as ctx:
                self.controller.run_tmux(['kill-pane', '-t', '%9'])
        self.assertEqual(ctx.exception.returncode, 1)
        self.assertEqual(ctx.exception.command, ['kill-pane', '-t', '%9'])

    def test_validate_tmux_missing_binary(self):
        with patch('tmux_team.tmux.session_controller.subprocess.run', side_effect=FileNotFoundError()):
            with self.assertRaises(TmuxUnavailableError):
                self.controller.validate_tmux()

    def test_topology_requires_tmux_session(self):
        with patch.dict(os.environ, {'TMUX': ''}):
            with self.assertRaises(TmuxSessionRequiredError):
                self.controller.create_topology(2, Path(self.test_dir))

    def test_create_topology(self):
        fake = RecordingTmux(responses={
            'display-message -p #S:#I': 'main:1 %0\n',
            'display-message -p -t main:1 #{window_width}': '200\n',
        })
        with patch.dict(os.environ, {'TMUX': '/tmp/tmux-1000/default,1,0'}), \
                patch.object(self.controller, 'run_tmux', side_effect=fake):
            session = self.controller.create_topology(2, Path(self.test_dir))

        self.assertEqual(session.session_name, 'main:1')
        self.assertEqual(session.leader_pane_id, '%0')
        self.assertEqual(session.worker_pane_ids, ['%5', '%6'])

        splits = fake.commands('split-window')
        self.assertEqual(splits[0][1:4], ['-h', '-t', '%0'])
        self.assertEqual(splits[1][1:4], ['-v', '-t', '%5'])
        self.assertIn(['set-window-option', '-t', 'main:1', 'main-pane-width', '100'], fake.calls)
        self.assertIn(['set-option', '-t', 'main', 'mouse', 'on'], fake.calls)
        self.assertEqual(fake.calls[-1], ['select-pane', '-t', '%0'])

    def test_spawn_worker_types_command_literally(self):
        fake = RecordingTmux()
        with patch.object(self.controller, 'run_tmux', side_effect=fake), \
                patch.dict(os.environ, {'SHELL': '/bin/zsh', 'HOME': '/home/dev'}):
            ok = self.controller.spawn_worker(
                '%5', 'claude --dangerously-skip-permissions',
                {'TMUX_TEAM_WORKER': 'alpha/worker-1'}, Path(self.test_dir),
            )

        self.assertTrue(ok)
        typed, enter = fake.calls
        self.assertEqual(typed[:4], ['send-keys', '-t', '%5', '-l'])
        self.assertTrue(typed[4].startswith('env TMUX_TEAM_WORKER=alpha/worker-1 /bin/zsh -c '))
        self.assertIn('/home/dev/.zshrc', typed[4])
        self.assertIn('exec claude --dangerously-skip-permissions', typed[4])
        self.assertEqual(enter, ['send-keys', '-t', '%5', 'Enter'])

    def test_is_alive(self):
        with patch.object(self.controller, 'run_tmux', return_value='0\n'):
            self.assertTrue(self.controller.is_alive('%5'))
        with patch.object(self.controller, 'run_tmux', return_value='1\n'):
            self.assertFalse(self.controller.is_alive('%5'))
        with patch.object(self.controller, 'run_tmux', side_effect=TmuxCommandError(['x'], 1)):
            self.assertFalse(self.controller.is_alive('%5'))

    def test_capture_failure_is_empty(self):
        with patch.object(self.controller, 'run_tmux', side_effect=TmuxCommandError(['x'], 1)):
            self.assertEqual(self.controller.capture_pane('%5'), '')

    def test_pane_state_of_dead_pane(self):
        with patch.object(self.controller, 'run_tmux', return_value='1\n'):
            self.assertEqual(self.controller.pane_state('%5'), PaneState.DEAD)

    def test_kill_panes_skips_leader_and_writes_marker(self):
        marker = Path(self.test_dir) / 'shutdown.json'
        fake = RecordingTmux()
        with patch.object(self.controller, 'run_tmux', side_effect=fake):
            killed = self.controller.kill_panes(['%1', '%2', '%3'], leader_pane_id='%1',
                                                shutdown_path=marker, grace_ms=0)

        self.assertEqual(killed, 2)
        self.assertEqual(fake.commands('kill-pane'), [['kill-pane', '-t', '%2'], ['kill-pane', '-t', '%3']])
        self.assertEqual(list(json.loads(marker.read_text())), ['requestedAt'])
        self.assertEqual(list(Path(self.test_dir).glob('*.tmp.*')), [])

    def test_kill_panes_without_marker_directory(self):
        marker = Path(self.test_dir) / 'gone' / 'shutdown.json'
        fake = RecordingTmux()
        with patch.object(self.controller, 'run_tmux', side_effect=fake):
            self.controller.kill_panes(['%2'], shutdown_path=marker, grace_ms=5000)
        self.assertFalse(marker.parent.exists())
        self.assertEqual(len(fake.commands('kill-pane')), 1)

    def test_teardown_split_window_never_kills_session_or_leader(self):
        fake = RecordingTmux()
        with patch.object(self.controller, 'run_tmux', side_effect=fake):
            self.controller.teardown('main:1', ['%0', '%5', '%6'], leader_pane_id='%0')

        self.assertEqual(fake.commands('kill-session'), [])
        killed = [c[2] for c in fake.commands('kill-pane')]
        self.assertEqual(killed, ['%5', '%6'])

    def test_teardown_owned_session(self):
        fake = RecordingTmux()
        with patch.object(self.controller, 'run_tmux', side_effect=fake):
            self.controller.teardown('tmux-team-alpha')
        self.assertEqual(fake.calls, [['kill-session', '-t', 'tmux-team-alpha']])


class TestTmuxMessenger(unittest.TestCase):
    """send_text submission protocol against a fake controller"""

    def setUp(self):
        self.controller = MagicMock()
        self.controller.pane_patterns = {}
        self.messenger = TmuxMessenger(self.controller)
        self.sleep_patch = patch('tmux_team.tmux.messaging.time.sleep')
        self.sleep_patch.start()

    def tearDown(self):
        self.sleep_patch.stop()

    def keys(self):
        return [c.args[1] for c in self.controller.send_key.call_args_list]

    def test_returns_once_text_leaves_input(self):
        self.controller.capture_pane.side_effect = ['> ', '> ']
        self.assertTrue(self.messenger.send_text('%5', 'hello'))

        self.controller.send_literal.assert_called_once_with('%5', 'hello')
        self.assertEqual(self.keys(), ['C-m', 'C-m'])

    def test_long_message_is_truncated(self):
        self.controller.capture_pane.return_value = ''
        self.messenger.send_text('%5', 'x' * 300)
        self.assertEqual(len(self.controller.send_literal.call_args.args[1]), 200)

    def test_trust_prompt_is_dismissed_first(self):
        screen = "Do you trust the contents of this directory?\n1. Yes, continue\n"
        self.controller.capture_pane.side_effect = [screen, '']
        self.messenger.send_text('%5', 'hello')

        names = [c[0] for c in self.controller.method_calls
                 if c[0] in ('send_key', 'send_literal')]
        self.assertEqual(names[:3], ['send_key', 'send_key', 'send_literal'])

    def test_busy_pane_uses_tab_first(self):
        self.controller.capture_pane.side_effect = ['esc to interrupt', '']
        self.messenger.send_text('%5', 'hello')
        self.assertEqual(self.keys(), ['Tab', 'C-m'])

    def test_text_still_visible_is_fail_open(self):
        self.controller.capture_pane.return_value = '> hello'
        self.assertTrue(self.messenger.send_text('%5', 'hello'))
        # Six rounds of two presses plus the final double press
        self.assertEqual(self.keys().count('C-m'), 14)

    def test_transport_error_returns_false(self):
        self.controller.capture_pane.return_value = ''
        self.controller.send_literal.side_effect = TmuxCommandError(['send-keys'], 1, 'no pane')
        self.assertFalse(self.messenger.send_text('%5', 'hello'))
        self.assertFalse(self.messenger.get_message_history('%5')[-1]['success'])

    def test_inject_interrupts_busy_leader(self):
        self.controller.pane_state.return_value = PaneState.BUSY
        self.controller.capture_pane.return_value = ''
        self.messenger.inject_to_leader('%0', '[worker-1 completed] done')

        self.assertEqual(self.keys()[0], 'C-c')
        sent = self.controller.send_literal.call_args.args[1]
        self.assertEqual(sent, '[TMUX_TEAM] [worker-1 completed] done')

    def test_inject_idle_leader_does_not_interrupt(self):
        self.controller.pane_state.return_value = PaneState.IDLE
        self.controller.capture_pane.return_value = ''
        self.messenger.inject_to_leader('%0', 'note')
        self.assertNotIn('C-c', self.keys())


if __name__ == '__main__':
    unittest.main()
