#!/usr/bin/env python3
"""
Completion watchdog and health monitor tests.
"""

import json
import shutil
import sys
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

sys.path.append(str(Path(__file__).parent))

from tmux_team.core.task_ledger import TaskLedger
from tmux_team.core.team_state import TeamPaths
from tmux_team.monitoring.completion_watchdog import CompletionWatchdog
from tmux_team.monitoring.health_monitor import (
    HealthMonitor, TeamPhase, TeamSnapshot, classify_outcome, infer_phase,
)

WORKERS = ['worker-1', 'worker-2']


def write_done(paths, worker, task_id, status='completed', summary='done'):
    paths.done_path(worker).write_text(json.dumps({
        'taskId': task_id, 'status': status, 'summary': summary,
        'completedAt': datetime.now(timezone.utc).isoformat(),
    }))


class TestCompletionWatchdog(unittest.TestCase):
    """Exactly-once delivery of done sentinels"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.paths = TeamPaths(Path(self.test_dir), 'alpha')
        self.paths.ensure(WORKERS)
        self.events = []
        self.watchdog = CompletionWatchdog(self.paths, WORKERS, self.events.append)

    def tearDown(self):
        self.watchdog.stop()
        shutil.rmtree(self.test_dir)

    def test_sentinel_delivered_once_and_deleted(self):
        write_done(self.paths, 'worker-1', '1', summary='built it')

        delivered = self.watchdog.tick()
        self.assertEqual(len(delivered), 1)
        self.assertEqual(self.events[0].worker_name, 'worker-1')
        self.assertEqual(self.events[0].task_id, '1')
        self.assertEqual(self.events[0].summary, 'built it')
        self.assertFalse(self.paths.done_path('worker-1').exists())

        # A second sentinel from the same worker is not delivered again
        write_done(self.paths, 'worker-1', '3')
        self.assertEqual(self.watchdog.tick(), [])
        self.assertEqual(len(self.events), 1)

    def test_unknown_status_reads_as_failed(self):
        write_done(self.paths, 'worker-2', '2', status='weird')
        self.watchdog.tick()
        self.assertEqual(self.events[0].status, 'failed')

    def test_unparseable_sentinel_is_ignored(self):
        self.paths.done_path('worker-1').write_text('{"taskId": ')
        self.assertEqual(self.watchdog.tick(), [])
        self.assertNotIn('worker-1', self.watchdog.processed)

        write_done(self.paths, 'worker-1', '1')
        self.assertEqual(len(self.watchdog.tick()), 1)

    def test_handler_error_does_not_escape(self):
        def explode(event):
            raise RuntimeError('handler bug')

        watchdog = CompletionWatchdog(self.paths, WORKERS, explode)
        write_done(self.paths, 'worker-1', '1')

        with self.assertLogs('tmux_team.monitoring.completion_watchdog', level='ERROR'):
            watchdog.tick()
        self.assertIn('worker-1', watchdog.processed)
        self.assertFalse(self.paths.done_path('worker-1').exists())

    def test_background_ticks(self):
        seen = threading.Event()
        watchdog = CompletionWatchdog(self.paths, WORKERS, lambda event: seen.set())
        stop = watchdog.start(interval_ms=10)
        try:
            write_done(self.paths, 'worker-2', '2')
            self.assertTrue(seen.wait(timeout=5))
        finally:
            stop()


class TestPhaseInference(unittest.TestCase):
    """Phase rules, first match wins"""

    def counts(self, pending=0, in_progress=0, completed=0, failed=0):
        return {'pending': pending, 'in_progress': in_progress, 'completed': completed, 'failed': failed}

    def test_phases(self):
        self.assertEqual(infer_phase(self.counts(pending=2)), TeamPhase.PLANNING)
        self.assertEqual(infer_phase(self.counts(failed=1, completed=1)), TeamPhase.FIXING)
        self.assertEqual(infer_phase(self.counts(completed=2)), TeamPhase.COMPLETED)
        self.assertEqual(infer_phase(self.counts(pending=1, in_progress=1)), TeamPhase.EXECUTING)
        self.assertEqual(infer_phase(self.counts(pending=1, completed=1)), TeamPhase.EXECUTING)
        self.assertEqual(infer_phase(self.counts()), TeamPhase.EXECUTING)

    def test_outcome_completed(self):
        snapshot = TeamSnapshot('alpha', TeamPhase.COMPLETED, task_counts=self.counts(completed=2))
        self.assertEqual(classify_outcome(snapshot, 2), 'completed')

    def test_outcome_all_dead_with_outstanding_work(self):
        snapshot = TeamSnapshot('alpha', TeamPhase.EXECUTING,
                                task_counts=self.counts(pending=1, in_progress=1),
                                dead_workers=list(WORKERS))
        self.assertEqual(classify_outcome(snapshot, 2), 'failed')

    def test_outcome_all_dead_while_fixing(self):
        snapshot = TeamSnapshot('alpha', TeamPhase.FIXING, task_counts=self.counts(failed=1),
                                dead_workers=list(WORKERS))
        self.assertEqual(classify_outcome(snapshot, 2), 'failed')

    def test_outcome_some_alive_keeps_polling(self):
        snapshot = TeamSnapshot('alpha', TeamPhase.EXECUTING, task_counts=self.counts(pending=1),
                                dead_workers=['worker-1'])
        self.assertIsNone(classify_outcome(snapshot, 2))


class TestHealthMonitor(unittest.TestCase):
    """Snapshots from ledger, liveness and heartbeats"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.paths = TeamPaths(Path(self.test_dir), 'alpha')
        self.paths.ensure(WORKERS)
        self.ledger = TaskLedger(self.paths)
        self.controller = MagicMock()
        self.controller.is_alive.side_effect = lambda pane: pane == '%1'
        self.monitor = HealthMonitor(self.paths, self.ledger, self.controller, WORKERS, stall_threshold_s=60)

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_snapshot(self):
        self.ledger.create_task('a', '')
        self.ledger.create_task('b', '')
        self.ledger.claim_task('1', 'worker-1')

        stale = (datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat()
        self.paths.heartbeat_path('worker-1').write_text(json.dumps({
            'workerName': 'worker-1', 'status': 'working', 'updatedAt': stale, 'currentTaskId': '1',
        }))

        snapshot = self.monitor.snapshot(['%1', '%2'])

        self.assertEqual(snapshot.phase, TeamPhase.EXECUTING)
        self.assertEqual(snapshot.dead_workers, ['worker-2'])
        first, second = snapshot.workers
        self.assertTrue(first.alive)
        self.assertTrue(first.stalled)
        self.assertEqual(first.current_task_id, '1')
        # No heartbeat file means not stalled
        self.assertFalse(second.stalled)
        self.assertIsNone(second.last_heartbeat)

        data = snapshot.to_dict()
        self.assertEqual(data['taskCounts'], {'pending': 1, 'inProgress': 1, 'completed': 0, 'failed': 0})
        self.assertEqual(data['phase'], 'executing')

    def test_missing_pane_counts_as_dead(self):
        snapshot = self.monitor.snapshot(['%1'])
        self.assertEqual(snapshot.dead_workers, ['worker-2'])


if __name__ == '__main__':
    unittest.main()
