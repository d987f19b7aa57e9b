"""
Task Ledger Module

Durable per-task records stored one JSON file per task. Updates are whole-record
read-modify-write with an atomic rename. There is no cross-process lock:
claiming re-reads the candidate right before acting, and the rare collision
that slips through is resolved by last-writer-wins.
"""

import logging
from typing import Any, Dict, List, Optional

from .team_state import (
    TaskRecord, TeamPaths, now_iso,
    TASK_PENDING, TASK_IN_PROGRESS, TASK_COMPLETED, TASK_FAILED,
)
from ..utils.file_utils import FileUtils

logger = logging.getLogger(__name__)


def _task_sort_key(task_id: str):
    return (0, int(task_id), '') if task_id.isdigit() else (1, 0, task_id)


class TaskLedger:
    """
    Task record store with claim semantics and blocked-by resolution.

    Any party may read. Workers and the completion watchdog write, always the
    whole record, so that fields the writer does not know about survive.
    """

    def __init__(self, paths: TeamPaths):
        self.paths = paths

    def list_task_ids(self) -> List[str]:
        """List all task IDs, sorted ascending (numerically where possible)."""
        tasks_dir = self.paths.tasks_dir
        if not tasks_dir.is_dir():
            return []

        ids = []
        for entry in tasks_dir.iterdir():
            name = entry.name
            if not name.endswith('.json') or name.endswith('.failure.json'):
                continue
            ids.append(name[:-len('.json')])
        return sorted(ids, key=_task_sort_key)

    def create_task(self, subject: str, description: str,
                    blocked_by: Optional[List[str]] = None) -> TaskRecord:
        """
        Create a pending task with the next sequential id.

        Args:
            subject: Short title
            description: Full instructions
            blocked_by: Ids that must be completed before this task is claimable

        Returns:
            TaskRecord: the created record
        """
        numeric_ids = [int(i) for i in self.list_task_ids() if i.isdigit()]
        task_id = str(max(numeric_ids, default=0) + 1)

        record = TaskRecord(
            id=task_id,
            subject=subject,
            description=description,
            blocked_by=[str(b) for b in (blocked_by or [])],
        )
        FileUtils.write_json(self.paths.task_path(task_id), record.to_dict())
        logger.debug(f"Created task {task_id}: {subject}")
        return record

    def read_raw(self, task_id: str) -> Optional[Dict[str, Any]]:
        data = FileUtils.read_json(self.paths.task_path(task_id))
        if not isinstance(data, dict) or 'id' not in data:
            return None
        return data

    def read_task(self, task_id: str) -> Optional[TaskRecord]:
        """Read a single task. Missing or malformed files read as None."""
        data = self.read_raw(task_id)
        if data is None:
            return None
        try:
            return TaskRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Unusable task record {task_id}: {e}")
            return None

    def update_task(self, task_id: str, **fields: Any) -> Optional[TaskRecord]:
        """
        Patch a task in place, preserving every field not named in the update.

        Keyword names may be record attributes (``blocked_by``) or on-disk keys
        (``blockedBy``); unknown names are written through as-is.

        Returns:
            The updated record, or None when the task does not exist
        """
        data = self.read_raw(task_id)
        if data is None:
            logger.warning(f"Cannot update task {task_id}: not found")
            return None

        for name, value in fields.items():
            data[TaskRecord._KEYS.get(name, name)] = value

        FileUtils.write_json(self.paths.task_path(task_id), data)
        return TaskRecord.from_dict(data)

    def are_blockers_resolved(self, blocked_by: List[str]) -> bool:
        """True when every blocker exists and is completed."""
        for blocker_id in blocked_by:
            blocker = self.read_task(blocker_id)
            if blocker is None or blocker.status != TASK_COMPLETED:
                return False
        return True

    def find_next_claimable(self, worker: str) -> Optional[TaskRecord]:
        """
        Find the lowest-id task this worker may claim.

        A task qualifies when it has no owner, is pending and all its blockers
        are completed. The candidate is re-read immediately before returning so
        a claim made by another worker between scan and selection is noticed.

        Args:
            worker: Name of the worker asking

        Returns:
            TaskRecord or None
        """
        for task_id in self.list_task_ids():
            task = self.read_task(task_id)
            if task is None or task.owner is not None or task.status != TASK_PENDING:
                continue
            if not self.are_blockers_resolved(task.blocked_by):
                continue

            fresh = self.read_task(task_id)
            if fresh is None or fresh.owner is not None or fresh.status != TASK_PENDING:
                logger.debug(f"Task {task_id} was claimed before {worker} could take it")
                continue
            return fresh
        return None

    def claim_task(self, task_id: str, worker: str) -> Optional[TaskRecord]:
        """
        Mark a task in_progress and owned by worker.

        Returns None when the task is missing or already owned by someone else.
        Claiming a task the worker already owns is a no-op success.
        """
        current = self.read_task(task_id)
        if current is None:
            return None
        if current.owner not in (None, worker):
            logger.info(f"Task {task_id} already owned by {current.owner}, not claiming for {worker}")
            return None
        if current.status in (TASK_COMPLETED, TASK_FAILED):
            return None

        return self.update_task(task_id, owner=worker, status=TASK_IN_PROGRESS, claimedAt=now_iso())

    def complete_task(self, task_id: str, status: str, summary: str) -> Optional[TaskRecord]:
        """
        Record a terminal outcome. A task that is already completed is left alone.
        """
        current = self.read_task(task_id)
        if current is None:
            logger.warning(f"Completion reported for unknown task {task_id}")
            return None
        if current.status == TASK_COMPLETED:
            return current

        final_status = TASK_COMPLETED if status == TASK_COMPLETED else TASK_FAILED
        return self.update_task(task_id, status=final_status, result=summary, completed_at=now_iso())

    def count_by_status(self) -> Dict[str, int]:
        counts = {TASK_PENDING: 0, TASK_IN_PROGRESS: 0, TASK_COMPLETED: 0, TASK_FAILED: 0}
        for task_id in self.list_task_ids():
            task = self.read_task(task_id)
            if task is not None and task.status in counts:
                counts[task.status] += 1
        return counts

    def collect_results(self) -> List[Dict[str, str]]:
        """Summaries of every task file, for the runtime's final report."""
        results = []
        for task_id in self.list_task_ids():
            data = self.read_raw(task_id)
            if data is None:
                results.append({'taskId': task_id, 'status': 'unknown', 'summary': ''})
                continue
            results.append({
                'taskId': str(data.get('id', task_id)),
                'status': data.get('status') or 'unknown',
                'summary': data.get('result') or data.get('summary') or '',
            })
        return results

    def write_task_failure(self, task_id: str, error: str) -> Dict[str, Any]:
        """Write the failure sidecar, incrementing retryCount if it exists."""
        path = self.paths.failure_path(task_id)
        existing = FileUtils.read_json(path)
        retry_count = 0
        if isinstance(existing, dict):
            retry_count = int(existing.get('retryCount', 0)) + 1

        sidecar = {
            'taskId': task_id,
            'lastError': error,
            'retryCount': retry_count,
            'lastFailedAt': now_iso(),
        }
        FileUtils.write_json(path, sidecar)
        return sidecar

    def read_task_failure(self, task_id: str) -> Optional[Dict[str, Any]]:
        data = FileUtils.read_json(self.paths.failure_path(task_id))
        return data if isinstance(data, dict) else None
