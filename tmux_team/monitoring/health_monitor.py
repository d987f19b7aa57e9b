"""
Health Monitor Module

Builds a point-in-time snapshot of a team: task counts from the ledger,
per-worker liveness from tmux and heartbeat freshness from the worker's own
heartbeat file. The snapshot drives phase transitions in the runtime loop.
"""

import logging
import time
from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.task_ledger import TaskLedger
from ..core.team_state import TeamPaths, TASK_PENDING, TASK_IN_PROGRESS, TASK_COMPLETED, TASK_FAILED
from ..tmux.session_controller import TmuxSessionController
from ..utils.file_utils import FileUtils

logger = logging.getLogger(__name__)

DEFAULT_STALL_THRESHOLD_S = 60.0


class TeamPhase(Enum):
    """Coarse team progress, derived from task counts."""
    PLANNING = "planning"
    EXECUTING = "executing"
    FIXING = "fixing"
    COMPLETED = "completed"


@dataclass
class WorkerStatus:
    """Health of one worker."""
    name: str
    pane_id: Optional[str]
    alive: bool
    last_heartbeat: Optional[str]
    current_task_id: Optional[str]
    stalled: bool

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


@dataclass
class TeamSnapshot:
    """Team health at one instant."""
    team_name: str
    phase: TeamPhase
    workers: List[WorkerStatus] = field(default_factory=list)
    task_counts: Dict[str, int] = field(default_factory=dict)
    dead_workers: List[str] = field(default_factory=list)
    monitor_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'teamName': self.team_name,
            'phase': self.phase.value,
            'workers': [w.to_dict() for w in self.workers],
            'taskCounts': {
                'pending': self.task_counts.get(TASK_PENDING, 0),
                'inProgress': self.task_counts.get(TASK_IN_PROGRESS, 0),
                'completed': self.task_counts.get(TASK_COMPLETED, 0),
                'failed': self.task_counts.get(TASK_FAILED, 0),
            },
            'deadWorkers': list(self.dead_workers),
            'monitorMs': self.monitor_ms,
        }


def infer_phase(counts: Dict[str, int]) -> TeamPhase:
    """
    Infer the team phase from task counts. First match wins.

    Args:
        counts: Output of TaskLedger.count_by_status()

    Returns:
        TeamPhase
    """
    pending = counts.get(TASK_PENDING, 0)
    in_progress = counts.get(TASK_IN_PROGRESS, 0)
    completed = counts.get(TASK_COMPLETED, 0)
    failed = counts.get(TASK_FAILED, 0)

    if in_progress == 0 and pending > 0 and completed == 0:
        return TeamPhase.PLANNING
    if failed > 0 and pending == 0 and in_progress == 0:
        return TeamPhase.FIXING
    if completed > 0 and pending == 0 and in_progress == 0 and failed == 0:
        return TeamPhase.COMPLETED
    return TeamPhase.EXECUTING


def classify_outcome(snapshot: TeamSnapshot, worker_count: int) -> Optional[str]:
    """
    Decide whether the runtime loop should stop.

    Returns:
        'completed', 'failed' (every worker dead with work outstanding, or
        fixing with every worker dead) or None to keep polling
    """
    if snapshot.phase == TeamPhase.COMPLETED:
        return 'completed'

    all_dead = worker_count > 0 and len(snapshot.dead_workers) >= worker_count
    if not all_dead:
        return None

    outstanding = (snapshot.task_counts.get(TASK_PENDING, 0)
                   + snapshot.task_counts.get(TASK_IN_PROGRESS, 0))
    if outstanding > 0 or snapshot.phase == TeamPhase.FIXING:
        return 'failed'
    return None


def _parse_timestamp(value: Any) -> Optional[float]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00')).timestamp()
    except ValueError:
        return None


class HealthMonitor:
    """
    Team health snapshots.

    Features:
    - Ledger status counts and phase inference
    - Pane liveness per worker
    - Heartbeat staleness detection
    """

    def __init__(self, paths: TeamPaths, ledger: TaskLedger, controller: TmuxSessionController,
                 worker_names: List[str], stall_threshold_s: float = DEFAULT_STALL_THRESHOLD_S):
        """
        Initialize health monitor.

        Args:
            paths: Team state layout
            ledger: Task ledger of the team
            controller: Used for pane liveness
            worker_names: Worker names in pane order
            stall_threshold_s: Heartbeat age after which a worker counts as stalled
        """
        self.paths = paths
        self.ledger = ledger
        self.controller = controller
        self.worker_names = list(worker_names)
        self.stall_threshold_s = stall_threshold_s

    def read_heartbeat(self, worker: str) -> Optional[Dict[str, Any]]:
        data = FileUtils.read_json(self.paths.heartbeat_path(worker))
        return data if isinstance(data, dict) else None

    def worker_status(self, worker: str, pane_id: Optional[str]) -> WorkerStatus:
        alive = bool(pane_id) and self.controller.is_alive(pane_id)
        heartbeat = self.read_heartbeat(worker)

        last_heartbeat = None
        current_task_id = None
        stalled = False
        if heartbeat is not None:
            last_heartbeat = heartbeat.get('updatedAt')
            current_task_id = heartbeat.get('currentTaskId')
            updated = _parse_timestamp(last_heartbeat)
            if updated is not None:
                stalled = time.time() - updated > self.stall_threshold_s

        return WorkerStatus(
            name=worker,
            pane_id=pane_id,
            alive=alive,
            last_heartbeat=last_heartbeat,
            current_task_id=str(current_task_id) if current_task_id is not None else None,
            stalled=stalled,
        )

    def snapshot(self, worker_pane_ids: List[str]) -> TeamSnapshot:
        """
        Take a snapshot of the team.

        Args:
            worker_pane_ids: Pane ids, index-aligned with worker_names

        Returns:
            TeamSnapshot
        """
        started = time.monotonic()
        counts = self.ledger.count_by_status()

        workers = []
        for i, name in enumerate(self.worker_names):
            pane_id = worker_pane_ids[i] if i < len(worker_pane_ids) else None
            workers.append(self.worker_status(name, pane_id))

        dead = [w.name for w in workers if not w.alive]
        stalled = [w.name for w in workers if w.stalled]
        if stalled:
            logger.warning(f"Stalled workers (no heartbeat for {self.stall_threshold_s:.0f}s): {', '.join(stalled)}")

        return TeamSnapshot(
            team_name=self.paths.team_name,
            phase=infer_phase(counts),
            workers=workers,
            task_counts=counts,
            dead_workers=dead,
            monitor_ms=round((time.monotonic() - started) * 1000, 1),
        )
