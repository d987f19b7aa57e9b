"""
Team State Module

Data model and on-disk layout for a running team. Records are stored as JSON
with camelCase keys because the same files are read and written by the
worker agents, whose protocol text uses those names.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..exceptions import InvalidTeamConfigError

STATE_DIR_NAME = '.tmux-team'

TASK_PENDING = 'pending'
TASK_IN_PROGRESS = 'in_progress'
TASK_COMPLETED = 'completed'
TASK_FAILED = 'failed'
TASK_STATUSES = (TASK_PENDING, TASK_IN_PROGRESS, TASK_COMPLETED, TASK_FAILED)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def worker_name(index: int) -> str:
    """Worker names are 1-based: index 0 -> 'worker-1'."""
    return f"worker-{index + 1}"


@dataclass
class TaskRecord:
    """A single task in the ledger."""
    id: str
    subject: str
    description: str
    status: str = TASK_PENDING
    owner: Optional[str] = None
    result: Optional[str] = None
    blocked_by: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None
    # Fields written by other parties that this version does not know about
    extra: Dict[str, Any] = field(default_factory=dict)

    _KEYS = {
        'id': 'id',
        'subject': 'subject',
        'description': 'description',
        'status': 'status',
        'owner': 'owner',
        'result': 'result',
        'blocked_by': 'blockedBy',
        'created_at': 'createdAt',
        'completed_at': 'completedAt',
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TaskRecord':
        known = set(cls._KEYS.values())
        blocked_by = data.get('blockedBy') or []
        return cls(
            id=str(data['id']),
            subject=data.get('subject', ''),
            description=data.get('description', ''),
            status=data.get('status', TASK_PENDING),
            owner=data.get('owner'),
            result=data.get('result'),
            blocked_by=[str(b) for b in blocked_by],
            created_at=data.get('createdAt') or now_iso(),
            completed_at=data.get('completedAt'),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        for attr, key in self._KEYS.items():
            data[key] = getattr(self, attr)
        return data


@dataclass
class TeamConfig:
    """Immutable description of a team, persisted as config.json."""
    team_name: str
    worker_count: int
    agent_types: List[str]
    tasks: List[Dict[str, Any]]
    cwd: str
    model: Optional[str] = None
    poll_interval_ms: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TeamConfig':
        """
        Build a config from caller input (camelCase keys).

        Raises:
            InvalidTeamConfigError: when required fields are missing or empty
        """
        missing = []
        if not data.get('teamName'):
            missing.append('teamName')
        agent_types = data.get('agentTypes')
        if not isinstance(agent_types, list) or not agent_types:
            missing.append('agentTypes')
        tasks = data.get('tasks')
        if not isinstance(tasks, list) or not tasks:
            missing.append('tasks')
        if not data.get('cwd'):
            missing.append('cwd')
        if missing:
            raise InvalidTeamConfigError(f"Missing required fields: {', '.join(missing)}")

        for i, task in enumerate(tasks):
            if not isinstance(task, dict) or 'subject' not in task:
                raise InvalidTeamConfigError(f"Task {i + 1} must be a mapping with a subject")

        worker_count = data.get('workerCount') or len(agent_types)
        return cls(
            team_name=str(data['teamName']),
            worker_count=int(worker_count),
            agent_types=[str(a) for a in agent_types],
            tasks=[dict(t) for t in tasks],
            cwd=str(data['cwd']),
            model=data.get('model'),
            poll_interval_ms=data.get('pollIntervalMs'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'teamName': self.team_name,
            'workerCount': self.worker_count,
            'agentTypes': list(self.agent_types),
            'tasks': [dict(t) for t in self.tasks],
            'cwd': self.cwd,
        }
        if self.model:
            data['model'] = self.model
        if self.poll_interval_ms is not None:
            data['pollIntervalMs'] = self.poll_interval_ms
        return data

    def agent_type_for(self, index: int) -> str:
        """Worker i runs agent_types[i], falling back to the first entry."""
        if index < len(self.agent_types):
            return self.agent_types[index]
        return self.agent_types[0] if self.agent_types else 'claude'

    @property
    def worker_names(self) -> List[str]:
        return [worker_name(i) for i in range(self.worker_count)]


class TeamPaths:
    """
    Filesystem layout of a team's state directory.

    <cwd>/.tmux-team/state/<team>/
        config.json
        session.json
        shutdown.json
        tasks/<id>.json
        tasks/<id>.failure.json
        workers/<name>/heartbeat.json
        workers/<name>/inbox.jsonl, inbox.offset
        workers/<name>/outbox.jsonl, outbox.offset
        workers/<name>/done.json
        workers/<name>/shutdown-ack.json
        workers/<name>/AGENTS.md
    """

    def __init__(self, cwd: Path, team_name: str):
        self.cwd = Path(cwd)
        self.team_name = team_name
        self.root = self.cwd / STATE_DIR_NAME / 'state' / team_name

    def relative(self, path: Path) -> str:
        """Path as seen from the team cwd, for instructions given to workers."""
        return str(path.relative_to(self.cwd))

    @property
    def config_path(self) -> Path:
        return self.root / 'config.json'

    @property
    def session_path(self) -> Path:
        return self.root / 'session.json'

    @property
    def shutdown_path(self) -> Path:
        return self.root / 'shutdown.json'

    @property
    def tasks_dir(self) -> Path:
        return self.root / 'tasks'

    def task_path(self, task_id: str) -> Path:
        return self.tasks_dir / f"{task_id}.json"

    def failure_path(self, task_id: str) -> Path:
        return self.tasks_dir / f"{task_id}.failure.json"

    @property
    def workers_dir(self) -> Path:
        return self.root / 'workers'

    def worker_dir(self, name: str) -> Path:
        return self.workers_dir / name

    def heartbeat_path(self, name: str) -> Path:
        return self.worker_dir(name) / 'heartbeat.json'

    def done_path(self, name: str) -> Path:
        return self.worker_dir(name) / 'done.json'

    def shutdown_ack_path(self, name: str) -> Path:
        return self.worker_dir(name) / 'shutdown-ack.json'

    def overlay_path(self, name: str) -> Path:
        return self.worker_dir(name) / 'AGENTS.md'

    def inbox_path(self, name: str) -> Path:
        return self.worker_dir(name) / 'inbox.jsonl'

    def ensure(self, worker_names: List[str]) -> None:
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        for name in worker_names:
            self.worker_dir(name).mkdir(parents=True, exist_ok=True)
