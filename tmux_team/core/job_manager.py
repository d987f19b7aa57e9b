"""
Job Manager Module

Runs teams as detached background jobs. Each job is a `python -m tmux_team.main`
child that receives its team config on stdin and prints one JSON result line
on stdout. Job records live in memory and are mirrored to one JSON file per job
so that a later process can still report on, wait for and clean up the job.

The child's stdout and stderr go to {jobId}.out and {jobId}.err next to the
job file, and the child records its own terminal status in {jobId}.json before
it exits. A job started by one process therefore resolves correctly when it
is waited on from another, after the starting process is long gone.
"""

import json
import logging
import os
import re
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .team_state import TeamConfig, TeamPaths, now_iso
from ..agents.agent_contract import get_contract
from ..exceptions import InvalidJobIdError
from ..tmux.session_controller import TmuxSessionController
from ..utils.config_loader import Settings
from ..utils.file_utils import FileUtils
from ..utils.system_utils import SystemUtils

logger = logging.getLogger(__name__)

JOB_RUNNING = 'running'
JOB_COMPLETED = 'completed'
JOB_FAILED = 'failed'
JOB_TIMEOUT = 'timeout'
TERMINAL_STATUSES = (JOB_COMPLETED, JOB_FAILED, JOB_TIMEOUT)

JOB_ID_PATTERN = re.compile(r'^team-[a-z0-9]{1,12}$')
JOB_ID_ENV_VAR = 'TMUX_TEAM_JOB_ID'

DEFAULT_WAIT_TIMEOUT_MS = 300000
MAX_WAIT_TIMEOUT_MS = 3600000
INITIAL_POLL_SECONDS = 0.5
MAX_POLL_SECONDS = 2.0
TERMINATE_GRACE_SECONDS = 10.0
MAX_STDERR_CHARS = 65536
ORPHAN_ERROR = 'Process no longer alive'

_BASE36 = '0123456789abcdefghijklmnopqrstuvwxyz'


def _base36(value: int) -> str:
    digits = []
    while True:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
        if value == 0:
            return ''.join(reversed(digits))


def generate_job_id() -> str:
    """team-<base36 epoch milliseconds>"""
    return f"team-{_base36(int(time.time() * 1000))}"


def validate_job_id(job_id: str) -> str:
    """
    Reject ids that could escape the jobs directory.

    Raises:
        InvalidJobIdError: if job_id does not match ^team-[a-z0-9]{1,12}$
    """
    if not isinstance(job_id, str) or not JOB_ID_PATTERN.match(job_id):
        raise InvalidJobIdError(f"Invalid job id: {job_id!r}")
    return job_id


def panes_path(jobs_dir: Path, job_id: str) -> Path:
    return Path(jobs_dir) / f"{job_id}-panes.json"


def stdout_path(jobs_dir: Path, job_id: str) -> Path:
    return Path(jobs_dir) / f"{job_id}.out"


def stderr_path(jobs_dir: Path, job_id: str) -> Path:
    return Path(jobs_dir) / f"{job_id}.err"


def read_output(path: Path, limit: Optional[int] = None) -> str:
    """
    Read a captured output file, keeping only its last ``limit`` bytes.

    Returns:
        str: Decoded content, empty when the file is missing or unreadable
    """
    try:
        with open(path, 'rb') as f:
            if limit is not None:
                f.seek(0, os.SEEK_END)
                f.seek(max(0, f.tell() - limit))
            data = f.read()
    except FileNotFoundError:
        return ''
    except OSError as e:
        logger.debug(f"Cannot read {path}: {e}")
        return ''
    return data.decode('utf-8', errors='replace')


def read_stderr_tail(jobs_dir: Path, job_id: str) -> Optional[str]:
    return read_output(stderr_path(jobs_dir, job_id), MAX_STDERR_CHARS) or None


def report_result(jobs_dir: Path, job_id: str, result: Dict[str, Any]) -> Optional['Job']:
    """
    Record a runtime child's own result in its job file.

    Called by the child right before it exits, so the outcome survives the
    process that started the job. An earlier terminal status (a timeout
    written by a waiter) is kept.

    Args:
        jobs_dir: Directory holding the job files
        job_id: Job the child runs as
        result: The result dictionary also printed on stdout

    Returns:
        The job as it stands afterwards, or None when no record exists

    Raises:
        InvalidJobIdError: for malformed ids
    """
    validate_job_id(job_id)
    status = result.get('status')
    if status not in TERMINAL_STATUSES:
        status = JOB_FAILED
    return JobRegistry(jobs_dir).set_terminal(
        job_id, status,
        result=json.dumps(result),
        stderr=read_stderr_tail(jobs_dir, job_id),
    )


@dataclass
class Job:
    """A background team run."""
    job_id: str
    status: str = JOB_RUNNING
    pid: Optional[int] = None
    started_at: int = field(default_factory=lambda: int(time.time() * 1000))
    team_name: Optional[str] = None
    cwd: Optional[str] = None
    pane_ids: List[str] = field(default_factory=list)
    leader_pane_id: Optional[str] = None
    result: Optional[str] = None
    stderr: Optional[str] = None
    error: Optional[str] = None
    cleaned_up_at: Optional[str] = None

    _KEYS = {
        'job_id': 'jobId',
        'status': 'status',
        'pid': 'pid',
        'started_at': 'startedAt',
        'team_name': 'teamName',
        'cwd': 'cwd',
        'pane_ids': 'paneIds',
        'leader_pane_id': 'leaderPaneId',
        'result': 'result',
        'stderr': 'stderr',
        'error': 'error',
        'cleaned_up_at': 'cleanedUpAt',
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Job':
        values = {attr: data[key] for attr, key in cls._KEYS.items() if key in data}
        values['pane_ids'] = list(values.get('pane_ids') or [])
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, attr) for attr, key in self._KEYS.items()}

    @property
    def elapsed_seconds(self) -> float:
        return round((time.time() * 1000 - self.started_at) / 1000, 1)


class JobRegistry:
    """
    Job store backed by memory and by {jobs_dir}/{jobId}.json.

    Reads prefer memory and fall back to disk without caching, so a job owned
    by another process is always read fresh. A job still running in memory is
    checked against disk too, since its child may have recorded its own
    result there. A terminal status is written once: the first caller to move
    a job out of running wins.
    """

    def __init__(self, jobs_dir: Path):
        self.jobs_dir = Path(jobs_dir)
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def job_path(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}.json"

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._get_unlocked(job_id)

    def save(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.job_id] = job
            self._persist(job)

    def set_terminal(self, job_id: str, status: str, **fields: Any) -> Optional[Job]:
        """
        Move a running job to a terminal status.

        Returns:
            The job as it stands afterwards (unchanged if it was already
            terminal), or None when the job is unknown
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal job status: {status}")

        with self._lock:
            job = self._get_unlocked(job_id)
            if job is None:
                return None
            if job.status == JOB_RUNNING:
                job.status = status
                for name, value in fields.items():
                    setattr(job, name, value)
                self._jobs[job_id] = job
                self._persist(job)
                logger.info(f"Job {job_id} -> {status}")
            return job

    def record_pid(self, job_id: str, pid: int) -> None:
        """Attach the child's pid unless the job already ended."""
        with self._lock:
            job = self._get_unlocked(job_id)
            if job is None:
                return
            job.pid = pid
            self._jobs[job_id] = job
            if job.status == JOB_RUNNING:
                self._persist(job)

    def load_panes(self, job_id: str) -> Optional[Dict[str, Any]]:
        data = FileUtils.read_json(panes_path(self.jobs_dir, job_id))
        if not isinstance(data, dict) or not isinstance(data.get('paneIds'), list):
            return None
        return data

    def list_jobs(self) -> List[Job]:
        with self._lock:
            jobs = {job_id: self._get_unlocked(job_id) for job_id in list(self._jobs)}
        if self.jobs_dir.is_dir():
            for entry in self.jobs_dir.glob('team-*.json'):
                job_id = entry.stem
                if job_id in jobs or not JOB_ID_PATTERN.match(job_id):
                    continue
                data = FileUtils.read_json(entry)
                if isinstance(data, dict) and data.get('jobId') == job_id:
                    jobs[job_id] = Job.from_dict(data)
        return sorted(jobs.values(), key=lambda j: j.started_at)

    def _get_unlocked(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is not None and job.status != JOB_RUNNING:
            return job

        on_disk = self._load(job_id)
        if job is None:
            return on_disk
        if on_disk is not None and on_disk.status != JOB_RUNNING:
            self._jobs[job_id] = on_disk
            return on_disk
        return job

    def _load(self, job_id: str) -> Optional[Job]:
        data = FileUtils.read_json(self.job_path(job_id))
        if not isinstance(data, dict) or 'jobId' not in data:
            return None
        try:
            return Job.from_dict(data)
        except TypeError as e:
            logger.warning(f"Unusable job file for {job_id}: {e}")
            return None

    def _persist(self, job: Job) -> None:
        FileUtils.try_write_json(self.job_path(job.job_id), job.to_dict(), indent=None)


class JobManager:
    """
    Start, inspect, wait for and clean up background team jobs.

    Features:
    - Detached runtime child per job, config delivered on stdin
    - Status resolution from the child's stdout line or exit code
    - Orphan detection for jobs whose process died unobserved
    - Timeout escalation (SIGTERM, bounded wait, SIGKILL, pane kill)
    """

    def __init__(self, settings: Optional[Settings] = None,
                 registry: Optional[JobRegistry] = None,
                 controller: Optional[TmuxSessionController] = None,
                 python_executable: Optional[str] = None):
        """
        Initialize job manager.

        Args:
            settings: Runtime settings (jobs_dir, kill_grace_ms)
            registry: Job store, defaults to one rooted at settings.jobs_dir
            controller: Tmux controller used to kill worker panes
            python_executable: Interpreter for the runtime child
        """
        self.settings = settings or Settings()
        self.registry = registry or JobRegistry(self.settings.jobs_dir)
        self.controller = controller or TmuxSessionController(self.settings.pane_patterns)
        self.python_executable = python_executable or sys.executable
        self._supervisors: Dict[str, threading.Thread] = {}

    @staticmethod
    def validate_job_id(job_id: str) -> str:
        return validate_job_id(job_id)

    def start(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Launch a team in the background and return immediately.

        Args:
            config: Team config in camelCase form (teamName, agentTypes, tasks, cwd, ...)

        Returns:
            {jobId, pid, message}

        Raises:
            InvalidTeamConfigError: when required fields are missing
            UnknownAgentTypeError: for an agent kind without a contract
        """
        team_config = TeamConfig.from_dict(config)
        for agent_type in team_config.agent_types:
            get_contract(agent_type)

        job_id = generate_job_id()
        while self.registry.get(job_id) is not None:
            time.sleep(0.002)
            job_id = generate_job_id()

        job = Job(job_id=job_id, team_name=team_config.team_name, cwd=team_config.cwd)

        env = os.environ.copy()
        env[JOB_ID_ENV_VAR] = job_id
        env['TMUX_TEAM_JOBS_DIR'] = str(self.registry.jobs_dir)

        jobs_dir = self.registry.jobs_dir
        jobs_dir.mkdir(parents=True, exist_ok=True)
        # The record exists before the child does, so the child can report into it
        self.registry.save(job)
        try:
            with open(stdout_path(jobs_dir, job_id), 'wb') as out_file, \
                    open(stderr_path(jobs_dir, job_id), 'wb') as err_file:
                proc = subprocess.Popen(
                    [self.python_executable, '-m', 'tmux_team.main'],
                    stdin=subprocess.PIPE,
                    stdout=out_file,
                    stderr=err_file,
                    text=True,
                    cwd=team_config.cwd,
                    env=env,
                    start_new_session=True,
                )
        except OSError as e:
            logger.error(f"Failed to spawn runtime for {job_id}: {e}")
            self.registry.set_terminal(job_id, JOB_FAILED, stderr=f"spawn error: {e}")
            return {'jobId': job_id, 'pid': None, 'message': f"Team failed to start: {e}"}

        self.registry.record_pid(job_id, proc.pid)

        try:
            proc.stdin.write(json.dumps({**config, 'cwd': team_config.cwd}))
            proc.stdin.close()
        except OSError as e:
            logger.warning(f"Could not deliver config to job {job_id}: {e}")

        supervisor = threading.Thread(
            target=self._supervise, args=(job_id, proc),
            name=f'job-{job_id}', daemon=True,
        )
        self._supervisors[job_id] = supervisor
        supervisor.start()

        logger.info(f"Started job {job_id} (pid {proc.pid}) for team {team_config.team_name}")
        return {'jobId': job_id, 'pid': proc.pid,
                'message': 'Team started. Poll with status or wait.'}

    def _supervise(self, job_id: str, proc: subprocess.Popen) -> None:
        returncode = proc.wait()
        jobs_dir = self.registry.jobs_dir
        self.resolve_exit(job_id, returncode, read_output(stdout_path(jobs_dir, job_id)),
                          read_stderr_tail(jobs_dir, job_id) or '')

    def resolve_exit(self, job_id: str, returncode: Optional[int], stdout: str, stderr: str) -> Optional[Job]:
        """
        Record the outcome of an exited runtime child.

        The last stdout line is the result: its status field decides when it
        parses, an unparseable line means failed, and with no stdout at all the
        exit code decides (0 completed, 2 timeout, anything else failed).
        """
        output = stdout.strip()
        if output:
            last_line = output.split('\n')[-1]
            try:
                parsed = json.loads(last_line)
                status = parsed.get('status') if isinstance(parsed, dict) else None
            except json.JSONDecodeError:
                status = None
            if status not in TERMINAL_STATUSES:
                status = JOB_FAILED
            result = last_line
        else:
            status = {0: JOB_COMPLETED, 2: JOB_TIMEOUT}.get(returncode, JOB_FAILED)
            result = None

        job = self.registry.set_terminal(job_id, status, result=result, stderr=stderr or None)
        if job is not None and job.status != status:
            logger.info(f"Job {job_id} exited after it was already {job.status}, keeping that status")
        return job

    def _payload(self, job: Job) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            'jobId': job.job_id,
            'status': job.status,
            'elapsedSeconds': job.elapsed_seconds,
        }
        if job.result:
            try:
                out['result'] = json.loads(job.result)
            except json.JSONDecodeError:
                out['result'] = job.result
        if job.error:
            out['error'] = job.error
        stderr = job.stderr or read_stderr_tail(self.registry.jobs_dir, job.job_id)
        if stderr:
            out['stderr'] = stderr
        return out

    def status(self, job_id: str) -> Dict[str, Any]:
        """Non-blocking status. Unknown jobs report {error}."""
        validate_job_id(job_id)
        job = self.registry.get(job_id)
        if job is None:
            return {'error': f"No job found: {job_id}"}
        return self._payload(job)

    def wait(self, job_id: str, timeout_ms: int = DEFAULT_WAIT_TIMEOUT_MS) -> Dict[str, Any]:
        """
        Block until the job is terminal, its process is found dead, or the
        timeout (capped at one hour) expires.

        Args:
            job_id: Job to wait for
            timeout_ms: Wait budget in milliseconds

        Returns:
            Job payload; on timeout {jobId, status: timeout, error, stderr?}
        """
        validate_job_id(job_id)
        deadline = time.monotonic() + min(timeout_ms, MAX_WAIT_TIMEOUT_MS) / 1000
        delay = INITIAL_POLL_SECONDS

        while time.monotonic() < deadline:
            job = self.registry.get(job_id)
            if job is None:
                return {'error': f"No job found: {job_id}"}

            if job.status == JOB_RUNNING and job.pid is not None and not SystemUtils.is_pid_alive(job.pid):
                job = self._mark_orphan(job_id)
                if job is None:
                    return {'error': f"No job found: {job_id}"}

            if job.status != JOB_RUNNING:
                return self._payload(job)

            time.sleep(max(0.0, min(delay, deadline - time.monotonic())))
            delay = min(delay * 1.5, MAX_POLL_SECONDS)

        return self._time_out(job_id, timeout_ms)

    def _mark_orphan(self, job_id: str) -> Optional[Job]:
        # Our own child may just be exiting; let its supervisor record the result
        supervisor = self._supervisors.get(job_id)
        if supervisor is not None:
            supervisor.join(timeout=1.0)

        job = self.registry.get(job_id)
        if job is None or job.status != JOB_RUNNING:
            return job

        # Started elsewhere, or the child died before reporting: its files remain
        jobs_dir = self.registry.jobs_dir
        output = read_output(stdout_path(jobs_dir, job_id))
        stderr = read_stderr_tail(jobs_dir, job_id)
        if output.strip():
            logger.info(f"Job {job_id} process {job.pid} is gone, resolving from its output")
            return self.resolve_exit(job_id, None, output, stderr or '')

        logger.warning(f"Job {job_id} process {job.pid} is gone, marking failed")
        return self.registry.set_terminal(
            job_id, JOB_FAILED,
            result=json.dumps({'error': ORPHAN_ERROR}),
            error=ORPHAN_ERROR,
            stderr=stderr,
        )

    def _time_out(self, job_id: str, timeout_ms: int) -> Dict[str, Any]:
        job = self.registry.set_terminal(job_id, JOB_TIMEOUT)
        if job is None:
            return {'error': f"No job found: {job_id}"}
        if job.status != JOB_TIMEOUT:
            return self._payload(job)

        if job.pid is not None:
            SystemUtils.terminate_process(job.pid, grace_seconds=TERMINATE_GRACE_SECONDS)

        panes = self.registry.load_panes(job_id)
        if panes:
            self.controller.kill_panes(
                panes['paneIds'], panes.get('leaderPaneId'),
                shutdown_path=self._shutdown_path(job), grace_ms=0,
            )
            job.pane_ids = list(panes['paneIds'])
            job.leader_pane_id = panes.get('leaderPaneId')

        job.error = f"Timed out waiting for job {job_id} after {timeout_ms / 1000:.0f}s"
        job.stderr = job.stderr or read_stderr_tail(self.registry.jobs_dir, job_id)
        self.registry.save(job)

        out = {'jobId': job_id, 'status': JOB_TIMEOUT,
               'elapsedSeconds': job.elapsed_seconds, 'error': job.error}
        if job.stderr:
            out['stderr'] = job.stderr
        return out

    def cleanup(self, job_id: str, grace_ms: Optional[int] = None) -> Dict[str, Any]:
        """
        Kill the worker panes recorded for a job, never the leader pane.

        Safe to call repeatedly.

        Raises:
            InvalidJobIdError: for malformed ids
        """
        validate_job_id(job_id)
        if grace_ms is None:
            grace_ms = self.settings.kill_grace_ms

        job = self.registry.get(job_id)
        panes = self.registry.load_panes(job_id)
        if job is None and panes is None:
            return {'error': f"No job found: {job_id}"}

        killed = 0
        if panes:
            killed = self.controller.kill_panes(
                panes['paneIds'], panes.get('leaderPaneId'),
                shutdown_path=self._shutdown_path(job), grace_ms=grace_ms,
            )

        if job is not None:
            job.cleaned_up_at = now_iso()
            self.registry.save(job)

        return {'jobId': job_id, 'message': f"Cleaned up {killed} worker pane(s)"}

    def list_jobs(self) -> List[Dict[str, Any]]:
        return [self._payload(job) for job in self.registry.list_jobs()]

    @staticmethod
    def _shutdown_path(job: Optional[Job]) -> Optional[Path]:
        if job is None or not job.cwd or not job.team_name:
            return None
        return TeamPaths(Path(job.cwd), job.team_name).shutdown_path
