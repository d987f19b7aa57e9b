"""
Runtime entry point for a background team job.

Run as `python -m tmux_team.main` with the team config as JSON on stdin. Logs
go to stderr; stdout carries exactly one JSON result line:

    {"status": "completed"|"failed", "teamName": ..., "taskResults": [...],
     "duration": <seconds>, "workerCount": <n>}

Exit code is 0 for completed and 1 otherwise. When run as a job (TMUX_TEAM_JOB_ID
is set) the result is also recorded in the job file before exiting.
"""

import json
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from .core.job_manager import JOB_ID_ENV_VAR, JOB_ID_PATTERN, panes_path, report_result
from .core.runtime import TeamRuntime
from .core.team_state import TeamConfig
from .exceptions import InvalidTeamConfigError, TeamError
from .monitoring.health_monitor import classify_outcome
from .utils.config_loader import Settings, load_settings
from .utils.file_utils import FileUtils

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def write_panes_file(jobs_dir: Path, job_id: Optional[str], runtime: TeamRuntime) -> None:
    """Record the job's panes so cleanup can find them after this process is gone."""
    if not job_id or not JOB_ID_PATTERN.match(job_id) or runtime.session is None:
        return
    FileUtils.try_write_json(panes_path(jobs_dir, job_id), {
        'paneIds': runtime.worker_pane_ids,
        'leaderPaneId': runtime.leader_pane_id,
    }, indent=None)


def run_team(config: TeamConfig,
             settings: Settings,
             runtime: Optional[TeamRuntime] = None,
             job_id: Optional[str] = None,
             stop_event: Optional[threading.Event] = None) -> Dict[str, Any]:
    """
    Start a team, poll it to a terminal state and shut it down.

    Args:
        config: Team to run
        settings: Runtime settings
        runtime: Prebuilt runtime (defaults to TeamRuntime(config, settings))
        job_id: Job this run belongs to, for the panes file
        stop_event: Set to request an early shutdown (reported as failed)

    Returns:
        Result dictionary printed by main()
    """
    started = time.monotonic()
    runtime = runtime or TeamRuntime(config, settings)
    stop_event = stop_event or threading.Event()
    poll_seconds = (config.poll_interval_ms or settings.poll_interval_ms) / 1000
    status = 'failed'

    try:
        runtime.start()
    except TeamError as e:
        logger.error(f"Team {config.team_name} failed to start: {e}")
    else:
        write_panes_file(settings.jobs_dir, job_id, runtime)

        while not stop_event.wait(poll_seconds):
            write_panes_file(settings.jobs_dir, job_id, runtime)
            snapshot = runtime.monitor()
            counts = snapshot.to_dict()['taskCounts']
            logger.info(
                f"phase={snapshot.phase.value} pending={counts['pending']} "
                f"inProgress={counts['inProgress']} completed={counts['completed']} "
                f"failed={counts['failed']} dead={len(snapshot.dead_workers)} "
                f"monitorMs={snapshot.monitor_ms}"
            )

            outcome = classify_outcome(snapshot, config.worker_count)
            if outcome:
                if outcome == 'failed':
                    logger.error(f"All workers are dead with work outstanding: {', '.join(snapshot.dead_workers)}")
                status = outcome
                break

        if stop_event.is_set():
            logger.warning("Shutdown requested, stopping team")

    runtime.stop_watchdog()
    task_results = runtime.collect_results()
    try:
        runtime.shutdown(timeout_ms=settings.shutdown_ack_timeout_ms)
    except OSError as e:
        logger.warning(f"Shutdown of {config.team_name} incomplete: {e}")

    return {
        'status': status,
        'teamName': config.team_name,
        'taskResults': task_results,
        'duration': round(time.monotonic() - started, 3),
        'workerCount': config.worker_count,
    }


def main() -> int:
    """Read the config from stdin, run the team and print the result line."""
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )

    try:
        data = json.loads(sys.stdin.read())
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON on stdin: {e}")
        return 1
    if not isinstance(data, dict):
        logger.error("Team config on stdin must be a JSON object")
        return 1

    try:
        config = TeamConfig.from_dict(data)
    except InvalidTeamConfigError as e:
        logger.error(str(e))
        return 1

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.warning(f"Received signal {signum}")
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    job_id = os.environ.get(JOB_ID_ENV_VAR)
    result = run_team(config, settings, job_id=job_id, stop_event=stop_event)
    if job_id and JOB_ID_PATTERN.match(job_id):
        report_result(settings.jobs_dir, job_id, result)

    sys.stdout.write(json.dumps(result) + '\n')
    sys.stdout.flush()
    return 0 if result['status'] == 'completed' else 1


if __name__ == '__main__':
    sys.exit(main())
