"""
Team Runtime Module

Wires the ledger, mailbox, tmux supervisor, completion watchdog and health
monitor into one running team: start, monitor, assign, shutdown and resume.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional

from .mailbox import Mailbox, OUTBOX
from .task_ledger import TaskLedger
from .team_state import TeamConfig, TeamPaths, now_iso, TASK_COMPLETED
from ..agents.agent_contract import build_worker_command, get_contract, get_worker_env, validate_cli_available
from ..agents.worker_bootstrap import (
    initial_task_message, task_assignment_message, welcome_message, write_worker_overlay,
)
from ..monitoring.completion_watchdog import CompletionEvent, CompletionWatchdog
from ..monitoring.health_monitor import HealthMonitor, TeamSnapshot
from ..tmux.messaging import TmuxMessenger
from ..tmux.session_controller import TeamSession, TmuxSessionController
from ..utils.config_loader import Settings
from ..utils.file_utils import FileUtils
from ..exceptions import InvalidTeamConfigError

logger = logging.getLogger(__name__)

ACK_POLL_SECONDS = 0.5


class TeamRuntime:
    """
    One running team.

    Coordinates between subsystems:
    - Task ledger and worker mailboxes on disk
    - Tmux topology, worker launch and message delivery
    - Completion watchdog feeding the ledger and the leader pane
    - Health snapshots for phase transitions
    """

    def __init__(self,
                 config: TeamConfig,
                 settings: Optional[Settings] = None,
                 controller: Optional[TmuxSessionController] = None,
                 messenger: Optional[TmuxMessenger] = None,
                 ledger: Optional[TaskLedger] = None,
                 mailbox: Optional[Mailbox] = None):
        """
        Initialize runtime with dependency injection.

        Args:
            config: Team description
            settings: Runtime settings, defaults when omitted
            controller: Tmux session controller
            messenger: Pane messenger built on the controller
            ledger: Task ledger for the team's state directory
            mailbox: Inbox/outbox channel for the team's workers
        """
        self.config = config
        self.settings = settings or Settings()
        self.paths = TeamPaths(Path(config.cwd), config.team_name)

        self.controller = controller or TmuxSessionController(self.settings.pane_patterns)
        self.messenger = messenger or TmuxMessenger(self.controller, self.settings.message_max_chars)
        self.ledger = ledger or TaskLedger(self.paths)
        self.mailbox = mailbox or Mailbox(self.paths)
        self.health_monitor = HealthMonitor(
            self.paths, self.ledger, self.controller,
            config.worker_names, self.settings.stall_threshold_s,
        )

        self.session: Optional[TeamSession] = None
        self.task_ids: List[str] = []
        self.watchdog: Optional[CompletionWatchdog] = None
        self._stop_watchdog: Optional[Callable[[], None]] = None

    @property
    def worker_names(self) -> List[str]:
        return self.config.worker_names

    @property
    def worker_pane_ids(self) -> List[str]:
        return list(self.session.worker_pane_ids) if self.session else []

    @property
    def leader_pane_id(self) -> Optional[str]:
        return self.session.leader_pane_id if self.session else None

    def start(self) -> TeamSession:
        """
        Start the team.

        1. Check every worker CLI is installed and tmux works
        2. Write config, tasks, protocol overlays and welcome inbox messages
        3. Split panes and launch workers
        4. Deliver each worker its initial task (parallel, joined)
        5. Start the completion watchdog

        Returns:
            TeamSession

        Raises:
            UnknownAgentTypeError, AgentCliUnavailableError,
            TmuxUnavailableError, TmuxSessionRequiredError
        """
        for agent_type in dict.fromkeys(self.config.agent_types):
            get_contract(agent_type)
            validate_cli_available(agent_type)
        self.controller.validate_tmux()

        self.paths.ensure(self.worker_names)
        FileUtils.write_json(self.paths.config_path, self.config.to_dict())

        self.task_ids = []
        for task in self.config.tasks:
            record = self.ledger.create_task(
                task['subject'], task.get('description', ''), task.get('blockedBy'),
            )
            self.task_ids.append(record.id)
        task_list = [{'id': tid, 'subject': t['subject']} for tid, t in zip(self.task_ids, self.config.tasks)]

        for i, name in enumerate(self.worker_names):
            write_worker_overlay(self.paths, name, self.config.agent_type_for(i), task_list)
            self.mailbox.append(name, welcome_message(self.paths, name))

        self.session = self.controller.create_topology(self.config.worker_count, self.paths.cwd)
        FileUtils.write_json(self.paths.session_path, self.session.to_dict())
        if len(self.session.worker_pane_ids) < self.config.worker_count:
            logger.warning(f"Only {len(self.session.worker_pane_ids)} of "
                           f"{self.config.worker_count} worker panes were created")

        for i, pane_id in enumerate(self.session.worker_pane_ids):
            name = self.worker_names[i]
            agent_type = self.config.agent_type_for(i)
            self.controller.spawn_worker(
                pane_id,
                build_worker_command(agent_type, self.config.model),
                get_worker_env(self.config.team_name, name, agent_type),
                self.paths.cwd,
            )

        pane_count = len(self.session.worker_pane_ids)
        if pane_count:
            with ThreadPoolExecutor(max_workers=pane_count, thread_name_prefix='worker-bootstrap') as executor:
                list(executor.map(self._bootstrap_worker, range(pane_count)))

        self._start_watchdog()

        logger.info(f"Team {self.config.team_name} started with {pane_count} workers "
                    f"and {len(self.task_ids)} tasks")
        return self.session

    def _start_watchdog(self) -> None:
        self.watchdog = CompletionWatchdog(self.paths, self.worker_names, self._on_completion)
        self._stop_watchdog = self.watchdog.start(self.settings.watchdog_interval_ms)

    def _bootstrap_worker(self, index: int) -> None:
        name = self.worker_names[index]
        pane_id = self.session.worker_pane_ids[index]
        agent_type = self.config.agent_type_for(index)

        time.sleep(self.settings.startup_delay_s)

        if agent_type == 'gemini':
            # Accept gemini's first-run trust dialog
            self.messenger.send_text(pane_id, '1', agent_type)
            time.sleep(0.8)

        if not self.task_ids:
            return
        task_index = index if index < len(self.task_ids) else 0
        task = self.config.tasks[task_index]
        task_id = self.task_ids[task_index]
        self.mailbox.append(name, initial_task_message(
            self.paths, name, task_id, task['subject'], task.get('description', ''),
        ))

        inbox = self.paths.relative(self.paths.inbox_path(name))
        self.messenger.send_text(pane_id, f"Read and execute your task from: {inbox}", agent_type)

    def _on_completion(self, event: CompletionEvent) -> None:
        if self.leader_pane_id:
            self.messenger.inject_to_leader(
                self.leader_pane_id, f"[{event.worker_name} {event.status}] {event.summary}",
            )

        task = self.ledger.read_task(event.task_id)
        if task is not None and task.status != TASK_COMPLETED:
            self.ledger.complete_task(event.task_id, event.status, event.summary)

    def monitor(self) -> TeamSnapshot:
        """
        Take a health snapshot and drain worker outboxes.

        Returns:
            TeamSnapshot
        """
        for name in self.worker_names:
            for message in self.mailbox.read_new(name, OUTBOX):
                logger.info(f"[{name}] {message.get('type', 'message')}: {message.get('content', '')}")
            self.mailbox.rotate_if_exceeds(name, self.settings.outbox_max_lines, OUTBOX)
        return self.health_monitor.snapshot(self.worker_pane_ids)

    def assign_task(self, task_id: str, worker: str) -> bool:
        """
        Hand a task to a specific worker.

        Returns:
            bool: False when the task is missing or owned by another worker
        """
        if self.ledger.claim_task(task_id, worker) is None:
            logger.warning(f"Could not assign task {task_id} to {worker}")
            return False

        self.ledger.update_task(task_id, assignedAt=now_iso())
        self.mailbox.append(worker, task_assignment_message(self.paths, task_id))

        index = self.worker_names.index(worker) if worker in self.worker_names else -1
        if 0 <= index < len(self.worker_pane_ids):
            self.messenger.send_text(self.worker_pane_ids[index], f"new-task:{task_id}",
                                     self.config.agent_type_for(index))
        logger.info(f"Assigned task {task_id} to {worker}")
        return True

    def collect_results(self):
        return self.ledger.collect_results()

    def stop_watchdog(self) -> None:
        if self._stop_watchdog is not None:
            self._stop_watchdog()
            self._stop_watchdog = None

    def shutdown(self, timeout_ms: int = 30000) -> None:
        """
        Shut the team down.

        Writes shutdown.json, waits up to timeout_ms for every worker's
        acknowledgement, tears down the panes and removes the state directory.
        """
        self.stop_watchdog()

        if self.paths.root.is_dir():
            FileUtils.try_write_json(self.paths.shutdown_path, {
                'requestedAt': now_iso(),
                'teamName': self.config.team_name,
            })

        expected = list(self.worker_names)
        deadline = time.monotonic() + timeout_ms / 1000
        while expected and time.monotonic() < deadline:
            expected = [w for w in expected if not self.paths.shutdown_ack_path(w).exists()]
            if expected:
                time.sleep(ACK_POLL_SECONDS)
        if expected:
            logger.info(f"No shutdown acknowledgement from: {', '.join(expected)}")

        if self.session is not None:
            self.controller.teardown(self.session.session_name, self.session.worker_pane_ids,
                                     self.session.leader_pane_id)

        FileUtils.remove_tree(self.paths.root)
        logger.info(f"Team {self.config.team_name} shut down")

    @classmethod
    def resume(cls, team_name: str, cwd: Path, settings: Optional[Settings] = None,
               controller: Optional[TmuxSessionController] = None) -> Optional['TeamRuntime']:
        """
        Rebuild a runtime from persisted config and the session record
        written at start.

        The recorded tmux target must still answer and at least one recorded
        worker pane must still be alive. Worker panes keep their recorded
        order so they stay aligned with worker names.

        Returns:
            TeamRuntime with its watchdog running, or None when the config,
            the session record or every worker pane is gone
        """
        paths = TeamPaths(Path(cwd), team_name)
        data = FileUtils.read_json(paths.config_path)
        if not isinstance(data, dict):
            return None
        try:
            config = TeamConfig.from_dict(data)
        except InvalidTeamConfigError as e:
            logger.warning(f"Cannot resume {team_name}: {e}")
            return None

        session = TeamSession.from_dict(FileUtils.read_json(paths.session_path))
        if session is None:
            logger.info(f"No session record for {team_name}")
            return None

        controller = controller or TmuxSessionController((settings or Settings()).pane_patterns)
        if not controller.list_panes(session.session_name):
            logger.info(f"Tmux target {session.session_name} for {team_name} is gone")
            return None
        if not any(controller.is_alive(p) for p in session.worker_pane_ids):
            logger.info(f"No live worker panes left for {team_name}")
            return None

        runtime = cls(config, settings=settings, controller=controller)
        runtime.session = session
        runtime.task_ids = runtime.ledger.list_task_ids()
        runtime._start_watchdog()
        logger.info(f"Resumed team {team_name} in {session.session_name}")
        return runtime
