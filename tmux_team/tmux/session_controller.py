"""
Tmux Session Controller Module

Creates and destroys the panes a team runs in, launches worker processes in
them and answers liveness questions. Panes are always addressed by their
stable pane id (%N), never by index, since indices shift as panes come and go.
"""

import logging
import os
import re
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .pane_state import PaneState, classify_pane, patterns_for
from ..core.team_state import now_iso
from ..exceptions import TmuxCommandError, TmuxSessionRequiredError, TmuxUnavailableError
from ..utils.file_utils import FileUtils

logger = logging.getLogger(__name__)

TMUX_SESSION_PREFIX = 'tmux-team'
MAX_NAME_LENGTH = 50
TMUX_TIMEOUT_SECONDS = 5
CAPTURE_LINES = 80


def sanitize_name(name: str) -> str:
    """
    Restrict a name to alphanumerics and hyphens for use in tmux targets.

    Raises:
        ValueError: if nothing usable remains, or fewer than 2 characters
    """
    sanitized = re.sub(r'[^a-zA-Z0-9-]', '', name)
    if not sanitized:
        raise ValueError(f'Invalid name: "{name}" contains no valid characters (alphanumeric or hyphen)')
    if len(sanitized) < 2:
        raise ValueError(f'Invalid name: "{name}" too short after sanitization (minimum 2 characters)')
    return sanitized[:MAX_NAME_LENGTH]


def session_name(team_name: str, worker_name: str) -> str:
    """Build "tmux-team-{team}-{worker}" from sanitized parts."""
    return f"{TMUX_SESSION_PREFIX}-{sanitize_name(team_name)}-{sanitize_name(worker_name)}"


@dataclass
class TeamSession:
    """Where a team lives inside tmux."""
    session_name: str  # "session:window" when split into a user-owned window
    leader_pane_id: str
    worker_pane_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sessionName': self.session_name,
            'leaderPaneId': self.leader_pane_id,
            'workerPaneIds': list(self.worker_pane_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional['TeamSession']:
        """Rebuild from a session record; None when the record is unusable."""
        if not isinstance(data, dict):
            return None
        name = data.get('sessionName')
        leader = data.get('leaderPaneId')
        workers = data.get('workerPaneIds')
        if not name or not leader or not isinstance(workers, list):
            return None
        return cls(session_name=str(name), leader_pane_id=str(leader),
                   worker_pane_ids=[str(p) for p in workers])


class TmuxSessionController:
    """
    Controls the tmux panes of a team.

    Provides functionality for:
    - Split-pane topology creation inside the current tmux window
    - Worker process launch with an environment prefix
    - Pane capture, liveness and state classification
    - Graceful-then-forced pane shutdown that never touches the leader pane
    - Session teardown that respects user-owned sessions
    """

    def __init__(self, pane_patterns: Optional[Dict[str, Dict[str, List[str]]]] = None):
        """
        Initialize tmux session controller.

        Args:
            pane_patterns: Per agent type overrides for the pane classifier
        """
        self.pane_patterns = pane_patterns or {}

    def run_tmux(self, args: List[str], timeout: float = TMUX_TIMEOUT_SECONDS) -> str:
        """
        Run one tmux command.

        Returns:
            str: stdout

        Raises:
            TmuxCommandError: on missing binary, timeout or non-zero exit
        """
        logger.debug(f"tmux {' '.join(args)}")
        try:
            result = subprocess.run(['tmux'] + args, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError:
            raise TmuxCommandError(args, None, 'tmux not found')
        except subprocess.TimeoutExpired:
            raise TmuxCommandError(args, None, f'timed out after {timeout}s')

        if result.returncode != 0:
            raise TmuxCommandError(args, result.returncode, result.stderr or '')
        return result.stdout

    def validate_tmux(self) -> None:
        """Verify that tmux is available and working."""
        try:
            version = self.run_tmux(['-V']).strip()
            logger.debug(f"Tmux available: {version}")
        except TmuxCommandError:
            raise TmuxUnavailableError(
                'tmux is not available. Install it:\n'
                '  macOS: brew install tmux\n'
                '  Ubuntu/Debian: sudo apt-get install tmux\n'
                '  Fedora: sudo dnf install tmux\n'
                '  Arch: sudo pacman -S tmux'
            )

    def create_topology(self, worker_count: int, cwd: Path) -> TeamSession:
        """
        Split the current tmux window into a leader pane and worker panes.

        The first worker pane is split horizontally off the leader, the rest
        are stacked vertically off the previous worker pane, then the window
        gets a main-vertical layout with the leader at half width.

        Args:
            worker_count: Number of worker panes to create
            cwd: Working directory for the new panes

        Returns:
            TeamSession with session_name in "session:window" form

        Raises:
            TmuxSessionRequiredError: when not running inside tmux
            TmuxCommandError: when the current window cannot be determined
        """
        if not os.environ.get('TMUX'):
            raise TmuxSessionRequiredError('Team mode requires running inside tmux. Start one: tmux new-session')

        context = self.run_tmux(['display-message', '-p', '#S:#I #{pane_id}']).strip()
        team_target, _, leader_pane_id = context.partition(' ')
        bare_session = team_target.split(':')[0]

        worker_pane_ids: List[str] = []
        for i in range(worker_count):
            split_target = leader_pane_id if i == 0 else worker_pane_ids[-1]
            split_type = '-h' if i == 0 else '-v'
            try:
                output = self.run_tmux([
                    'split-window', split_type, '-t', split_target,
                    '-d', '-P', '-F', '#{pane_id}', '-c', str(cwd),
                ])
            except TmuxCommandError as e:
                logger.error(f"Failed to create worker pane {i + 1}: {e}")
                continue
            pane_id = output.split('\n')[0].strip()
            if pane_id:
                worker_pane_ids.append(pane_id)

        self._balance_layout(team_target)

        try:
            self.run_tmux(['set-option', '-t', bare_session, 'mouse', 'on'])
        except TmuxCommandError:
            pass
        try:
            self.run_tmux(['select-pane', '-t', leader_pane_id])
        except TmuxCommandError:
            pass
        time.sleep(0.3)

        logger.info(f"Created {len(worker_pane_ids)} worker panes in {team_target} (leader {leader_pane_id})")
        return TeamSession(session_name=team_target, leader_pane_id=leader_pane_id,
                           worker_pane_ids=worker_pane_ids)

    def _balance_layout(self, target: str) -> None:
        # Layout fails with a single pane; sizing errors are cosmetic
        try:
            self.run_tmux(['select-layout', '-t', target, 'main-vertical'])
        except TmuxCommandError:
            pass
        try:
            width = int(self.run_tmux(['display-message', '-p', '-t', target, '#{window_width}']).strip())
            if width >= 40:
                self.run_tmux(['set-window-option', '-t', target, 'main-pane-width', str(width // 2)])
                self.run_tmux(['select-layout', '-t', target, 'main-vertical'])
        except (TmuxCommandError, ValueError):
            pass

    def spawn_worker(self, pane_id: str, launch_cmd: str, env_vars: Dict[str, str], cwd: Path) -> bool:
        """
        Start a worker CLI in a pane.

        The command is typed as literal keystrokes (send-keys -l) so tmux
        never interprets parts of it as key names.

        Returns:
            bool: True if the keystrokes were delivered
        """
        env_string = ' '.join(f"{k}={shlex.quote(v)}" for k, v in env_vars.items())
        shell = os.environ.get('SHELL') or '/bin/bash'
        shell_name = os.path.basename(shell) or 'bash'
        home = os.environ.get('HOME')
        source_cmd = ''
        if home:
            rc_file = shlex.quote(os.path.join(home, f'.{shell_name}rc'))
            source_cmd = f'[ -f {rc_file} ] && . {rc_file}; '
        inner = f'cd {shlex.quote(str(cwd))} && {source_cmd}exec {launch_cmd}'
        start_cmd = f'env {env_string} {shell} -c {shlex.quote(inner)}'

        try:
            self.run_tmux(['send-keys', '-t', pane_id, '-l', start_cmd])
            self.run_tmux(['send-keys', '-t', pane_id, 'Enter'])
            return True
        except TmuxCommandError as e:
            logger.error(f"Failed to spawn worker in {pane_id}: {e}")
            return False

    def send_key(self, pane_id: str, key: str) -> None:
        """Send one named key (C-m, Tab, C-c). Raises TmuxCommandError."""
        self.run_tmux(['send-keys', '-t', pane_id, key])

    def send_literal(self, pane_id: str, text: str) -> None:
        """Type text literally. Raises TmuxCommandError."""
        self.run_tmux(['send-keys', '-t', pane_id, '-l', '--', text])

    def capture_pane(self, pane_id: str, lines: int = CAPTURE_LINES) -> str:
        """
        Capture the last lines of a pane.

        Returns:
            str: Captured content, empty on failure
        """
        try:
            return self.run_tmux(['capture-pane', '-t', pane_id, '-p', '-S', f'-{lines}'])
        except TmuxCommandError as e:
            logger.debug(f"Failed to capture pane {pane_id}: {e}")
            return ''

    def is_alive(self, pane_id: str) -> bool:
        """True while the pane exists and its process has not exited."""
        try:
            return self.run_tmux(['display-message', '-t', pane_id, '-p', '#{pane_dead}']).strip() == '0'
        except TmuxCommandError:
            return False

    def pane_state(self, pane_id: str, agent_type: Optional[str] = None) -> PaneState:
        alive = self.is_alive(pane_id)
        captured = self.capture_pane(pane_id) if alive else ''
        return classify_pane(captured, alive, patterns_for(agent_type, self.pane_patterns))

    def list_panes(self, target: str) -> List[str]:
        try:
            output = self.run_tmux(['list-panes', '-t', target, '-F', '#{pane_id}'])
        except TmuxCommandError:
            return []
        return [line.strip() for line in output.split('\n') if line.strip()]

    def kill_panes(self, pane_ids: List[str], leader_pane_id: Optional[str] = None,
                   shutdown_path: Optional[Path] = None, grace_ms: int = 10000) -> int:
        """
        Graceful-then-forced kill of worker panes.

        Writes the shutdown marker (if its directory still exists), waits the
        grace period so workers can exit on their own, then kills every pane
        that is not the leader.

        Args:
            pane_ids: Panes to kill
            leader_pane_id: Pane that must never be killed
            shutdown_path: Marker file workers watch for
            grace_ms: Grace period in milliseconds

        Returns:
            int: Number of kill-pane calls that succeeded
        """
        if not pane_ids:
            return 0

        if shutdown_path is not None and Path(shutdown_path).parent.is_dir():
            if FileUtils.try_write_json(Path(shutdown_path), {'requestedAt': now_iso()}) and grace_ms > 0:
                time.sleep(grace_ms / 1000)

        killed = 0
        for pane_id in pane_ids:
            if pane_id == leader_pane_id:
                continue
            try:
                self.run_tmux(['kill-pane', '-t', pane_id])
                killed += 1
            except TmuxCommandError:
                logger.debug(f"Pane {pane_id} already gone")
        return killed

    def teardown(self, session: str, worker_pane_ids: Optional[List[str]] = None,
                 leader_pane_id: Optional[str] = None) -> None:
        """
        Kill the team's tmux footprint.

        A "session:window" handle means the team was split into a window the
        user owns: only worker panes are killed, never the session and never
        the leader pane. A bare session name belongs to the team and is killed
        outright.
        """
        if ':' in session:
            for pane_id in worker_pane_ids or []:
                if pane_id == leader_pane_id:
                    continue
                try:
                    self.run_tmux(['kill-pane', '-t', pane_id])
                except TmuxCommandError:
                    pass
            return

        try:
            self.run_tmux(['kill-session', '-t', session])
            logger.info(f"Killed session {session}")
        except TmuxCommandError:
            logger.debug(f"Session {session} already gone")
