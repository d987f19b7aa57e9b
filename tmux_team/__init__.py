"""
tmux-team - Teams of CLI Coding Agents in tmux Panes

Runs a small fleet of autonomous worker CLIs (claude, codex, gemini) in split
panes of the current tmux window. Coordination happens only through files
under the team state directory and text typed into panes.

This package provides:
- Task ledger with blocked-by resolution and single-owner claiming
- Per-worker JSONL inbox/outbox with byte-offset cursors
- Pane topology, worker launch, pane state detection and message delivery
- Completion watchdog and team health snapshots
- Background job lifecycle (start, status, wait, cleanup)

Version: 1.0.0
"""

__version__ = "1.0.0"
__description__ = "Run teams of CLI coding agents in tmux panes"

from .core.task_ledger import TaskLedger
from .core.mailbox import Mailbox
from .core.team_state import TaskRecord, TeamConfig, TeamPaths
from .core.runtime import TeamRuntime
from .core.job_manager import Job, JobManager, JobRegistry

# Infrastructure modules
from .tmux.session_controller import TeamSession, TmuxSessionController
from .tmux.messaging import TmuxMessenger
from .tmux.pane_state import PaneState, PanePatterns, classify_pane

# Monitoring modules
from .monitoring.completion_watchdog import CompletionEvent, CompletionWatchdog
from .monitoring.health_monitor import HealthMonitor, TeamPhase, TeamSnapshot

# Support modules
from .utils.file_utils import FileUtils
from .utils.system_utils import SystemUtils
from .utils.config_loader import ConfigLoader, Settings

from .exceptions import TeamError

__all__ = [
    # Core classes
    'TaskLedger', 'Mailbox',
    'TaskRecord', 'TeamConfig', 'TeamPaths',
    'TeamRuntime',
    'Job', 'JobManager', 'JobRegistry',

    # Infrastructure
    'TeamSession', 'TmuxSessionController',
    'TmuxMessenger',
    'PaneState', 'PanePatterns', 'classify_pane',

    # Monitoring
    'CompletionEvent', 'CompletionWatchdog',
    'HealthMonitor', 'TeamPhase', 'TeamSnapshot',

    # Support modules
    'FileUtils',
    'SystemUtils',
    'ConfigLoader', 'Settings',
    'TeamError',

    # Package metadata
    '__version__',
    '__description__',
]


def get_version():
    """Get the current version of tmux-team."""
    return __version__
