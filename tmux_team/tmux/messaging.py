"""
Tmux Messaging Module

Delivers short text messages into worker and leader panes. Worker CLIs are
full-screen TUIs that sometimes swallow Enter, show a trust dialog on startup
or are busy mid-generation, so delivery types the text literally and then
retries submission until the text has left the input line.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from .pane_state import PaneState, capture_contains_text, has_trust_prompt, is_busy, patterns_for
from .session_controller import TmuxSessionController
from ..exceptions import TmuxCommandError

logger = logging.getLogger(__name__)

LEADER_PREFIX = '[TMUX_TEAM]'
MAX_MESSAGE_CHARS = 200
SUBMIT_ROUNDS = 6


class TmuxMessenger:
    """
    Sends messages to panes with reliable submission.

    Features:
    - Trust dialog dismissal before typing
    - Literal typing so message text is never read as key names
    - Bounded submit retries with on-screen verification
    - Leader injection that interrupts a busy leader first
    - In-memory history of recent deliveries
    """

    def __init__(self, controller: TmuxSessionController, max_chars: int = MAX_MESSAGE_CHARS):
        """
        Initialize tmux messenger.

        Args:
            controller: Session controller used for all tmux calls
            max_chars: Messages longer than this are truncated
        """
        self.controller = controller
        self.max_chars = max_chars
        self.message_history: List[Dict[str, Any]] = []

    def send_text(self, pane_id: str, message: str, agent_type: Optional[str] = None) -> bool:
        """
        Type a message into a pane and submit it.

        Delivery is fail-open: when the text is still visible after every
        submit round the message is assumed delivered anyway.

        Args:
            pane_id: Target pane id (%N)
            message: Text to send
            agent_type: Worker kind, selects the pane heuristics

        Returns:
            bool: False only when tmux itself failed (missing binary, pane gone)
        """
        if len(message) > self.max_chars:
            logger.warning(f"Message to {pane_id} truncated from {len(message)} to {self.max_chars} chars")
            message = message[:self.max_chars]

        patterns = patterns_for(agent_type, self.controller.pane_patterns)
        try:
            initial = self.controller.capture_pane(pane_id)
            if has_trust_prompt(initial, patterns):
                logger.info(f"Dismissing trust prompt in {pane_id}")
                self.controller.send_key(pane_id, 'C-m')
                time.sleep(0.12)
                self.controller.send_key(pane_id, 'C-m')
                time.sleep(0.2)

            self.controller.send_literal(pane_id, message)
            time.sleep(0.15)

            busy = is_busy(initial, patterns)
            for round_index in range(SUBMIT_ROUNDS):
                time.sleep(0.1)
                if round_index == 0 and busy:
                    # Tab queues the input while the CLI is still generating
                    self.controller.send_key(pane_id, 'Tab')
                    time.sleep(0.08)
                    self.controller.send_key(pane_id, 'C-m')
                else:
                    self.controller.send_key(pane_id, 'C-m')
                    time.sleep(0.2)
                    self.controller.send_key(pane_id, 'C-m')
                time.sleep(0.14)

                if not capture_contains_text(self.controller.capture_pane(pane_id), message):
                    self._log_message(pane_id, message, success=True)
                    return True
                time.sleep(0.14)

            logger.debug(f"Text still visible in {pane_id} after {SUBMIT_ROUNDS} rounds, submitting once more")
            self.controller.send_key(pane_id, 'C-m')
            time.sleep(0.12)
            self.controller.send_key(pane_id, 'C-m')
            self._log_message(pane_id, message, success=True)
            return True

        except TmuxCommandError as e:
            logger.warning(f"Failed to send message to {pane_id}: {e}")
            self._log_message(pane_id, message, success=False, error=str(e))
            return False

    def inject_to_leader(self, leader_pane_id: str, message: str) -> bool:
        """
        Send a prefixed notice to the leader pane.

        A busy leader is interrupted with C-c first so the notice is not
        queued behind a long generation.
        """
        text = f"{LEADER_PREFIX} {message}"[:self.max_chars]

        if self.controller.pane_state(leader_pane_id) == PaneState.BUSY:
            try:
                self.controller.send_key(leader_pane_id, 'C-c')
                time.sleep(0.25)
            except TmuxCommandError as e:
                logger.debug(f"Could not interrupt leader {leader_pane_id}: {e}")

        return self.send_text(leader_pane_id, text)

    def get_message_history(self, target: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """
        Get message history.

        Args:
            target: Optional pane id to filter by
            limit: Maximum number of messages to return

        Returns:
            List of message dictionaries
        """
        messages = self.message_history
        if target:
            messages = [msg for msg in messages if msg['target'] == target]
        return messages[-limit:]

    def _log_message(self, target: str, message: str, success: bool, error: Optional[str] = None) -> None:
        self.message_history.append({
            'timestamp': time.time(),
            'target': target,
            'message': message[:100] + ('...' if len(message) > 100 else ''),
            'success': success,
            'error': error,
        })
        if len(self.message_history) > 1000:
            self.message_history = self.message_history[-500:]
