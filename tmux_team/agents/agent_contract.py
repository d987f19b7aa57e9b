"""
Agent Contract Module

Describes how each supported worker CLI is launched and how its output is
read back. The set of worker kinds is closed; anything else is a caller error.
"""

import json
import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..exceptions import UnknownAgentTypeError, AgentCliUnavailableError

logger = logging.getLogger(__name__)


def _parse_plain(raw_output: str) -> str:
    return raw_output.strip()


def _parse_jsonl_last_message(raw_output: str) -> str:
    """
    Scan line-delimited JSON from the end for the last assistant message or
    result record. Falls back to the trimmed raw text.
    """
    lines = [line for line in raw_output.strip().split('\n') if line]
    for line in reversed(lines):
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(parsed, dict):
            continue
        if parsed.get('type') == 'message' and parsed.get('role') == 'assistant':
            content = parsed.get('content')
            return content if content is not None else raw_output
        if parsed.get('type') == 'result' or parsed.get('output'):
            value = parsed.get('output') or parsed.get('result')
            return value if value is not None else raw_output
    return raw_output.strip()


@dataclass
class AgentContract:
    """Launch and output rules for one worker CLI."""
    agent_type: str
    binary: str
    install_instructions: str
    auto_approve_flags: List[str]
    parse_output: Callable[[str], str] = _parse_plain
    model_flag: str = '--model'
    extra_flags: List[str] = field(default_factory=list)

    def build_launch_args(self, model: Optional[str] = None,
                          extra_flags: Optional[List[str]] = None) -> List[str]:
        args = list(self.auto_approve_flags)
        if model:
            args.extend([self.model_flag, model])
        return args + list(self.extra_flags) + list(extra_flags or [])


CONTRACTS: Dict[str, AgentContract] = {
    'claude': AgentContract(
        agent_type='claude',
        binary='claude',
        install_instructions='Install Claude CLI: https://claude.ai/download',
        auto_approve_flags=['--dangerously-skip-permissions'],
    ),
    'codex': AgentContract(
        agent_type='codex',
        binary='codex',
        install_instructions='Install Codex CLI: npm install -g @openai/codex',
        auto_approve_flags=['--full-auto'],
        parse_output=_parse_jsonl_last_message,
    ),
    'gemini': AgentContract(
        agent_type='gemini',
        binary='gemini',
        install_instructions='Install Gemini CLI: npm install -g @google/gemini-cli',
        auto_approve_flags=['--yolo'],
    ),
}


def get_contract(agent_type: str) -> AgentContract:
    """
    Look up the contract for a worker kind.

    Raises:
        UnknownAgentTypeError: for kinds outside CONTRACTS
    """
    contract = CONTRACTS.get(agent_type)
    if contract is None:
        raise UnknownAgentTypeError(
            f"Unknown agent type: {agent_type}. Supported: {', '.join(CONTRACTS)}"
        )
    return contract


def is_cli_available(agent_type: str) -> bool:
    """Run `<binary> --version` and report whether it succeeded."""
    contract = get_contract(agent_type)
    try:
        result = subprocess.run([contract.binary, '--version'],
                                capture_output=True, timeout=5)
        return result.returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        return False


def validate_cli_available(agent_type: str) -> None:
    if not is_cli_available(agent_type):
        contract = get_contract(agent_type)
        raise AgentCliUnavailableError(
            f"CLI agent '{agent_type}' not found. {contract.install_instructions}"
        )


def build_worker_command(agent_type: str, model: Optional[str] = None,
                         extra_flags: Optional[List[str]] = None) -> str:
    """Shell command line that launches the worker CLI."""
    contract = get_contract(agent_type)
    args = contract.build_launch_args(model, extra_flags)
    return ' '.join([contract.binary] + [shlex.quote(a) for a in args])


def get_worker_env(team_name: str, worker_name: str, agent_type: str) -> Dict[str, str]:
    """Environment that lets a worker identify itself without parsing arguments."""
    return {
        'TMUX_TEAM_WORKER': f"{team_name}/{worker_name}",
        'TMUX_TEAM_NAME': team_name,
        'TMUX_TEAM_AGENT_TYPE': agent_type,
    }


def parse_cli_output(agent_type: str, raw_output: str) -> str:
    return get_contract(agent_type).parse_output(raw_output)
