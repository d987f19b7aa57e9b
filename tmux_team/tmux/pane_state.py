"""
Pane State Module

Infers what a worker pane is doing from its captured screen text. All of the
screen-scraping heuristics live here; the messaging protocol only consumes
the resulting PaneState.

The patterns track wording in third-party CLI UIs, so they are configuration
per worker kind rather than constants. Override them through the
``pane_patterns`` settings key.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

TRUST_TAIL_LINES = 12
BUSY_TAIL_LINES = 40


class PaneState(Enum):
    """Closed set of states a worker pane can be in."""
    IDLE = "idle"
    BUSY = "busy"
    PROMPTED = "prompted"
    DEAD = "dead"


@dataclass
class PanePatterns:
    """Case-insensitive regular expressions for one worker kind."""
    busy: List[str] = field(default_factory=lambda: [
        r'esc to interrupt',
        r'\bbackground terminal running\b',
    ])
    trust_question: List[str] = field(default_factory=lambda: [
        r'Do you trust the contents of this directory\?',
    ])
    trust_choices: List[str] = field(default_factory=lambda: [
        r'Yes,\s*continue',
        r'No,\s*quit',
        r'Press enter to continue',
    ])

    @classmethod
    def from_dict(cls, data: Dict[str, List[str]]) -> 'PanePatterns':
        defaults = cls()
        return cls(
            busy=list(data.get('busy', defaults.busy)),
            trust_question=list(data.get('trust_question', defaults.trust_question)),
            trust_choices=list(data.get('trust_choices', defaults.trust_choices)),
        )


DEFAULT_PATTERNS = PanePatterns()


def patterns_for(agent_type: Optional[str],
                 overrides: Optional[Dict[str, Dict[str, List[str]]]] = None) -> PanePatterns:
    """
    Resolve the patterns for a worker kind.

    Lookup order: overrides[agent_type], overrides['default'], built-in defaults.
    """
    overrides = overrides or {}
    if agent_type and agent_type in overrides:
        return PanePatterns.from_dict(overrides[agent_type])
    if 'default' in overrides:
        return PanePatterns.from_dict(overrides['default'])
    return DEFAULT_PATTERNS


def _tail(captured: str, count: int) -> List[str]:
    lines = [line.replace('\r', '').strip() for line in captured.split('\n')]
    return [line for line in lines if line][-count:]


def _any_match(patterns: List[str], lines: List[str]) -> bool:
    return any(re.search(p, line, re.IGNORECASE) for p in patterns for line in lines)


def has_trust_prompt(captured: str, patterns: PanePatterns = DEFAULT_PATTERNS) -> bool:
    """A trust dialog needs both its question and a choice line on screen."""
    tail = _tail(captured, TRUST_TAIL_LINES)
    return _any_match(patterns.trust_question, tail) and _any_match(patterns.trust_choices, tail)


def is_busy(captured: str, patterns: PanePatterns = DEFAULT_PATTERNS) -> bool:
    return _any_match(patterns.busy, _tail(captured, BUSY_TAIL_LINES))


def classify_pane(captured: str, alive: bool = True,
                  patterns: PanePatterns = DEFAULT_PATTERNS) -> PaneState:
    """
    Classify a pane from its captured text.

    Args:
        captured: Output of capture-pane
        alive: Whether the pane's process is still running
        patterns: Heuristics for the pane's worker kind

    Returns:
        PaneState
    """
    if not alive:
        return PaneState.DEAD
    if has_trust_prompt(captured, patterns):
        return PaneState.PROMPTED
    if is_busy(captured, patterns):
        return PaneState.BUSY
    return PaneState.IDLE


def normalize_capture(value: str) -> str:
    """Collapse whitespace so wrapped lines compare equal to the sent text."""
    return re.sub(r'\s+', ' ', value.replace('\r', '')).strip()


def capture_contains_text(captured: str, text: str) -> bool:
    return normalize_capture(text) in normalize_capture(captured)
