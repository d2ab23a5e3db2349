from __future__ import annotations

from typing import Dict, List, Optional

# Client-side lifecycle of one generation call
CLIENT_TRANSITIONS: Dict[str, List[str]] = {
    "idle": ["connecting", "failed"],
    "connecting": ["streaming", "completed", "interrupted", "failed"],
    "streaming": ["completed", "interrupted", "failed"],
    "interrupted": ["retrying", "failed"],
    "retrying": ["connecting", "failed"],
    "completed": [],
    "failed": [],
}

TERMINAL_STATES = frozenset({"completed", "failed"})


def is_valid_transition(current: str, target: str) -> bool:
    return target in CLIENT_TRANSITIONS.get(current, [])


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES


class InvalidTransition(RuntimeError):
    pass


class ClientState:
    """Tracks the current state and the path taken to reach it."""

    def __init__(self, initial: str = "idle") -> None:
        self.current = initial
        self.history: List[str] = [initial]

    def advance(self, target: str) -> str:
        if not is_valid_transition(self.current, target):
            raise InvalidTransition(f"{self.current} -> {target}")
        self.current = target
        self.history.append(target)
        return target

    @property
    def terminal(self) -> bool:
        return is_terminal(self.current)

    def previous(self) -> Optional[str]:
        return self.history[-2] if len(self.history) > 1 else None
