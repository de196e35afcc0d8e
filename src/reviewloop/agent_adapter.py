from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


class AgentInvocationError(RuntimeError):
    """The agent exited non-zero or exceeded its timeout."""


@dataclass(frozen=True)
class AgentRequest:
    cwd: Path
    instructions: str
    user_message: str
    timeout_seconds: int
    max_turns: int
    label: str


@dataclass(frozen=True)
class AgentRun:
    run_id: str
    output: str


class AgentAdapter(ABC):
    @abstractmethod
    def invoke(self, request: AgentRequest) -> AgentRun:
        """Run the agent to completion in request.cwd and return its raw text output."""
