from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Literal, Optional

from ..config import AGENT_CLAUDE, AGENT_CODEX, RunnerConfig
from .base import AgentAdapter
from .claude import ClaudeAdapter
from .codex import CodexAdapter, CodexExecClient

_logger = logging.getLogger(__name__)

AgentCapability = Literal["streaming", "multi_turn", "resumable_threads"]


@dataclass(frozen=True)
class AgentDescriptor:
    id: str
    name: str
    capabilities: frozenset
    make_adapter: Callable[[RunnerConfig], AgentAdapter]


def _make_claude_adapter(config: RunnerConfig) -> AgentAdapter:
    return ClaudeAdapter(
        config.claude_binary,
        model=config.claude_model,
        max_turns=config.claude_max_turns,
    )


def _make_codex_adapter(config: RunnerConfig) -> AgentAdapter:
    return CodexAdapter(
        CodexExecClient(config.codex_binary, model=config.codex_model),
        max_turns=config.codex_max_turns,
    )


_REGISTERED_AGENTS: dict[str, AgentDescriptor] = {
    AGENT_CLAUDE: AgentDescriptor(
        id=AGENT_CLAUDE,
        name="Claude",
        capabilities=frozenset(["streaming"]),
        make_adapter=_make_claude_adapter,
    ),
    AGENT_CODEX: AgentDescriptor(
        id=AGENT_CODEX,
        name="Codex",
        capabilities=frozenset(["multi_turn", "resumable_threads"]),
        make_adapter=_make_codex_adapter,
    ),
}


def get_agent_descriptor(agent_id: str) -> Optional[AgentDescriptor]:
    return _REGISTERED_AGENTS.get(agent_id)


def validate_agent_id(agent_id: Optional[str], default: str = AGENT_CLAUDE) -> str:
    normalized = (agent_id or default).strip().lower()
    if normalized not in _REGISTERED_AGENTS:
        raise ValueError(f"Unknown agent: {agent_id!r}")
    return normalized


def has_capability(agent_id: str, capability: AgentCapability) -> bool:
    descriptor = _REGISTERED_AGENTS.get(agent_id)
    if descriptor is None:
        return False
    return capability in descriptor.capabilities


def create_adapter(agent_id: str, config: RunnerConfig) -> AgentAdapter:
    descriptor = get_agent_descriptor(agent_id)
    if descriptor is None:
        raise ValueError(f"Unknown agent: {agent_id}")
    _logger.debug("Creating %s adapter", descriptor.name)
    return descriptor.make_adapter(config)


AdapterFactory = Callable[[str, RunnerConfig], AgentAdapter]

__all__ = [
    "AdapterFactory",
    "AgentCapability",
    "AgentDescriptor",
    "create_adapter",
    "get_agent_descriptor",
    "has_capability",
    "validate_agent_id",
]
