from .base import AgentAdapter
from .claude import ClaudeAdapter
from .codex import CodexAdapter, CodexExecClient
from .registry import create_adapter, validate_agent_id

__all__ = [
    "AgentAdapter",
    "ClaudeAdapter",
    "CodexAdapter",
    "CodexExecClient",
    "create_adapter",
    "validate_agent_id",
]
