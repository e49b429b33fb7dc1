from __future__ import annotations

from pathlib import Path
from typing import Any, AsyncIterator, Optional, Protocol

from .messages import CanonicalMessage


class AgentAdapter(Protocol):
    agent_id: str

    def stream(
        self,
        prompt: str,
        working_directory: Path,
        system_prompt: Optional[str] = None,
        **options: Any,
    ) -> AsyncIterator[CanonicalMessage]:
        ...


__all__ = ["AgentAdapter"]
