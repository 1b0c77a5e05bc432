"""
Reasoning model contract.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

Message = Dict[str, Any]
ContentBlock = Dict[str, Any]


class ModelCallError(Exception):
    """Raised when the reasoning model could not produce a response."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


@dataclass
class ModelResponse:
    """Assistant turn as plain content block dicts."""

    content: List[ContentBlock] = field(default_factory=list)
    stop_reason: Optional[str] = None

    @property
    def text(self) -> str:
        return "\n".join(
            block.get("text", "") for block in self.content if block.get("type") == "text"
        )

    @property
    def tool_uses(self) -> List[ContentBlock]:
        return [block for block in self.content if block.get("type") == "tool_use"]

    @property
    def has_tool_use(self) -> bool:
        return any(block.get("type") == "tool_use" for block in self.content)

    def to_message(self) -> Message:
        return {"role": "assistant", "content": list(self.content)}


@runtime_checkable
class ReasoningModel(Protocol):
    """Vision-capable model driving the loop."""

    async def next_step(
        self,
        system: str,
        messages: List[Message],
        tools: List[Dict[str, Any]],
    ) -> ModelResponse:
        """
        Ask for the next action given the transcript.

        Raises:
            ModelCallError: If the call failed
        """
        ...

    async def ask(
        self,
        prompt: str,
        images: Sequence[ContentBlock] = (),
        max_tokens: int = 1024,
    ) -> str:
        """
        One-off text question, optionally about images.

        Raises:
            ModelCallError: If the call failed
        """
        ...
