"""
Reasoning model - contract, prompts and the Anthropic client.
"""

from uitest_agent.model.base import (
    ContentBlock,
    Message,
    ModelCallError,
    ModelResponse,
    ReasoningModel,
)

__all__ = [
    "ContentBlock",
    "Message",
    "ModelCallError",
    "ModelResponse",
    "ReasoningModel",
]
