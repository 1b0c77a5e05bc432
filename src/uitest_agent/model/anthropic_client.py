"""
Anthropic client for the computer-use loop.
"""

from typing import Any, Dict, List, Optional, Sequence

import anthropic

from uitest_agent.config import ModelConfig, SecretsManager
from uitest_agent.logging import get_logger
from uitest_agent.model.base import ContentBlock, Message, ModelCallError, ModelResponse
from uitest_agent.resilience import RetryExhaustedError, RetryPolicy, retry_with_backoff

logger = get_logger(__name__)

# Transport-level failures worth another attempt
TRANSIENT_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)


class AnthropicReasoningModel:
    """
    ReasoningModel backed by the Anthropic Messages API.

    Retries transient transport errors with exponential backoff; everything
    else surfaces as ModelCallError.
    """

    def __init__(
        self,
        config: Optional[ModelConfig] = None,
        api_key: Optional[str] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Initialize the client.

        Args:
            config: Model selection
            api_key: Explicit key (default: from the environment)
            client: Pre-built SDK client (tests)
            retry_policy: Retry behavior for transient failures
        """
        self.config = config or ModelConfig()
        if client is None:
            client = anthropic.AsyncAnthropic(
                api_key=api_key or SecretsManager.get_api_key(self.config.api_key_env),
                timeout=float(self.config.timeout_seconds),
                max_retries=0,
            )
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=self.config.max_retries,
            retryable_exceptions=TRANSIENT_ERRORS,
        )
        self._call_count = 0

    @property
    def call_count(self) -> int:
        return self._call_count

    async def _call(self, func, **kwargs: Any) -> Any:
        self._call_count += 1
        try:
            return await retry_with_backoff(func, policy=self.retry_policy, **kwargs)
        except RetryExhaustedError as e:
            raise ModelCallError(f"Model call failed after retries: {e.last_error}", e.last_error) from e
        except anthropic.APIError as e:
            raise ModelCallError(f"Model call failed: {e}", e) from e

    async def next_step(
        self,
        system: str,
        messages: List[Message],
        tools: List[Dict[str, Any]],
    ) -> ModelResponse:
        """Request the next action through the computer-use beta."""
        response = await self._call(
            self.client.beta.messages.create,
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            system=system,
            tools=tools,
            messages=messages,
            betas=[self.config.beta_header],
        )

        content = [block.model_dump(exclude_none=True) for block in response.content]
        logger.debug(
            "Model responded",
            stop_reason=response.stop_reason,
            blocks=len(content),
            input_tokens=getattr(response.usage, "input_tokens", None),
            output_tokens=getattr(response.usage, "output_tokens", None),
        )
        return ModelResponse(content=content, stop_reason=response.stop_reason)

    async def ask(
        self,
        prompt: str,
        images: Sequence[ContentBlock] = (),
        max_tokens: int = 1024,
    ) -> str:
        """Plain question on the auxiliary model."""
        content: List[ContentBlock] = list(images) + [{"type": "text", "text": prompt}]
        response = await self._call(
            self.client.messages.create,
            model=self.config.auxiliary_model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": content}],
        )
        return "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
