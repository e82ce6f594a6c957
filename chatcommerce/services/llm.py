import logging
from anthropic import AsyncAnthropic

logger = logging.getLogger(__name__)


class LLMClient:
    """Single-shot text completion against Claude.

    One request per call and no retries: callers decide how to degrade when
    the model is slow or unavailable.
    """

    def __init__(self, api_key: str, model: str, timeout: float = 20.0):
        self.model = model
        self.enabled = bool(api_key)
        self._client = AsyncAnthropic(api_key=api_key or "unset", timeout=timeout, max_retries=0)

    async def complete(
        self,
        system: str,
        prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 300,
    ) -> str:
        """Return the model's text answer. Raises on any API or network error."""
        if not self.enabled:
            raise RuntimeError("No Anthropic API key configured")
        message = await self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        text = "".join(block.text for block in message.content if block.type == "text")
        logger.debug("LLM answered %d chars (stop_reason=%s)", len(text), message.stop_reason)
        return text

    async def close(self):
        await self._client.close()
