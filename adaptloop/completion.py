"""
Completion Client
=================

Thin async wrapper over the Anthropic Messages API.

Callers pass role-tagged messages; any "system" messages are lifted into the
API's system argument. The client never retries: timeouts and service
errors surface immediately as SynthesisUnavailable.
"""

import logging
from typing import Dict, List, Optional

import anthropic

from adaptloop.config import DEFAULT_MODEL
from adaptloop.errors import SynthesisUnavailable

logger = logging.getLogger(__name__)

Message = Dict[str, str]


class CompletionClient:
    """Async completion service backed by anthropic.AsyncAnthropic."""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        timeout_seconds: float = 30.0,
        max_tokens: int = 4000,
        api_key: Optional[str] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self._client = client or anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=timeout_seconds,
            max_retries=0,
        )

    async def complete(
        self,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Send messages and return the concatenated text of the reply.

        Raises:
            SynthesisUnavailable: kind "timeout" or "service"
        """
        system_parts = [m["content"] for m in messages if m.get("role") == "system"]
        conversation = [
            {"role": m["role"], "content": m["content"]}
            for m in messages
            if m.get("role") != "system"
        ]

        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "messages": conversation,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)
        if temperature is not None:
            kwargs["temperature"] = temperature

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APITimeoutError as e:
            logger.warning("Completion request timed out: %s", e)
            raise SynthesisUnavailable(SynthesisUnavailable.TIMEOUT, str(e)) from e
        except anthropic.APIError as e:
            logger.warning("Completion service error: %s", e)
            raise SynthesisUnavailable(SynthesisUnavailable.SERVICE, str(e)) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        if not text:
            raise SynthesisUnavailable(SynthesisUnavailable.UNPARSABLE, "Empty completion")
        return text
