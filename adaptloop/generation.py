"""
Website Generation
==================

Consumer of the router and the outcome log: turns a user's description into
HTML with the routed system prompt and records how it went.
"""

import logging
import time
from dataclasses import dataclass

from adaptloop.completion import CompletionClient
from adaptloop.errors import SynthesisUnavailable
from adaptloop.outcomes import OutcomeRecorder
from adaptloop.prompt_router import PromptRouter
from adaptloop.response_parser import strip_code_fences

logger = logging.getLogger(__name__)

GENERATION_TEMPERATURE = 0.7


@dataclass
class GeneratedSite:
    html: str
    prompt_version: str
    generation_time_ms: int

    def to_dict(self) -> dict:
        return {
            "html": self.html,
            "prompt_version": self.prompt_version,
            "generation_time_ms": self.generation_time_ms,
        }


class WebsiteGenerator:
    """Generates HTML with A/B routed prompts and logs each attempt."""

    def __init__(
        self,
        router: PromptRouter,
        recorder: OutcomeRecorder,
        completion: CompletionClient,
    ):
        self.router = router
        self.recorder = recorder
        self.completion = completion

    async def generate(self, user_prompt: str) -> GeneratedSite:
        """
        Generate a page for user_prompt.

        Raises:
            ValueError: If user_prompt is empty
            SynthesisUnavailable: If the completion service failed
        """
        if not user_prompt or not user_prompt.strip():
            raise ValueError("Prompt is required")

        version = await self.router.select_version()
        model = getattr(self.completion, "model", None)
        started = time.monotonic()

        try:
            reply = await self.completion.complete(
                [
                    {"role": "system", "content": version.system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=GENERATION_TEMPERATURE,
            )
        except SynthesisUnavailable as e:
            await self.recorder.record(
                prompt_version=version.version,
                user_prompt=user_prompt,
                status="error",
                error_message=str(e),
                generation_time_ms=int((time.monotonic() - started) * 1000),
                model_used=model,
            )
            raise

        html = strip_code_fences(reply)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info("Generated %d chars with %s in %d ms", len(html), version.version, elapsed_ms)

        await self.recorder.record(
            prompt_version=version.version,
            user_prompt=user_prompt,
            status="success",
            generated_artifact=html,
            generation_time_ms=elapsed_ms,
            model_used=model,
        )

        return GeneratedSite(html=html, prompt_version=version.version, generation_time_ms=elapsed_ms)
