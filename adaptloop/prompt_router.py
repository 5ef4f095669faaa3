"""
Prompt Version Router
=====================

Weighted random selection of the system prompt for each generation request.

Only versions with traffic_percentage > 0 take part, walked in creation
order. The random source is injectable so selection can be seeded in tests.
"""

import logging
import random
from typing import Optional

from adaptloop.prompt_versions import PromptVersion, PromptVersionStore

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "v1.0.0"

DEFAULT_SYSTEM_PROMPT = """You are an expert web developer. Generate complete, beautiful, and modern HTML/CSS code based on the user's description.

LANGUAGE:
- Write all website content (headings, buttons, navigation, descriptions) in the language of the user's prompt
- Set the matching lang attribute on the <html> element

TECHNICAL REQUIREMENTS:
1. Generate a COMPLETE, self-contained HTML page with inline CSS
2. Use a modern design with gradients, shadows, and animations
3. Make it fully responsive with a mobile-first approach
4. Use semantic HTML5 elements and appropriate meta tags
5. Add smooth transitions and hover effects
6. The design should be production-ready and visually appealing

IMPORTANT: Return ONLY the raw HTML code without any markdown formatting, code blocks, or explanations. Just the pure HTML starting with <!DOCTYPE html>."""


def default_prompt_version() -> PromptVersion:
    """Built-in prompt used when no version is serving traffic."""
    return PromptVersion(
        version=DEFAULT_VERSION,
        system_prompt=DEFAULT_SYSTEM_PROMPT,
        traffic_percentage=100.0,
        is_active=True,
        created_by="builtin",
    )


class PromptRouter:
    """Chooses a prompt version in proportion to its traffic percentage."""

    def __init__(self, store: PromptVersionStore, rng: Optional[random.Random] = None):
        self.store = store
        self.rng = rng or random.Random()

    async def select_version(self) -> PromptVersion:
        versions = await self.store.list_serving()

        if not versions:
            logger.warning("No prompt version is serving traffic, using built-in %s", DEFAULT_VERSION)
            return default_prompt_version()

        if len(versions) == 1:
            return versions[0]

        draw = self.rng.random() * 100
        cumulative = 0.0
        for version in versions:
            cumulative += version.traffic_percentage
            if cumulative >= draw:
                return version

        logger.warning(
            "Traffic percentages sum to %.2f, below draw %.2f; falling back to %s",
            cumulative, draw, versions[-1].version,
        )
        return versions[-1]
