"""
Fix Synthesizer
===============

Escalates an unseen error to the completion service and stores the
structured fix it returns as a new pattern.

Only called after a confirmed pattern-store miss. Nothing is written when
the model reply cannot be parsed into a complete fix.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from adaptloop.classifier import Classification
from adaptloop.completion import CompletionClient
from adaptloop.errors import SynthesisUnavailable
from adaptloop.pattern_store import ErrorPattern, PatternStore, FIX_TYPES
from adaptloop.response_parser import ResponseParseError, parse_structured_response

logger = logging.getLogger(__name__)

SYSTEM_MESSAGE = "You are an expert debugging AI. Always respond with valid JSON only."

REQUIRED_FIELDS = ("diagnosis", "rootCause", "solution")

TEACHING_PROMPT = """You are an expert software engineer and debugging specialist. Analyze this error and create a structured solution.

**Error Category:** {category}
**Error Message:**
{error_text}

**Error Context:**
{error_context}

**Project Context:**
{project_context}

**Your Task:**
1. Identify the root cause of the error
2. Determine what files need to be created/modified
3. Provide specific code changes or configuration updates
4. Create a reusable solution pattern

**Output Format (JSON only):**
{{
  "diagnosis": "Clear, user-friendly explanation of what's wrong",
  "rootCause": "Technical reason for the error",
  "subcategory": "More specific error type (e.g. 'null-reference', 'type-mismatch', 'cors')",
  "fixType": "code|config|dependency|architecture|data",
  "affectedTechnologies": ["react", "typescript", "vite"],
  "solution": {{
    "files": [
      {{
        "path": "path/to/file",
        "action": "create|modify|delete",
        "content": "exact file content or changes needed",
        "explanation": "why this change fixes the error"
      }}
    ],
    "codeChanges": [
      {{
        "file": "path/to/file",
        "changes": "description of what to change",
        "before": "code before (if modifying)",
        "after": "code after"
      }}
    ],
    "steps": ["Step-by-step instructions to apply the fix"],
    "verification": "How to verify the fix worked"
  }},
  "commonTriggers": ["What typically causes this error"],
  "preventionTips": ["How to avoid this in the future"],
  "relatedErrors": ["Other errors this might cause or relate to"]
}}"""


def build_teaching_prompt(
    error_text: str,
    category: str,
    error_context: Optional[Dict[str, Any]] = None,
    project_context: Optional[Dict[str, Any]] = None,
) -> str:
    return TEACHING_PROMPT.format(
        category=category,
        error_text=error_text,
        error_context=json.dumps(error_context or {}, indent=2, default=str),
        project_context=json.dumps(project_context or {}, indent=2, default=str),
    )


def _string_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item) for item in value if item is not None]
    if isinstance(value, str) and value:
        return [value]
    return []


def pattern_from_response(
    data: Dict[str, Any],
    error_text: str,
    classification: Classification,
    signature: str,
) -> ErrorPattern:
    """Map a parsed teaching reply onto an ErrorPattern."""
    solution = data.get("solution")
    if not isinstance(solution, dict):
        raise ResponseParseError("solution must be an object")

    fix_type = str(data.get("fixType") or "code").lower()
    if fix_type not in FIX_TYPES:
        fix_type = "code"

    subcategory = data.get("subcategory")

    return ErrorPattern(
        category=classification.category.value,
        subcategory=str(subcategory) if subcategory else None,
        signature=signature,
        raw_pattern=error_text,
        diagnosis=str(data["diagnosis"]),
        root_cause=str(data["rootCause"]),
        fix_type=fix_type,
        solution=solution,
        prevention_tips=_string_list(data.get("preventionTips")),
        related_errors=_string_list(data.get("relatedErrors")),
        common_triggers=_string_list(data.get("commonTriggers")),
        affected_technologies=_string_list(data.get("affectedTechnologies")),
        confidence_score=classification.confidence,
    )


class FixSynthesizer:
    """Learns a fix for an unseen error and persists it."""

    def __init__(self, completion: CompletionClient, store: PatternStore):
        self.completion = completion
        self.store = store

    async def synthesize(
        self,
        error_text: str,
        classification: Classification,
        signature: str,
        error_context: Optional[Dict[str, Any]] = None,
        project_context: Optional[Dict[str, Any]] = None,
        deployment_provider: Optional[str] = None,
    ) -> ErrorPattern:
        """
        Ask the model for a structured fix and store it.

        Raises:
            SynthesisUnavailable: On service failure or an unusable reply
            StoreUnavailable: If the pattern cannot be written
        """
        category = classification.category.value
        prompt = build_teaching_prompt(error_text, category, error_context, project_context)

        logger.info("Synthesizing fix for new %s error", category)
        reply = await self.completion.complete([
            {"role": "system", "content": SYSTEM_MESSAGE},
            {"role": "user", "content": prompt},
        ])

        try:
            data = parse_structured_response(reply, required=REQUIRED_FIELDS)
            pattern = pattern_from_response(data, error_text, classification, signature)
        except ResponseParseError as e:
            logger.warning("Discarding unusable fix for %s: %s", signature, e)
            raise SynthesisUnavailable(SynthesisUnavailable.UNPARSABLE, str(e)) from e

        error_context = error_context or {}
        project_context = project_context or {}
        pattern.environment = error_context.get("environment") or "development"
        pattern.deployment_provider = deployment_provider
        project_id = project_context.get("projectId") or project_context.get("project_id")
        pattern.learned_from_project_id = str(project_id) if project_id else None

        return await self.store.upsert(pattern)
