"""
Error Classifier
================

Assigns a reported error to one of nine fixed categories by counting
case-insensitive keyword matches per category.

The category with the most matches wins; ties go to the category listed
first in ErrorCategory. Confidence grows with match density and is capped
at 1.0. Text that matches nothing falls back to RUNTIME at 0.3 and is
flagged as ambiguous.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict


class ErrorCategory(Enum):
    """Error categories, in tie-break order."""
    DEPENDENCY = "dependency"
    RUNTIME = "runtime"
    TYPESCRIPT = "typescript"
    API = "api"
    DATABASE = "database"
    BUILD = "build"
    UI = "ui"
    PERFORMANCE = "performance"
    DEPLOYMENT = "deployment"


CATEGORY_PATTERNS: Dict[ErrorCategory, re.Pattern] = {
    ErrorCategory.DEPENDENCY: re.compile(
        r"module not found|cannot find module|npm|yarn|package|dependency|peer dependency",
        re.IGNORECASE,
    ),
    ErrorCategory.RUNTIME: re.compile(
        r"undefined|null|cannot read property|reference error|is not a function"
        r"|maximum call stack|memory",
        re.IGNORECASE,
    ),
    ErrorCategory.TYPESCRIPT: re.compile(
        r"type error|ts\(|typescript|interface|property.*?does not exist"
        r"|type.*?is not assignable",
        re.IGNORECASE,
    ),
    ErrorCategory.API: re.compile(
        r"fetch|api|network|cors|401|403|404|429|500|rate limit|timeout|request failed",
        re.IGNORECASE,
    ),
    ErrorCategory.DATABASE: re.compile(
        r"supabase|postgres|sql|query|database|connection refused"
        r"|authentication failed|rls|row level security",
        re.IGNORECASE,
    ),
    ErrorCategory.BUILD: re.compile(
        r"bundle|webpack|vite|rollup|compilation|cannot resolve",
        re.IGNORECASE,
    ),
    ErrorCategory.UI: re.compile(
        r"layout|render|component|react|hook|state|props|css|style|responsive",
        re.IGNORECASE,
    ),
    ErrorCategory.PERFORMANCE: re.compile(
        r"slow|performance|optimization|memory leak|lag|fps|bottleneck",
        re.IGNORECASE,
    ),
    ErrorCategory.DEPLOYMENT: re.compile(
        r"vercel|netlify|firebase|deployment|build output|dist|public directory"
        r"|failed to deploy|deploy error|hosting|production build",
        re.IGNORECASE,
    ),
}

# Matches needed for full confidence
SATURATION_MATCHES = 3
FALLBACK_CATEGORY = ErrorCategory.RUNTIME
FALLBACK_CONFIDENCE = 0.3


@dataclass
class Classification:
    """Result of classifying one error text."""
    category: ErrorCategory
    confidence: float
    ambiguous: bool = False
    scores: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "confidence": self.confidence,
            "ambiguous": self.ambiguous,
            "scores": self.scores,
        }


def score_categories(error_text: str) -> Dict[ErrorCategory, int]:
    """Count non-overlapping keyword matches for every category."""
    text = error_text or ""
    return {
        category: len(pattern.findall(text))
        for category, pattern in CATEGORY_PATTERNS.items()
    }


def classify(error_text: str) -> Classification:
    """
    Classify an error text. Never raises.

    Args:
        error_text: Raw error message or stack trace

    Returns:
        Classification with confidence in [0, 1]
    """
    scores = score_categories(error_text)
    named_scores = {category.value: count for category, count in scores.items()}

    best_category = FALLBACK_CATEGORY
    best_count = 0
    # Strict comparison keeps the earliest category on ties
    for category in ErrorCategory:
        if scores[category] > best_count:
            best_category = category
            best_count = scores[category]

    if best_count == 0:
        return Classification(
            category=FALLBACK_CATEGORY,
            confidence=FALLBACK_CONFIDENCE,
            ambiguous=True,
            scores=named_scores,
        )

    return Classification(
        category=best_category,
        confidence=min(best_count / SATURATION_MATCHES, 1.0),
        scores=named_scores,
    )
