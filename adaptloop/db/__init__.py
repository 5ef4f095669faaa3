"""
Database Package
================

Exports key database components.
"""

from adaptloop.db.models import (
    # Base
    Base,
    # Error learning
    ErrorPatternModel,
    # Prompt evolution
    PromptVersionModel, GenerationOutcomeModel, PromptImprovementModel,
    # Operational
    AdminNotificationModel, RateLimitLogModel,
)
from adaptloop.db.connection import Database, init_db
