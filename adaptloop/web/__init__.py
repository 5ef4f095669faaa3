"""
AdaptLoop Web Interface
=======================

HTTP API for reporting errors, routing prompts and managing prompt versions.
"""

from .main import create_app, run

__all__ = ["create_app", "run"]
