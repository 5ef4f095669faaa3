"""
AdaptLoop
=========

Adaptive error learning and prompt evolution for a website generator.
"""

__version__ = "0.1.0"
