"""
Revision log for picture book stories.
"""

from .engine import RevisionEngine, coerce_story_update, compute_cleared_fields

__all__ = ["RevisionEngine", "coerce_story_update", "compute_cleared_fields"]
