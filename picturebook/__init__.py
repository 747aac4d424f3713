"""
picturebook package exposing story generation, revisions, and illustration tooling.
"""

from .config import Settings, UserPreferences
from .pipeline import GenerationOrchestrator, StoryWorkflow
from .revisions import RevisionEngine

__all__ = [
    "GenerationOrchestrator",
    "RevisionEngine",
    "Settings",
    "StoryWorkflow",
    "UserPreferences",
]
