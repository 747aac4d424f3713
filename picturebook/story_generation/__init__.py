"""
Story model, lifecycle, and text generation for picture books.
"""

from .models import (
    Character,
    ImageVersion,
    Revision,
    Story,
    StoryBrief,
    StoryPage,
    StoryStatus,
    WorkflowStep,
)
from .status import ensure_operation_allowed, ensure_transition
from .story_service import GeneratedStory, StoryTextGenerator

__all__ = [
    "Character",
    "GeneratedStory",
    "ImageVersion",
    "Revision",
    "Story",
    "StoryBrief",
    "StoryPage",
    "StoryStatus",
    "StoryTextGenerator",
    "WorkflowStep",
    "ensure_operation_allowed",
    "ensure_transition",
]
