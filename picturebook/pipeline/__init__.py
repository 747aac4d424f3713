"""
End-to-end orchestration for picture book text and illustration generation.
"""

from .notifications import Notifier
from .orchestrator import CoreImageOptions, GeneratedImage, GenerationOrchestrator, PageImageOptions
from .workflow import StoryWorkflow

__all__ = [
    "CoreImageOptions",
    "GeneratedImage",
    "GenerationOrchestrator",
    "Notifier",
    "PageImageOptions",
    "StoryWorkflow",
]
