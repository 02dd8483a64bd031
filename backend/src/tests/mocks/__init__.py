"""
Mock collaborators for agent tests.

Provides:
- MockScriptAnalysisBackend (deterministic scene extraction from sluglines)
"""

from .mock_analysis_backend import (
    SAMPLE_SCENE_COUNT,
    SAMPLE_SCRIPT,
    MockScriptAnalysisBackend,
)

__all__ = [
    "SAMPLE_SCENE_COUNT",
    "SAMPLE_SCRIPT",
    "MockScriptAnalysisBackend",
]
