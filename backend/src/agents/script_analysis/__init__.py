"""Script analysis pipeline."""

from src.agents.script_analysis.agent import (
    ScriptAnalysisAgent,
    enqueue_retry,
    enqueue_script_analysis,
)
from src.agents.script_analysis.backend import (
    CreatedRecords,
    HttpScriptAnalysisBackend,
    SceneHint,
    ScriptAnalysisBackend,
    ScriptDocument,
)
from src.agents.script_analysis.steps import ScriptAnalysisSteps

__all__ = [
    "ScriptAnalysisAgent",
    "enqueue_retry",
    "enqueue_script_analysis",
    "CreatedRecords",
    "HttpScriptAnalysisBackend",
    "SceneHint",
    "ScriptAnalysisBackend",
    "ScriptDocument",
    "ScriptAnalysisSteps",
]
