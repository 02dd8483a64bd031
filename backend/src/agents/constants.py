"""
Constants for the agent job system.

Chunking, retry, staleness and retention settings are read from the
environment with positive-integer fallbacks so deployments can tune them
without code changes.

Configuration:
- SCRIPT_ANALYSIS_MAX_CHARS_PER_CHUNK: Upper chunk size bound (default: 12000)
- SCRIPT_ANALYSIS_MIN_CHARS_PER_CHUNK: Lower chunk size bound (default: 2500)
- SCRIPT_ANALYSIS_OVERLAP_CHARS: Continuation context length (default: 500)
- AGENT_JOB_STALE_MINUTES: Age after which an active job is reclaimed (default: 10)
- AGENT_JOB_QUEUE_WAIT_MINUTES: Age after which an unclaimed queued job is reclaimed
  by the worker and maintenance jobs (default: 1440)
- AGENT_JOB_RETENTION_DAYS: Age after which terminal jobs are deleted (default: 30)
- AGENT_CHUNK_BATCH_SIZE: Concurrent chunk operations per batch (default: 3)
- AGENT_CANCEL_POLL_SECONDS: Cancellation watcher poll interval (default: 2)
"""

import enum
import os


def read_positive_int_from_env(name: str, fallback: int) -> int:
    """Read a positive integer from the environment, falling back on bad input."""
    raw = os.getenv(name)
    if not raw:
        return fallback

    try:
        parsed = int(raw, 10)
    except ValueError:
        return fallback

    return parsed if parsed > 0 else fallback


# Chunking configuration
MAX_CHARS_PER_CHUNK = read_positive_int_from_env("SCRIPT_ANALYSIS_MAX_CHARS_PER_CHUNK", 12000)
MIN_CHARS_PER_CHUNK = read_positive_int_from_env("SCRIPT_ANALYSIS_MIN_CHARS_PER_CHUNK", 2500)
OVERLAP_CHARS = read_positive_int_from_env("SCRIPT_ANALYSIS_OVERLAP_CHARS", 500)

# Standard screenplay page is ~250 words or ~1500 characters
CHARS_PER_PAGE = 1500

# Minimum normalized script length accepted by the parsing step
MIN_SCRIPT_CHARS = 100

# Retry configuration
RETRY_MAX_RETRIES = 3
RETRY_INITIAL_DELAY_SECONDS = 1.0
RETRY_MAX_DELAY_SECONDS = 30.0
RETRY_BACKOFF_MULTIPLIER = 2.0
RETRY_JITTER_FACTOR = 0.1

# Lifecycle windows
STALE_JOB_MINUTES = read_positive_int_from_env("AGENT_JOB_STALE_MINUTES", 10)
QUEUE_WAIT_MINUTES = read_positive_int_from_env("AGENT_JOB_QUEUE_WAIT_MINUTES", 24 * 60)
JOB_RETENTION_DAYS = read_positive_int_from_env("AGENT_JOB_RETENTION_DAYS", 30)

# Fan-out and polling
CHUNK_BATCH_SIZE = read_positive_int_from_env("AGENT_CHUNK_BATCH_SIZE", 3)
CANCEL_POLL_SECONDS = read_positive_int_from_env("AGENT_CANCEL_POLL_SECONDS", 2)

# Rough per-chunk processing estimate used for ETA display
SECONDS_PER_CHUNK_ESTIMATE = 15


class AgentJobType(str, enum.Enum):
    """Kinds of agent jobs."""
    SCRIPT_ANALYSIS = "script_analysis"
    SCHEDULE_PLANNING = "schedule_planning"
    ELEMENT_EXTRACTION = "element_extraction"
    CAST_MATCHING = "cast_matching"


class AgentJobStatus(str, enum.Enum):
    """
    Agent job status enumeration.

    pending, completed, failed and cancelled are bookkeeping states with no
    progress weight; the rest are pipeline steps.
    """
    PENDING = "pending"
    PARSING = "parsing"
    CHUNKING = "chunking"
    EXTRACTING_SCENES = "extracting_scenes"
    EXTRACTING_ELEMENTS = "extracting_elements"
    LINKING_CAST = "linking_cast"
    GENERATING_SYNOPSES = "generating_synopses"
    ESTIMATING_TIME = "estimating_time"
    CREATING_RECORDS = "creating_records"
    SUGGESTING_CREW = "suggesting_crew"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    AgentJobStatus.COMPLETED,
    AgentJobStatus.FAILED,
    AgentJobStatus.CANCELLED,
})

ACTIVE_STATUSES = frozenset(s for s in AgentJobStatus if s not in TERMINAL_STATUSES)

BOOKKEEPING_DESCRIPTIONS = {
    AgentJobStatus.PENDING: "Waiting to start",
    AgentJobStatus.COMPLETED: "Analysis complete",
    AgentJobStatus.FAILED: "Analysis failed",
    AgentJobStatus.CANCELLED: "Analysis cancelled",
}


class PipelineStep(enum.Enum):
    """
    A pipeline step with its job status, description and progress weight.

    Weights are relative; a higher weight means the step usually takes longer.
    """
    PARSING = (AgentJobStatus.PARSING, "Parsing script PDF", 5)
    CHUNKING = (AgentJobStatus.CHUNKING, "Splitting script into chunks", 5)
    EXTRACTING_SCENES = (AgentJobStatus.EXTRACTING_SCENES, "Extracting scenes from script", 30)
    EXTRACTING_ELEMENTS = (AgentJobStatus.EXTRACTING_ELEMENTS, "Identifying production elements", 25)
    LINKING_CAST = (AgentJobStatus.LINKING_CAST, "Linking characters to cast members", 10)
    GENERATING_SYNOPSES = (AgentJobStatus.GENERATING_SYNOPSES, "Generating scene synopses", 15)
    ESTIMATING_TIME = (AgentJobStatus.ESTIMATING_TIME, "Estimating shooting times", 10)
    CREATING_RECORDS = (AgentJobStatus.CREATING_RECORDS, "Saving scenes and elements", 10)
    SUGGESTING_CREW = (AgentJobStatus.SUGGESTING_CREW, "Suggesting crew roles", 5)

    def __init__(self, status: AgentJobStatus, description: str, weight: int):
        self.status = status
        self.description = description
        self.weight = weight


SCRIPT_ANALYSIS_STEPS = (
    PipelineStep.PARSING,
    PipelineStep.CHUNKING,
    PipelineStep.EXTRACTING_SCENES,
    PipelineStep.EXTRACTING_ELEMENTS,
    PipelineStep.LINKING_CAST,
    PipelineStep.GENERATING_SYNOPSES,
    PipelineStep.ESTIMATING_TIME,
    PipelineStep.CREATING_RECORDS,
    PipelineStep.SUGGESTING_CREW,
)

DEFAULT_TOTAL_STEPS = {
    AgentJobType.SCRIPT_ANALYSIS: len(SCRIPT_ANALYSIS_STEPS),
    AgentJobType.SCHEDULE_PLANNING: 1,
    AgentJobType.ELEMENT_EXTRACTION: 1,
    AgentJobType.CAST_MATCHING: 1,
}


def describe_status(status: AgentJobStatus) -> str:
    """Human-readable description for any job status."""
    if status in BOOKKEEPING_DESCRIPTIONS:
        return BOOKKEEPING_DESCRIPTIONS[status]
    for step in PipelineStep:
        if step.status == status:
            return step.description
    return status.value


# Time estimation heuristics
TIME_ESTIMATION = {
    "PAGES_PER_HOUR": 0.5,  # two hours per page baseline
    "DIALOGUE_MULTIPLIER": 1.0,
    "ACTION_MULTIPLIER": 1.5,
    "VFX_MULTIPLIER": 2.0,
    "STUNT_MULTIPLIER": 2.5,
    "EXTERIOR_MULTIPLIER": 1.3,
    "NIGHT_MULTIPLIER": 1.2,
    "CROWD_MULTIPLIER": 1.5,
}
