"""
Schema readiness check run at API startup.

Reports which required tables are missing so a deploy that skipped
migrations shows up in the logs before the first job is enqueued.
"""

from dataclasses import dataclass, field
from typing import List, Sequence

from sqlalchemy import inspect
from sqlalchemy.orm import Session

REQUIRED_AGENT_TABLES = ("agent_jobs", "script_chunks")


@dataclass
class ReadinessResult:
    checked_tables: List[str]
    missing_tables: List[str] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return not self.missing_tables


def check_required_tables(db: Session, tables: Sequence[str] = REQUIRED_AGENT_TABLES) -> ReadinessResult:
    existing = set(inspect(db.get_bind()).get_table_names())
    return ReadinessResult(
        checked_tables=list(tables),
        missing_tables=[name for name in tables if name not in existing],
    )
