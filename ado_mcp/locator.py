"""Resource locator — map a human name to a record in a build timeline.

A build timeline is a flat list of records forming a forest
(Stage → Phase → Job → Task).  Names are not unique, so every lookup
either returns exactly one record or raises an error the caller can act
on: ``RecordNotFound``, ``AmbiguousMatch`` (with every candidate's type
and id), ``RecordStateError`` or ``NoLogAvailable``.

The locator never mutates or caches the records it is given.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field

from ado_mcp.errors import (
    AmbiguousMatch,
    NoLogAvailable,
    RecordNotFound,
    RecordStateError,
)

COMPLETED = "completed"

RECORD_TYPES: tuple[str, ...] = ("Stage", "Phase", "Job", "Task")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class LogReference(BaseModel):
    """Pointer to a remote log resource."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    url: str | None = None


class TimelineRecord(BaseModel):
    """A node in a build's execution report, as returned by Azure DevOps."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str
    parent_id: str | None = Field(None, alias="parentId")
    type: str = Field("", description="Stage | Phase | Job | Task | Checkpoint ...")
    name: str = ""
    state: str = Field("pending", description="pending | inProgress | completed")
    result: str | None = None
    start_time: datetime | None = Field(None, alias="startTime")
    finish_time: datetime | None = Field(None, alias="finishTime")
    log: LogReference | None = None

    @property
    def label(self) -> str:
        return f"{self.type}:{self.id} ({self.name})"

    @property
    def is_completed(self) -> bool:
        return self.state.lower() == COMPLETED


@dataclass(frozen=True)
class StageGroup:
    """A stage record plus every job beneath it."""

    stage: TimelineRecord
    jobs: list[TimelineRecord] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


def _type_matches(record: TimelineRecord, record_type: str | None) -> bool:
    return record_type is None or record.type.lower() == record_type.lower()


def find_records(
    records: Iterable[TimelineRecord],
    name: str,
    *,
    record_type: str | None = None,
    exact: bool = True,
) -> list[TimelineRecord]:
    """Return every record matching *name* (and *record_type*, if given).

    ``exact=True`` compares names case-sensitively; ``exact=False`` does a
    case-insensitive substring match.
    """
    needle = name.lower()
    matches = []
    for record in records:
        if not _type_matches(record, record_type):
            continue
        if exact:
            if record.name == name:
                matches.append(record)
        elif needle in record.name.lower():
            matches.append(record)
    return matches


def locate(
    records: list[TimelineRecord],
    name: str,
    *,
    record_type: str | None = None,
    exact: bool = True,
) -> TimelineRecord:
    """Find the single record called *name*.

    Raises ``RecordNotFound`` on zero matches and ``AmbiguousMatch`` on
    more than one.
    """
    matches = find_records(records, name, record_type=record_type, exact=exact)
    if not matches:
        available = sorted(
            {r.name for r in records if r.name and _type_matches(r, record_type)}
        )
        raise RecordNotFound(name, record_type=record_type, available=available)
    if len(matches) > 1:
        raise AmbiguousMatch(name, [m.label for m in matches])
    return matches[0]


def locate_subtree(records: list[TimelineRecord], stage: TimelineRecord) -> StageGroup:
    """Collect every ``Job`` whose parent chain leads back to *stage*."""
    by_id = {r.id: r for r in records}
    jobs = []
    for record in records:
        if record.type.lower() != "job":
            continue
        if _descends_from(record, stage.id, by_id):
            jobs.append(record)
    return StageGroup(stage=stage, jobs=jobs)


def _descends_from(
    record: TimelineRecord, ancestor_id: str, by_id: dict[str, TimelineRecord]
) -> bool:
    seen: set[str] = set()
    parent_id = record.parent_id
    while parent_id and parent_id not in seen:
        if parent_id == ancestor_id:
            return True
        seen.add(parent_id)
        parent = by_id.get(parent_id)
        if parent is None:
            return False
        parent_id = parent.parent_id
    return False


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


def require_completed(record: TimelineRecord) -> None:
    if not record.is_completed:
        raise RecordStateError(record.name, record.id, record.state)


def require_downloadable(record: TimelineRecord) -> int:
    """Check *record* is completed and has a log; return the log id."""
    require_completed(record)
    if record.log is None:
        raise NoLogAvailable(record.name, record.id)
    return record.log.id
