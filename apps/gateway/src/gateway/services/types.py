from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class WorkerState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


@dataclass(frozen=True)
class Metadata:
    author: str = ""
    content_type: str = ""
    title: str = ""
    created: datetime | None = None
    data: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Document:
    id: str
    metadata: Metadata
    text: str


@dataclass(frozen=True)
class SearchHit:
    id: str
    score: float
    title: str
    author: str
    content_type: str


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat().replace("+00:00", "Z")
