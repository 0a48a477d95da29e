"""Domain models for observations, sessions and derived insights."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class FocusState(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    AWAY = "away"


class ActivityType(str, Enum):
    """Classification of a session. The value doubles as the display name."""

    FOCUSED_WORK = "Focused Work"
    COMMUNICATION = "Communication"
    BROWSER = "Browser"
    ENTERTAINMENT = "Entertainment"
    ADMIN = "Admin"
    REFERENCE = "Reference"
    IDLE = "Idle"
    AWAY = "Away"
    UNKNOWN = "Unknown"
    META = "Meta"

    @property
    def is_productive(self) -> bool:
        return self in (
            ActivityType.FOCUSED_WORK,
            ActivityType.ADMIN,
            ActivityType.REFERENCE,
        )


class UnknownReason(str, Enum):
    UNMAPPED_APP = "Unmapped app"
    AMBIGUOUS_APP = "Ambiguous app"
    IDLE = "Idle/Away"


class LossType(str, Enum):
    IDLE = "Idle Gap"
    DISTRACTION = "Distraction"
    SWITCHING = "Switching Storm"
    RECOVERY = "Recovery Delay"
    FRICTION = "Fragmentation"


@dataclass(slots=True, frozen=True)
class Observation:
    """A raw focus/idle signal pushed by the OS watcher."""

    app_identifier: str
    app_name: str
    focus_state: FocusState
    timestamp: datetime


@dataclass(slots=True, frozen=True)
class PendingSegment:
    """Candidate session that has not yet held focus long enough to commit."""

    app_identifier: str
    app_name: str
    focus_state: FocusState
    start_time: datetime


@dataclass(slots=True)
class BrowserContext:
    """Freeform page metadata sent along with a domain change."""

    path: Optional[str] = None
    description: Optional[str] = None
    content_snippet: Optional[str] = None


@dataclass(slots=True)
class BrowserVisit:
    """One in-session visit to a single domain."""

    start_time: datetime
    domain: str
    title: Optional[str] = None
    is_distraction: bool = False
    end_time: Optional[datetime] = None
    path: Optional[str] = None
    description: Optional[str] = None
    content_snippet: Optional[str] = None

    def duration_at(self, now: datetime) -> float:
        end = self.end_time or now
        return (end - self.start_time).total_seconds()


@dataclass(slots=True)
class Session:
    """A committed stretch of engagement with one app or browser domain."""

    app_identifier: str
    app_name: str
    focus_state: FocusState
    start_time: datetime
    activity_type: ActivityType = ActivityType.UNKNOWN
    confidence: float = 0.0
    unknown_reason: Optional[UnknownReason] = None
    needs_review: bool = True
    end_time: Optional[datetime] = None
    accumulated_duration: float = 0.0
    last_resumed_at: Optional[datetime] = None
    primary_domain: Optional[str] = None
    primary_title: Optional[str] = None
    browser_visits: list[BrowserVisit] = field(default_factory=list)
    task_id: Optional[str] = None
    user_label: Optional[str] = None
    inferred_label: Optional[str] = None
    micro_interruptions: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def duration(self) -> float:
        return self.duration_at(datetime.now())

    def duration_at(self, now: datetime) -> float:
        """Seconds of engagement, counting the live segment when still open."""
        if self.end_time is not None:
            if self.accumulated_duration > 0:
                return self.accumulated_duration
            return (self.end_time - self.start_time).total_seconds()
        active_start = self.last_resumed_at or self.start_time
        return self.accumulated_duration + (now - active_start).total_seconds()

    @property
    def task_label(self) -> Optional[str]:
        return self.user_label or self.inferred_label


@dataclass(slots=True, frozen=True)
class AppCategoryRule:
    app_identifier: str
    activity_type: ActivityType
    is_ambiguous: bool = False


@dataclass(slots=True)
class LossEvent:
    type: LossType
    start_time: datetime
    end_time: datetime
    loss_minutes: float
    explanation: str
    affected_sessions: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DailyLossReport:
    """Aggregated loss metrics for one calendar day."""

    date: datetime
    total_loss_minutes: float = 0.0
    loss_events: list[LossEvent] = field(default_factory=list)
    productive_minutes: float = 0.0
    active_minutes: float = 0.0
    idle_loss_minutes: float = 0.0
    distraction_loss_minutes: float = 0.0
    switching_loss_minutes: float = 0.0
    recovery_loss_minutes: float = 0.0
    friction_loss_minutes: float = 0.0
    micro_distraction_count: int = 0
    micro_distraction_seconds: float = 0.0
    micro_distractions_by_domain: dict[str, int] = field(default_factory=dict)
    deep_block_count: int = 0
    switching_rate: float = 0.0
    fragmentation_score: float = 0.0


@dataclass(slots=True)
class ClusterResult:
    """A focus thread: adjacent sessions grouped under one suggested label."""

    start_time: datetime
    end_time: datetime
    sessions: list[str]
    suggested_label: Optional[str] = None
    confidence: float = 0.0
    primary_app: Optional[str] = None
    primary_domain: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @property
    def session_count(self) -> int:
        return len(self.sessions)

    @property
    def label(self) -> str:
        return self.suggested_label or "Unlabeled"
