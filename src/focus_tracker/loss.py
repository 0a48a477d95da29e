"""Daily loss analysis: where did the productive time go?"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .config import LossSettings
from .models import DailyLossReport, FocusState, LossEvent, LossType, Session
from .rules import DistractionRules


@dataclass(slots=True, frozen=True)
class MicroDistraction:
    session_id: str
    domain: Optional[str]
    duration_seconds: float


class LossAnalyzer:
    """Pure analysis over an immutable snapshot of sessions.

    Each detector runs independently; the categories may cover overlapping
    wall-clock time because they measure different kinds of cost.
    """

    def __init__(
        self,
        settings: Optional[LossSettings] = None,
        rules: type[DistractionRules] = DistractionRules,
    ) -> None:
        self.settings = settings or LossSettings()
        self.rules = rules

    def analyze_day(
        self,
        sessions: Iterable[Session],
        day: datetime,
        now: Optional[datetime] = None,
    ) -> DailyLossReport:
        now = now or datetime.now()
        start = day.replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=1)
        day_sessions = sorted(
            (session for session in sessions if start <= session.start_time < end),
            key=lambda session: session.start_time,
        )
        durations = {session.id: session.duration_at(now) for session in day_sessions}
        view = _DayView(day_sessions, durations, now)

        idle_loss = self.detect_idle_loss(view)
        distraction_loss = self.detect_distraction_loss(view)
        switching_loss = self.detect_switching_storms(view)
        recovery_loss = self.detect_recovery_loss(view)
        friction_loss = self.detect_friction_loss(view)
        micro = self.detect_micro_distractions(view)

        all_loss = idle_loss + distraction_loss + switching_loss + recovery_loss + friction_loss
        active = [s for s in day_sessions if s.focus_state is FocusState.ACTIVE]
        productive = [s for s in active if s.activity_type.is_productive]
        deep_threshold = self.settings.deep_block_threshold.total_seconds()

        return DailyLossReport(
            date=start,
            total_loss_minutes=_sum_minutes(all_loss),
            loss_events=sorted(all_loss, key=lambda event: event.loss_minutes, reverse=True),
            productive_minutes=sum(durations[s.id] for s in productive) / 60.0,
            active_minutes=sum(durations[s.id] for s in active) / 60.0,
            idle_loss_minutes=_sum_minutes(idle_loss),
            distraction_loss_minutes=_sum_minutes(distraction_loss),
            switching_loss_minutes=_sum_minutes(switching_loss),
            recovery_loss_minutes=_sum_minutes(recovery_loss),
            friction_loss_minutes=_sum_minutes(friction_loss),
            micro_distraction_count=len(micro),
            micro_distraction_seconds=sum(item.duration_seconds for item in micro),
            micro_distractions_by_domain=dict(
                Counter(item.domain or "Unknown" for item in micro)
            ),
            deep_block_count=sum(1 for s in productive if durations[s.id] >= deep_threshold),
            switching_rate=self.switching_rate(view),
            fragmentation_score=self.fragmentation_score(view),
        )

    # ------------------------------------------------------------------
    # Detectors

    def detect_idle_loss(self, view: "_DayView") -> list[LossEvent]:
        threshold = self.settings.idle_loss_threshold.total_seconds()
        events = []
        for session in view.sessions:
            duration = view.duration(session)
            if session.focus_state is not FocusState.IDLE or duration < threshold:
                continue
            events.append(
                LossEvent(
                    type=LossType.IDLE,
                    start_time=session.start_time,
                    end_time=view.end_of(session),
                    loss_minutes=duration / 60.0,
                    explanation=f"Idle for {_format_duration(duration)}",
                    affected_sessions=[session.id],
                )
            )
        return events

    def detect_distraction_loss(self, view: "_DayView") -> list[LossEvent]:
        """Past the grace period the whole visit counts, not just the excess."""
        grace = self.settings.distraction_grace_period.total_seconds()
        events = []
        for session in view.active:
            duration = view.duration(session)
            if not self.rules.is_distraction_session(session) or duration <= grace:
                continue
            source = session.primary_domain or session.app_name
            events.append(
                LossEvent(
                    type=LossType.DISTRACTION,
                    start_time=session.start_time,
                    end_time=view.end_of(session),
                    loss_minutes=duration / 60.0,
                    explanation=f"{source} for {_format_duration(duration)}",
                    affected_sessions=[session.id],
                )
            )
        return events

    def detect_switching_storms(self, view: "_DayView") -> list[LossEvent]:
        active = view.active
        if len(active) < 2:
            return []

        window = self.settings.switching_window
        window_hours = window.total_seconds() / 3600.0
        events = []
        index = 0
        while index < len(active):
            window_start = active[index].start_time
            window_end = window_start + window
            members = [
                session
                for session in active[index:]
                if session.start_time < window_end
            ]
            switches = len(members) - 1
            rate = switches / window_hours
            if rate < self.settings.switching_storm_threshold:
                index += 1
                continue

            last = members[-1]
            storm_end = last.end_time or window_end
            storm_seconds = (storm_end - window_start).total_seconds()
            events.append(
                LossEvent(
                    type=LossType.SWITCHING,
                    start_time=window_start,
                    end_time=storm_end,
                    loss_minutes=storm_seconds * self.settings.switching_loss_ratio / 60.0,
                    explanation=(
                        f"{switches} switches in {_format_duration(storm_seconds)} "
                        f"({int(rate)}/hr)"
                    ),
                    affected_sessions=[session.id for session in members],
                )
            )
            # Storms never overlap.
            index += len(members)
        return events

    def detect_recovery_loss(self, view: "_DayView") -> list[LossEvent]:
        grace = self.settings.recovery_grace.total_seconds()
        cap = self.settings.recovery_lookahead.total_seconds()
        sessions = view.sessions
        events = []
        for index, session in enumerate(sessions):
            if not self.rules.is_distraction_session(session) or index + 1 >= len(sessions):
                continue

            recovery = 0.0
            trail: list[Session] = []
            for following in sessions[index + 1 :]:
                if following.activity_type.is_productive:
                    break
                recovery += view.duration(following)
                trail.append(following)
                if recovery >= cap:
                    recovery = cap
                    break

            if recovery <= grace:
                continue
            events.append(
                LossEvent(
                    type=LossType.RECOVERY,
                    start_time=session.end_time or session.start_time,
                    end_time=view.end_of(trail[-1]),
                    loss_minutes=(recovery - grace) / 60.0,
                    explanation=f"Slow return to work after {session.primary_domain or session.app_name}",
                    affected_sessions=[session.id] + [s.id for s in trail],
                )
            )
        return events

    def detect_friction_loss(self, view: "_DayView") -> list[LossEvent]:
        floor = self.settings.fragment_floor.total_seconds()
        ceiling = self.settings.fragmented_block_threshold.total_seconds()
        fragments = [
            session
            for session in view.productive
            if floor <= view.duration(session) < ceiling
        ]
        if len(fragments) < self.settings.friction_min_fragments:
            return []

        fragmented_seconds = sum(view.duration(session) for session in fragments)
        return [
            LossEvent(
                type=LossType.FRICTION,
                start_time=fragments[0].start_time,
                end_time=view.end_of(fragments[-1]),
                loss_minutes=fragmented_seconds * self.settings.friction_loss_ratio / 60.0,
                explanation=f"{len(fragments)} blocks under {int(ceiling // 60)} min",
                affected_sessions=[session.id for session in fragments],
            )
        ]

    def detect_micro_distractions(self, view: "_DayView") -> list[MicroDistraction]:
        """Distractions too short to be charged; surfaced as a habit signal."""
        grace = self.settings.distraction_grace_period.total_seconds()
        return [
            MicroDistraction(session.id, session.primary_domain, view.duration(session))
            for session in view.active
            if self.rules.is_distraction_session(session) and view.duration(session) < grace
        ]

    # ------------------------------------------------------------------
    # Metrics

    def switching_rate(self, view: "_DayView") -> float:
        active = view.active
        if len(active) < 2:
            return 0.0
        hours = sum(view.duration(session) for session in active) / 3600.0
        if hours <= 0:
            return 0.0
        return (len(active) - 1) / hours

    def fragmentation_score(self, view: "_DayView") -> float:
        productive = view.productive
        total = sum(view.duration(session) for session in productive)
        if total <= 0:
            return 0.0
        ceiling = self.settings.fragmented_block_threshold.total_seconds()
        fragmented = sum(
            view.duration(session)
            for session in productive
            if view.duration(session) < ceiling
        )
        return fragmented / total


class _DayView:
    """Sorted sessions for one day with durations evaluated at a fixed instant."""

    def __init__(
        self, sessions: list[Session], durations: dict[str, float], now: datetime
    ) -> None:
        self.sessions = sessions
        self.now = now
        self._durations = durations
        self.active = [s for s in sessions if s.focus_state is FocusState.ACTIVE]
        self.productive = [s for s in self.active if s.activity_type.is_productive]

    def duration(self, session: Session) -> float:
        return self._durations[session.id]

    def end_of(self, session: Session) -> datetime:
        return session.end_time or self.now


def analyze_day(
    sessions: Iterable[Session],
    day: datetime,
    settings: Optional[LossSettings] = None,
    now: Optional[datetime] = None,
) -> DailyLossReport:
    """Build the loss report for ``day`` from a snapshot of sessions."""
    return LossAnalyzer(settings).analyze_day(sessions, day, now=now)


def _sum_minutes(events: list[LossEvent]) -> float:
    return sum(event.loss_minutes for event in events)


def _format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
