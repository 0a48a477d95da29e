"""Groups adjacent sessions into focus threads and suggests a task label."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Mapping, Optional, Sequence

from .config import ClusterSettings
from .models import ActivityType, ClusterResult, FocusState, Session
from .rules import DEFAULT_APP_LABELS, DEFAULT_DOMAIN_LABELS, DistractionRules


@dataclass(slots=True, frozen=True)
class PairContext:
    """Everything a merge rule may look at for two consecutive sessions."""

    previous: Session
    current: Session
    gap_seconds: float
    previous_duration: float
    previous_is_distraction: bool
    current_is_distraction: bool


@dataclass(slots=True, frozen=True)
class ClusterContext:
    sessions: Sequence[Session]
    durations: Mapping[str, float]
    primary_app: Optional[str]
    primary_domain: Optional[str]


MergeRule = Callable[[PairContext, ClusterSettings], Optional[bool]]
LabelResolver = Callable[["ClusterEngine", ClusterContext], Optional[tuple[str, float]]]


# ----------------------------------------------------------------------
# Merge rules, evaluated top to bottom. ``None`` means "no opinion".


def gap_too_long(pair: PairContext, settings: ClusterSettings) -> Optional[bool]:
    if pair.gap_seconds > settings.max_gap.total_seconds():
        return False
    return None


def focus_broken_by_distraction(pair: PairContext, settings: ClusterSettings) -> Optional[bool]:
    previous_focused = (
        pair.previous.activity_type.is_productive and not pair.previous_is_distraction
    )
    if previous_focused and pair.current_is_distraction:
        return False
    return None


def short_interruption(pair: PairContext, settings: ClusterSettings) -> Optional[bool]:
    if (
        pair.previous_duration < settings.short_interruption.total_seconds()
        and not pair.current_is_distraction
    ):
        return True
    return None


def distraction_streak(pair: PairContext, settings: ClusterSettings) -> Optional[bool]:
    if pair.previous_is_distraction and pair.current_is_distraction:
        return True
    return None


def same_surface(pair: PairContext, settings: ClusterSettings) -> Optional[bool]:
    previous, current = pair.previous, pair.current
    if previous.app_identifier == current.app_identifier:
        return True
    if previous.primary_domain and previous.primary_domain == current.primary_domain:
        return True
    return None


def related_activity(pair: PairContext, settings: ClusterSettings) -> Optional[bool]:
    if pair.gap_seconds >= settings.related_gap.total_seconds():
        return None
    previous, current = pair.previous.activity_type, pair.current.activity_type
    if previous.is_productive and current.is_productive:
        return True
    if previous is ActivityType.COMMUNICATION and current is ActivityType.COMMUNICATION:
        return True
    return None


def small_gap(pair: PairContext, settings: ClusterSettings) -> Optional[bool]:
    return pair.gap_seconds < settings.always_merge_gap.total_seconds()


MERGE_RULES: tuple[MergeRule, ...] = (
    gap_too_long,
    focus_broken_by_distraction,
    short_interruption,
    distraction_streak,
    same_surface,
    related_activity,
    small_gap,
)


# ----------------------------------------------------------------------
# Label resolvers, highest priority first.


def user_label(engine: "ClusterEngine", cluster: ClusterContext) -> Optional[tuple[str, float]]:
    for session in cluster.sessions:
        if session.user_label:
            return session.user_label, 1.0
    return None


def inferred_label(engine: "ClusterEngine", cluster: ClusterContext) -> Optional[tuple[str, float]]:
    labels = [session.inferred_label for session in cluster.sessions if session.inferred_label]
    if not labels:
        return None
    return Counter(labels).most_common(1)[0][0], 0.95


def domain_rule_label(engine: "ClusterEngine", cluster: ClusterContext) -> Optional[tuple[str, float]]:
    domain = cluster.primary_domain
    if not domain:
        return None
    for pattern, label in engine.domain_labels:
        if pattern in domain:
            return label, 0.9
    return None


def app_rule_label(engine: "ClusterEngine", cluster: ClusterContext) -> Optional[tuple[str, float]]:
    if not cluster.primary_app:
        return None
    label = engine.app_labels.get(cluster.primary_app)
    return (label, 0.85) if label else None


def activity_type_label(engine: "ClusterEngine", cluster: ClusterContext) -> Optional[tuple[str, float]]:
    totals: dict[ActivityType, float] = {}
    for session in cluster.sessions:
        totals[session.activity_type] = (
            totals.get(session.activity_type, 0.0) + cluster.durations[session.id]
        )
    if not totals:
        return None
    activity = max(totals, key=lambda key: totals[key])
    return activity.value, 0.5


LABEL_RESOLVERS: tuple[LabelResolver, ...] = (
    user_label,
    inferred_label,
    domain_rule_label,
    app_rule_label,
    activity_type_label,
)


class ClusterEngine:
    """Turns a day's sessions into focus threads for end-of-day review."""

    def __init__(
        self,
        settings: Optional[ClusterSettings] = None,
        *,
        domain_labels: Sequence[tuple[str, str]] = DEFAULT_DOMAIN_LABELS,
        app_labels: Optional[Mapping[str, str]] = None,
        rules: type[DistractionRules] = DistractionRules,
        merge_rules: Sequence[MergeRule] = MERGE_RULES,
        label_resolvers: Sequence[LabelResolver] = LABEL_RESOLVERS,
    ) -> None:
        self.settings = settings or ClusterSettings()
        self.domain_labels = tuple(domain_labels)
        self.app_labels = dict(DEFAULT_APP_LABELS if app_labels is None else app_labels)
        self.rules = rules
        self.merge_rules = tuple(merge_rules)
        self.label_resolvers = tuple(label_resolvers)

    def cluster_sessions(
        self, sessions: Iterable[Session], now: Optional[datetime] = None
    ) -> list[ClusterResult]:
        now = now or datetime.now()
        ordered = sorted(
            (s for s in sessions if s.focus_state is FocusState.ACTIVE),
            key=lambda session: session.start_time,
        )
        if not ordered:
            return []
        durations = {session.id: session.duration_at(now) for session in ordered}

        clusters: list[ClusterResult] = []
        run = [ordered[0]]
        for previous, current in zip(ordered, ordered[1:]):
            gap = (current.start_time - (previous.end_time or previous.start_time)).total_seconds()
            pair = PairContext(
                previous=previous,
                current=current,
                gap_seconds=gap,
                previous_duration=durations[previous.id],
                previous_is_distraction=self.rules.is_distraction_session(previous),
                current_is_distraction=self.rules.is_distraction_session(current),
            )
            if self.should_merge(pair):
                run.append(current)
                continue
            cluster = self._finalize(run, durations, now)
            if cluster is not None:
                clusters.append(cluster)
            run = [current]

        cluster = self._finalize(run, durations, now)
        if cluster is not None:
            clusters.append(cluster)
        return clusters

    def should_merge(self, pair: PairContext) -> bool:
        for rule in self.merge_rules:
            decision = rule(pair, self.settings)
            if decision is not None:
                return decision
        return False

    def suggest_label(self, cluster: ClusterContext) -> tuple[Optional[str], float]:
        for resolver in self.label_resolvers:
            suggestion = resolver(self, cluster)
            if suggestion is not None:
                return suggestion
        return None, 0.0

    def _finalize(
        self, run: list[Session], durations: Mapping[str, float], now: datetime
    ) -> Optional[ClusterResult]:
        start = run[0].start_time
        end = run[-1].end_time or now
        if (end - start) < self.settings.min_cluster_duration:
            return None

        app_totals: dict[str, float] = {}
        domain_totals: dict[str, float] = {}
        app_names: dict[str, str] = {}
        for session in run:
            duration = durations[session.id]
            app_totals[session.app_identifier] = app_totals.get(session.app_identifier, 0.0) + duration
            app_names.setdefault(session.app_identifier, session.app_name)
            if session.primary_domain:
                domain_totals[session.primary_domain] = (
                    domain_totals.get(session.primary_domain, 0.0) + duration
                )
        primary_app = max(app_totals, key=lambda key: app_totals[key])
        primary_domain = (
            max(domain_totals, key=lambda key: domain_totals[key]) if domain_totals else None
        )

        label, confidence = self.suggest_label(
            ClusterContext(
                sessions=run,
                durations=durations,
                primary_app=primary_app,
                primary_domain=primary_domain,
            )
        )
        return ClusterResult(
            start_time=start,
            end_time=end,
            sessions=[session.id for session in run],
            suggested_label=label,
            confidence=confidence,
            primary_app=app_names[primary_app],
            primary_domain=primary_domain,
        )


def cluster_sessions(
    sessions: Iterable[Session],
    settings: Optional[ClusterSettings] = None,
    now: Optional[datetime] = None,
) -> list[ClusterResult]:
    return ClusterEngine(settings).cluster_sessions(sessions, now=now)
