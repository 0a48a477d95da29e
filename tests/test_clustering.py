"""Tests for focus_tracker.clustering."""
from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import CHROME, FINDER, SLACK, T0, VSCODE
from focus_tracker.clustering import (
    ClusterEngine,
    PairContext,
    cluster_sessions,
    distraction_streak,
    focus_broken_by_distraction,
    gap_too_long,
    related_activity,
    same_surface,
    short_interruption,
    small_gap,
)
from focus_tracker.config import ClusterSettings
from focus_tracker.models import ActivityType, FocusState

NOW = T0 + timedelta(hours=12)


def _pair(previous, current, gap: float, previous_distraction=False, current_distraction=False):
    return PairContext(
        previous=previous,
        current=current,
        gap_seconds=gap,
        previous_duration=previous.duration,
        previous_is_distraction=previous_distraction,
        current_is_distraction=current_distraction,
    )


class TestLabelPriority:
    def test_user_label_beats_domain_rule(self, make_session):
        session = make_session(
            CHROME, 0, 600, ActivityType.BROWSER, domain="github.com", user_label="Deep Work"
        )
        [cluster] = cluster_sessions([session], now=NOW)

        assert cluster.suggested_label == "Deep Work"
        assert cluster.confidence == 1.0

    def test_inferred_label_majority(self, make_session):
        sessions = [
            make_session(VSCODE, 0, 300, inferred_label="Refactoring"),
            make_session(VSCODE, 310, 300, inferred_label="Refactoring"),
            make_session(VSCODE, 620, 300, inferred_label="Reviewing"),
        ]
        [cluster] = cluster_sessions(sessions, now=NOW)
        assert (cluster.suggested_label, cluster.confidence) == ("Refactoring", 0.95)

    def test_domain_rule(self, make_session):
        session = make_session(CHROME, 0, 600, ActivityType.BROWSER, domain="github.com")
        [cluster] = cluster_sessions([session], now=NOW)
        assert (cluster.suggested_label, cluster.confidence) == ("Coding", 0.9)
        assert cluster.primary_domain == "github.com"

    def test_app_rule(self, make_session):
        [cluster] = cluster_sessions([make_session(VSCODE, 0, 600)], now=NOW)
        assert (cluster.suggested_label, cluster.confidence) == ("Coding", 0.85)
        assert cluster.primary_app == "VSCode"

    @pytest.mark.parametrize(
        "domain, label",
        [
            ("www.behance.net", "Design Inspiration"),
            ("outlook.live.com", "Email"),
            ("platform.openai.com", "AI Research"),
        ],
    )
    def test_more_domain_rules(self, make_session, domain, label):
        session = make_session(CHROME, 0, 600, ActivityType.BROWSER, domain=domain)
        [cluster] = cluster_sessions([session], now=NOW)
        assert cluster.suggested_label == label

    def test_illustrator_app_rule(self, make_session):
        [cluster] = cluster_sessions([make_session("com.adobe.illustrator", 0, 600)], now=NOW)
        assert (cluster.suggested_label, cluster.confidence) == ("Design", 0.85)

    def test_activity_type_fallback(self, make_session):
        [cluster] = cluster_sessions([make_session(FINDER, 0, 600, ActivityType.ADMIN)], now=NOW)
        assert (cluster.suggested_label, cluster.confidence) == ("Admin", 0.5)

    def test_no_resolver_matches(self, make_session):
        engine = ClusterEngine(label_resolvers=())
        [cluster] = engine.cluster_sessions([make_session(VSCODE, 0, 600)], now=NOW)
        assert cluster.suggested_label is None
        assert cluster.confidence == 0.0
        assert cluster.label == "Unlabeled"


class TestGrouping:
    def test_long_gap_splits(self, make_session):
        sessions = [make_session(VSCODE, 0, 600), make_session(VSCODE, 600 + 400, 600)]
        assert len(cluster_sessions(sessions, now=NOW)) == 2

    def test_distraction_breaks_focus(self, make_session):
        sessions = [
            make_session(VSCODE, 0, 600),
            make_session(CHROME, 600, 300, ActivityType.BROWSER, domain="youtube.com"),
        ]
        clusters = cluster_sessions(sessions, now=NOW)
        assert [c.session_count for c in clusters] == [1, 1]

    def test_distraction_streak_merges(self, make_session):
        sessions = [
            make_session(CHROME, 0, 300, ActivityType.BROWSER, domain="youtube.com"),
            make_session(CHROME, 300, 300, ActivityType.BROWSER, domain="reddit.com"),
        ]
        [cluster] = cluster_sessions(sessions, now=NOW)
        assert cluster.session_count == 2

    def test_short_interruption_absorbed(self, make_session):
        sessions = [
            make_session(VSCODE, 0, 600),
            make_session(SLACK, 600, 60, ActivityType.COMMUNICATION),
            make_session(VSCODE, 660, 600),
        ]
        [cluster] = cluster_sessions(sessions, now=NOW)
        assert cluster.session_count == 3
        assert cluster.duration_seconds == pytest.approx(1260.0)

    def test_short_clusters_dropped(self, make_session):
        sessions = [
            make_session(VSCODE, 0, 120),
            make_session(VSCODE, 1000, 600),
        ]
        [cluster] = cluster_sessions(sessions, now=NOW)
        assert cluster.sessions == [sessions[1].id]

    def test_primary_domain_by_time(self, make_session):
        sessions = [
            make_session(CHROME, 0, 60, ActivityType.BROWSER, domain="docs.google.com"),
            make_session(CHROME, 60, 60, ActivityType.BROWSER, domain="docs.google.com"),
            make_session(CHROME, 120, 600, ActivityType.BROWSER, domain="github.com"),
        ]
        [cluster] = cluster_sessions(sessions, now=NOW)
        assert cluster.primary_domain == "github.com"

    def test_idle_sessions_ignored(self, make_session):
        idle = make_session(VSCODE, 0, 600, ActivityType.IDLE, state=FocusState.IDLE)
        assert cluster_sessions([idle], now=NOW) == []

    def test_empty_input(self):
        assert cluster_sessions([], now=NOW) == []

    def test_clustering_is_idempotent(self, make_session):
        sessions = [
            make_session(VSCODE, 0, 600),
            make_session(SLACK, 600, 60, ActivityType.COMMUNICATION),
            make_session(CHROME, 700, 400, ActivityType.BROWSER, domain="youtube.com"),
        ]
        engine = ClusterEngine(ClusterSettings.from_minutes(min_cluster_minutes=1))
        assert engine.cluster_sessions(sessions, now=NOW) == engine.cluster_sessions(
            sessions, now=NOW
        )


class TestMergeRules:
    def test_gap_too_long(self, make_session):
        settings = ClusterSettings()
        a, b = make_session(VSCODE, 0, 60), make_session(VSCODE, 500, 60)
        assert gap_too_long(_pair(a, b, 440), settings) is False
        assert gap_too_long(_pair(a, b, 10), settings) is None

    def test_focus_broken_by_distraction(self, make_session):
        a = make_session(VSCODE, 0, 600)
        b = make_session(CHROME, 600, 60, ActivityType.BROWSER, domain="youtube.com")
        assert focus_broken_by_distraction(_pair(a, b, 0, current_distraction=True), ClusterSettings()) is False

    def test_short_interruption_requires_non_distraction(self, make_session):
        a = make_session(SLACK, 0, 30, ActivityType.COMMUNICATION)
        b = make_session(CHROME, 30, 60, ActivityType.BROWSER, domain="youtube.com")
        settings = ClusterSettings()
        assert short_interruption(_pair(a, b, 0), settings) is True
        assert short_interruption(_pair(a, b, 0, current_distraction=True), settings) is None

    def test_related_activity(self, make_session):
        settings = ClusterSettings()
        a = make_session(VSCODE, 0, 600)
        b = make_session(FINDER, 640, 600, ActivityType.ADMIN)
        assert related_activity(_pair(a, b, 40), settings) is True
        assert related_activity(_pair(a, b, 90), settings) is None

    def test_small_gap_is_the_last_word(self, make_session):
        settings = ClusterSettings()
        a = make_session(SLACK, 0, 600, ActivityType.COMMUNICATION)
        b = make_session("com.example.tool", 620, 600, ActivityType.UNKNOWN)
        assert small_gap(_pair(a, b, 20), settings) is True
        assert small_gap(_pair(a, b, 45), settings) is False

    def test_distraction_streak(self, make_session):
        settings = ClusterSettings()
        a = make_session(CHROME, 0, 300, ActivityType.BROWSER, domain="youtube.com")
        b = make_session(CHROME, 300, 300, ActivityType.BROWSER, domain="reddit.com")
        both = _pair(a, b, 0, previous_distraction=True, current_distraction=True)
        assert distraction_streak(both, settings) is True
        assert distraction_streak(_pair(a, b, 0, previous_distraction=True), settings) is None
        assert distraction_streak(_pair(a, b, 0, current_distraction=True), settings) is None

    def test_same_surface(self, make_session):
        settings = ClusterSettings()
        chrome = make_session(CHROME, 0, 600, ActivityType.BROWSER, domain="github.com")
        safari = make_session("com.apple.Safari", 690, 600, ActivityType.BROWSER, domain="github.com")
        assert same_surface(_pair(chrome, make_session(CHROME, 690, 600), 90), settings) is True
        assert same_surface(_pair(chrome, safari, 90), settings) is True
        assert same_surface(_pair(make_session(VSCODE, 0, 600), safari, 90), settings) is None

    def test_same_domain_across_browsers_is_one_cluster(self, make_session):
        sessions = [
            make_session(CHROME, 0, 600, ActivityType.BROWSER, domain="github.com"),
            make_session("com.apple.Safari", 690, 600, ActivityType.BROWSER, domain="github.com"),
        ]
        [cluster] = cluster_sessions(sessions, now=NOW)
        assert cluster.session_count == 2
        assert cluster.primary_domain == "github.com"
