"""Tests for focus_tracker.loss."""
from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import CHROME, FINDER, SLACK, T0, VSCODE
from focus_tracker.config import LossSettings
from focus_tracker.loss import LossAnalyzer, analyze_day
from focus_tracker.models import ActivityType, FocusState, LossType

NOW = T0 + timedelta(hours=12)


def _events(report, kind: LossType):
    return [event for event in report.loss_events if event.type is kind]


class TestIdleLoss:
    def test_long_idle_counts_in_full(self, make_session):
        idle = make_session(VSCODE, 0, 300, ActivityType.IDLE, state=FocusState.IDLE)
        report = analyze_day([idle], T0, now=NOW)

        assert report.idle_loss_minutes == pytest.approx(5.0)
        [event] = _events(report, LossType.IDLE)
        assert event.affected_sessions == [idle.id]

    def test_short_idle_is_free(self, make_session):
        idle = make_session(VSCODE, 0, 90, ActivityType.IDLE, state=FocusState.IDLE)
        assert analyze_day([idle], T0, now=NOW).idle_loss_minutes == 0.0


class TestDistractionLoss:
    def test_within_grace_is_a_micro_distraction(self, make_session):
        visit = make_session(CHROME, 0, 90, ActivityType.BROWSER, domain="youtube.com")
        report = analyze_day([visit], T0, now=NOW)

        assert report.distraction_loss_minutes == 0.0
        assert report.micro_distraction_count == 1
        assert report.micro_distraction_seconds == pytest.approx(90.0)
        assert report.micro_distractions_by_domain == {"youtube.com": 1}

    def test_past_grace_counts_whole_visit(self, make_session):
        visit = make_session(CHROME, 0, 150, ActivityType.BROWSER, domain="youtube.com")
        report = analyze_day([visit], T0, now=NOW)

        assert report.distraction_loss_minutes == pytest.approx(2.5)
        assert report.micro_distraction_count == 0

    def test_entertainment_app_is_a_distraction(self, make_session):
        music = make_session("com.spotify.client", 0, 600, ActivityType.ENTERTAINMENT)
        report = analyze_day([music], T0, now=NOW)
        assert report.distraction_loss_minutes == pytest.approx(10.0)

    def test_work_domain_is_not(self, make_session):
        visit = make_session(CHROME, 0, 600, ActivityType.BROWSER, domain="github.com")
        assert analyze_day([visit], T0, now=NOW).distraction_loss_minutes == 0.0


class TestSwitchingStorms:
    def _switches(self, make_session, count: int, every: float):
        apps = [VSCODE, FINDER]
        return [
            make_session(apps[index % 2], index * every, every)
            for index in range(count)
        ]

    def test_moderate_switching_is_not_a_storm(self, make_session):
        report = analyze_day(self._switches(make_session, 10, 90), T0, now=NOW)
        assert _events(report, LossType.SWITCHING) == []

    def test_rapid_switching_is_one_storm(self, make_session):
        sessions = self._switches(make_session, 20, 45)
        report = analyze_day(sessions, T0, now=NOW)

        [storm] = _events(report, LossType.SWITCHING)
        assert len(storm.affected_sessions) == 20
        assert storm.start_time == T0
        assert storm.end_time == T0 + timedelta(seconds=900)
        assert storm.loss_minutes == pytest.approx(3.0)

    def test_storms_do_not_overlap(self, make_session):
        sessions = self._switches(make_session, 40, 45)
        storms = _events(analyze_day(sessions, T0, now=NOW), LossType.SWITCHING)

        assert len(storms) == 2
        first, second = sorted(storms, key=lambda event: event.start_time)
        assert not set(first.affected_sessions) & set(second.affected_sessions)


class TestRecoveryLoss:
    def test_slow_return_to_work(self, make_session):
        sessions = [
            make_session(CHROME, 0, 200, ActivityType.BROWSER, domain="youtube.com"),
            make_session(SLACK, 200, 240, ActivityType.COMMUNICATION),
            make_session(VSCODE, 440, 600),
        ]
        report = analyze_day(sessions, T0, now=NOW)

        [event] = _events(report, LossType.RECOVERY)
        assert event.loss_minutes == pytest.approx(2.0)
        assert event.affected_sessions == [sessions[0].id, sessions[1].id]

    def test_quick_return_is_free(self, make_session):
        sessions = [
            make_session(CHROME, 0, 200, ActivityType.BROWSER, domain="reddit.com"),
            make_session(SLACK, 200, 60, ActivityType.COMMUNICATION),
            make_session(VSCODE, 260, 600),
        ]
        assert _events(analyze_day(sessions, T0, now=NOW), LossType.RECOVERY) == []

    def test_recovery_is_capped_at_lookahead(self, make_session):
        sessions = [
            make_session(CHROME, 0, 60, ActivityType.BROWSER, domain="youtube.com"),
            make_session(VSCODE, 60, 1200, ActivityType.IDLE, state=FocusState.IDLE),
            make_session(VSCODE, 1260, 600),
        ]
        [event] = _events(analyze_day(sessions, T0, now=NOW), LossType.RECOVERY)
        assert event.loss_minutes == pytest.approx(8.0)


class TestFrictionLoss:
    def test_many_short_blocks(self, make_session):
        sessions = [make_session(VSCODE, index * 400, 60) for index in range(4)]
        report = analyze_day(sessions, T0, now=NOW)

        [event] = _events(report, LossType.FRICTION)
        assert event.loss_minutes == pytest.approx(0.8)
        assert report.friction_loss_minutes == pytest.approx(0.8)

    def test_few_short_blocks_are_free(self, make_session):
        sessions = [make_session(VSCODE, index * 400, 60) for index in range(2)]
        assert _events(analyze_day(sessions, T0, now=NOW), LossType.FRICTION) == []

    def test_blips_below_floor_are_ignored(self, make_session):
        sessions = [make_session(VSCODE, index * 400, 10) for index in range(5)]
        assert _events(analyze_day(sessions, T0, now=NOW), LossType.FRICTION) == []


class TestReportMetrics:
    def test_deep_blocks_and_fragmentation(self, make_session):
        sessions = [
            make_session(VSCODE, 0, 60),
            make_session(FINDER, 60, 1500, ActivityType.ADMIN),
        ]
        report = analyze_day(sessions, T0, now=NOW)

        assert report.deep_block_count == 1
        assert report.productive_minutes == pytest.approx(26.0)
        assert report.active_minutes == pytest.approx(26.0)
        assert report.fragmentation_score == pytest.approx(60 / 1560)
        assert report.switching_rate == pytest.approx(1 / (1560 / 3600))

    def test_empty_day(self):
        report = analyze_day([], T0, now=NOW)

        assert report.total_loss_minutes == 0.0
        assert report.loss_events == []
        assert report.productive_minutes == 0.0
        assert report.deep_block_count == 0
        assert report.switching_rate == 0.0
        assert report.fragmentation_score == 0.0

    def test_total_is_sum_of_categories(self, make_session):
        sessions = [
            make_session(VSCODE, 0, 300, ActivityType.IDLE, state=FocusState.IDLE),
            make_session(CHROME, 300, 150, ActivityType.BROWSER, domain="youtube.com"),
            make_session(SLACK, 450, 300, ActivityType.COMMUNICATION),
            make_session(VSCODE, 750, 600),
        ]
        report = analyze_day(sessions, T0, now=NOW)

        assert report.total_loss_minutes == pytest.approx(
            report.idle_loss_minutes
            + report.distraction_loss_minutes
            + report.switching_loss_minutes
            + report.recovery_loss_minutes
            + report.friction_loss_minutes
        )
        losses = [event.loss_minutes for event in report.loss_events]
        assert losses == sorted(losses, reverse=True)

    def test_other_days_are_excluded(self, make_session):
        yesterday = make_session(
            VSCODE, 0, 300, ActivityType.IDLE, state=FocusState.IDLE, start=T0 - timedelta(days=1)
        )
        assert analyze_day([yesterday], T0, now=NOW).idle_loss_minutes == 0.0

    def test_open_session_measured_at_now(self, make_session):
        idle = make_session(VSCODE, 0, 0, ActivityType.IDLE, state=FocusState.IDLE)
        idle.end_time = None
        idle.accumulated_duration = 0.0
        report = analyze_day([idle], T0, now=T0 + timedelta(minutes=4))
        assert report.idle_loss_minutes == pytest.approx(4.0)

    def test_analysis_is_idempotent(self, make_session):
        sessions = [
            make_session(CHROME, 0, 150, ActivityType.BROWSER, domain="youtube.com"),
            make_session(VSCODE, 150, 60),
        ]
        analyzer = LossAnalyzer(LossSettings.from_minutes(grace_minutes=1))
        assert analyzer.analyze_day(sessions, T0, now=NOW) == analyzer.analyze_day(
            sessions, T0, now=NOW
        )
