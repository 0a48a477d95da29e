"""Configuration models and helpers for the focus tracker."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(slots=True)
class TrackerSettings:
    """Runtime configuration for the session state machine."""

    commit_threshold: timedelta = timedelta(seconds=2)
    merge_threshold: timedelta = timedelta(seconds=30)
    commit_check_slack: timedelta = timedelta(milliseconds=100)
    heartbeat_interval: timedelta = timedelta(seconds=30)
    orphan_buffer: timedelta = timedelta(seconds=60)

    @classmethod
    def from_seconds(
        cls,
        commit_seconds: float = 2.0,
        merge_seconds: float = 30.0,
        heartbeat_seconds: float | None = None,
        orphan_buffer_seconds: float | None = None,
    ) -> "TrackerSettings":
        heartbeat = heartbeat_seconds if heartbeat_seconds is not None else 30.0
        # An orphan can't have lived much longer than one missed heartbeat.
        orphan_buffer = (
            orphan_buffer_seconds
            if orphan_buffer_seconds is not None
            else max(heartbeat * 2, 60.0)
        )
        return cls(
            commit_threshold=timedelta(seconds=commit_seconds),
            merge_threshold=timedelta(seconds=merge_seconds),
            heartbeat_interval=timedelta(seconds=heartbeat),
            orphan_buffer=timedelta(seconds=orphan_buffer),
        )


@dataclass(slots=True)
class LossSettings:
    """Thresholds for the daily loss analysis."""

    idle_loss_threshold: timedelta = timedelta(minutes=2)
    distraction_grace_period: timedelta = timedelta(minutes=2)
    switching_window: timedelta = timedelta(minutes=15)
    switching_storm_threshold: float = 40.0
    switching_loss_ratio: float = 0.2
    recovery_grace: timedelta = timedelta(minutes=2)
    recovery_lookahead: timedelta = timedelta(minutes=10)
    fragment_floor: timedelta = timedelta(seconds=30)
    fragmented_block_threshold: timedelta = timedelta(minutes=3)
    friction_min_fragments: int = 3
    friction_loss_ratio: float = 0.2
    deep_block_threshold: timedelta = timedelta(minutes=20)

    @classmethod
    def from_minutes(
        cls,
        idle_minutes: float = 2.0,
        grace_minutes: float = 2.0,
        storm_per_hour: float = 40.0,
        deep_block_minutes: float = 20.0,
    ) -> "LossSettings":
        return cls(
            idle_loss_threshold=timedelta(minutes=idle_minutes),
            distraction_grace_period=timedelta(minutes=grace_minutes),
            switching_storm_threshold=storm_per_hour,
            deep_block_threshold=timedelta(minutes=deep_block_minutes),
        )


@dataclass(slots=True)
class ClusterSettings:
    """Thresholds for grouping sessions into focus threads."""

    max_gap: timedelta = timedelta(minutes=5)
    short_interruption: timedelta = timedelta(minutes=2)
    related_gap: timedelta = timedelta(seconds=60)
    always_merge_gap: timedelta = timedelta(seconds=30)
    min_cluster_duration: timedelta = timedelta(minutes=3)

    @classmethod
    def from_minutes(
        cls,
        max_gap_minutes: float = 5.0,
        min_cluster_minutes: float = 3.0,
    ) -> "ClusterSettings":
        return cls(
            max_gap=timedelta(minutes=max_gap_minutes),
            min_cluster_duration=timedelta(minutes=min_cluster_minutes),
        )
