"""Simple reporting utilities for CLI output."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

from .clustering import ClusterEngine
from .config import ClusterSettings, LossSettings
from .db import database_connection, fetch_sessions_for_day
from .loss import LossAnalyzer
from .models import ClusterResult, DailyLossReport


class ReportPrinter:
    """Render human-readable loss reports and focus threads in the console."""

    def __init__(
        self,
        db_path: Path,
        loss_settings: Optional[LossSettings] = None,
        cluster_settings: Optional[ClusterSettings] = None,
    ) -> None:
        self.db_path = Path(db_path)
        self.analyzer = LossAnalyzer(loss_settings)
        self.engine = ClusterEngine(cluster_settings)

    def print_loss_report(self, day: datetime) -> None:
        with database_connection(self.db_path) as conn:
            sessions = fetch_sessions_for_day(conn, day)
        if not sessions:
            print("No sessions recorded for the selected day.")
            return
        report = self.analyzer.analyze_day(sessions, day)
        for line in render_loss_report(report):
            print(line)

    def print_clusters(self, day: datetime) -> None:
        with database_connection(self.db_path) as conn:
            sessions = fetch_sessions_for_day(conn, day)
        clusters = self.engine.cluster_sessions(sessions)
        if not clusters:
            print("No focus threads for the selected day.")
            return
        for line in render_clusters(clusters):
            print(line)


def render_loss_report(report: DailyLossReport) -> list[str]:
    lines = [
        f"Loss report for {report.date.strftime('%Y-%m-%d')}",
        "-" * 40,
        f"Active time:      {format_duration(report.active_minutes * 60)}",
        f"Productive time:  {format_duration(report.productive_minutes * 60)}",
        f"Lost time:        {format_duration(report.total_loss_minutes * 60)}",
        "",
        f"  Idle gaps       {report.idle_loss_minutes:6.1f} min",
        f"  Distractions    {report.distraction_loss_minutes:6.1f} min",
        f"  Switching       {report.switching_loss_minutes:6.1f} min",
        f"  Recovery        {report.recovery_loss_minutes:6.1f} min",
        f"  Fragmentation   {report.friction_loss_minutes:6.1f} min",
        "",
        f"Deep work blocks: {report.deep_block_count}",
        f"Switching rate:   {report.switching_rate:.1f}/hr",
        f"Fragmentation:    {report.fragmentation_score:.0%}",
    ]
    if report.micro_distraction_count:
        lines.append(
            f"Quick checks:     {report.micro_distraction_count} "
            f"({format_duration(report.micro_distraction_seconds)})"
        )
        top = sorted(
            report.micro_distractions_by_domain.items(),
            key=lambda item: item[1],
            reverse=True,
        )
        for domain, count in top[:5]:
            lines.append(f"  {domain:<30} {count}x")

    if report.loss_events:
        lines.append("")
        lines.append("Biggest losses:")
        for event in report.loss_events[:5]:
            lines.append(
                f"  {event.start_time.strftime('%H:%M')} {event.type.value:<16} "
                f"{event.loss_minutes:5.1f} min  {event.explanation}"
            )
    return lines


def render_clusters(clusters: list[ClusterResult]) -> list[str]:
    lines = []
    for cluster in clusters:
        surface = cluster.primary_domain or cluster.primary_app or "-"
        lines.append(
            f"{cluster.start_time.strftime('%H:%M')}-{cluster.end_time.strftime('%H:%M')} "
            f"{cluster.label[:28]:<28} {format_duration(cluster.duration_seconds)} "
            f"({cluster.session_count} sessions, {cluster.confidence:.0%}) {surface}"
        )
    return lines


def format_duration(seconds: float) -> str:
    total_seconds = int(round(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
