"""Session state machine: turns focus observations into persisted sessions."""

from __future__ import annotations

import dataclasses
import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from .config import TrackerSettings
from .db import (
    delete_session,
    fetch_app_rule,
    fetch_open_sessions,
    reclassify_app_sessions,
    save_session,
    seed_app_rules,
    update_session_labels,
    upsert_app_rule,
)
from .models import (
    ActivityType,
    AppCategoryRule,
    BrowserContext,
    BrowserVisit,
    FocusState,
    Observation,
    PendingSegment,
    Session,
    UnknownReason,
)
from .normalization import normalize_domain, normalize_page_title
from .rules import DEFAULT_APP_RULES, DistractionRules

logger = logging.getLogger(__name__)

RuleLookup = Callable[[str], Optional[AppCategoryRule]]
BrowserContextProvider = Callable[[], Optional[tuple[Optional[str], Optional[str]]]]
LabelingHook = Callable[[Session, Optional[BrowserContext]], Optional[str]]


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> Cancellable: ...


class TimerScheduler:
    """Runs callbacks on daemon ``threading.Timer`` threads."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> Cancellable:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


@dataclasses.dataclass(slots=True)
class _RecentSession:
    app_identifier: str
    closed_at: datetime
    session: Session


class SessionStateMachine:
    """Single writer of Session and BrowserVisit records.

    Every entry point (observations, domain changes, commit timers, the
    heartbeat, labeling write-backs) takes ``self._lock`` so that at most one
    session is ever open.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        settings: Optional[TrackerSettings] = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
        scheduler: Optional[Scheduler] = None,
        rule_lookup: Optional[RuleLookup] = None,
        browser_context: Optional[BrowserContextProvider] = None,
        classifier: Optional[LabelingHook] = None,
    ) -> None:
        self._conn = conn
        self.settings = settings or TrackerSettings()
        self._clock = clock
        self._scheduler = scheduler or TimerScheduler()
        self._rule_lookup = rule_lookup or self._lookup_rule_in_db
        self._browser_context = browser_context
        self._classifier = classifier
        self._labeling_pool: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="labeling")
            if classifier
            else None
        )

        self._lock = threading.RLock()
        self._current: Optional[Session] = None
        self._current_visit: Optional[BrowserVisit] = None
        self._pending: Optional[PendingSegment] = None
        self._pending_token = 0
        self._timers: dict[int, Cancellable] = {}
        self._recent: list[_RecentSession] = []
        self._last_observation: Optional[Observation] = None
        self._active_task_id: Optional[str] = None
        self._last_error: Optional[str] = None
        self._closed = False
        self._heartbeat_stop = threading.Event()
        self._heartbeat_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Introspection

    @property
    def current_session(self) -> Optional[Session]:
        with self._lock:
            return self._current

    @property
    def pending_segment(self) -> Optional[PendingSegment]:
        with self._lock:
            return self._pending

    @property
    def active_task_id(self) -> Optional[str]:
        with self._lock:
            return self._active_task_id

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    @property
    def recent_session_ids(self) -> list[str]:
        with self._lock:
            return [entry.session.id for entry in self._recent]

    # ------------------------------------------------------------------
    # Lifecycle

    def start(self, *, heartbeat: bool = True) -> int:
        """Seed default rules, close orphans and start the heartbeat.

        Returns the number of orphaned sessions that were closed.
        """
        try:
            added = seed_app_rules(
                self._conn,
                (AppCategoryRule(app, kind, ambiguous) for app, kind, ambiguous in DEFAULT_APP_RULES),
            )
            if added:
                logger.info("Seeded %d default app category rules.", added)
        except sqlite3.Error:
            logger.exception("Failed to seed default app category rules.")

        recovered = self.recover_orphans()
        if heartbeat:
            self._start_heartbeat()
        logger.info("Session state machine started.")
        return recovered

    def recover_orphans(self) -> int:
        """Close sessions left open by an ungraceful shutdown.

        The end is capped at the last checkpoint plus ``orphan_buffer`` rather
        than "now", since the crash time is unknown.
        """
        buffer = self.settings.orphan_buffer
        with self._lock:
            try:
                orphans = fetch_open_sessions(self._conn)
            except sqlite3.Error:
                logger.exception("Failed to load orphaned sessions.")
                return 0
            live_id = self._current.id if self._current else None
            closed = 0
            for session in orphans:
                if session.id == live_id:
                    continue
                last_active = session.last_resumed_at or session.start_time
                end = last_active + buffer
                session.accumulated_duration += buffer.total_seconds()
                session.end_time = end
                session.last_resumed_at = None
                for visit in session.browser_visits:
                    if visit.end_time is None:
                        visit.end_time = end
                _update_primary_domain(session, end)
                self._persist(session)
                closed += 1
            if closed:
                logger.info(
                    "Closed %d orphaned sessions from a previous run (capped at +%ds).",
                    closed,
                    int(buffer.total_seconds()),
                )
            return closed

    def shutdown(self) -> None:
        """Close the open session, cancel timers and stop background work."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._close_current(self._clock())
            self._pending = None
            self._pending_token += 1
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
        self._heartbeat_stop.set()
        if self._heartbeat_thread and self._heartbeat_thread is not threading.current_thread():
            self._heartbeat_thread.join(timeout=5)
        if self._labeling_pool:
            self._labeling_pool.shutdown(wait=False)
        logger.info("Session state machine stopped.")

    def on_sleep(self) -> None:
        """System is going to sleep; stop accounting until wake."""
        with self._lock:
            if self._closed:
                return
            logger.info("System sleeping; closing current session.")
            self._discard_pending("system sleep")
            self._close_current(self._clock())

    def on_wake(self) -> None:
        """System woke up; re-evaluate whatever was last in focus."""
        with self._lock:
            if self._closed or self._last_observation is None:
                return
            logger.info("System woke; resuming tracking.")
            last = self._last_observation
            self._handle_observation(dataclasses.replace(last, timestamp=self._clock()))

    # ------------------------------------------------------------------
    # Inbound events

    def accepts(self, timestamp: datetime) -> bool:
        """Whether an event stamped ``timestamp`` would be in order right now."""
        with self._lock:
            return not self._closed and self._accepts(timestamp)

    def on_observation(self, observation: Observation) -> bool:
        """Process one focus/idle observation. Returns False if it was rejected."""
        with self._lock:
            if self._closed:
                logger.debug("Ignoring observation after shutdown: %s", observation)
                return False
            if not self._accepts(observation.timestamp):
                logger.warning(
                    "Rejected out-of-order observation for %s at %s",
                    observation.app_identifier,
                    observation.timestamp,
                )
                return False
            self._handle_observation(observation)
            return True

    def on_domain_change(
        self,
        old_domain: Optional[str],
        new_domain: Optional[str],
        title: Optional[str] = None,
        context: Optional[BrowserContext] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[Session]:
        """Split the open browser session so each domain gets its own session."""
        with self._lock:
            if self._closed:
                return None
            now = timestamp or self._clock()
            domain = normalize_domain(new_domain)
            session = self._current
            if session is None:
                logger.debug("Domain change to %s with no open session; ignored.", domain)
                return None
            if domain is None:
                logger.warning("Domain change without a usable domain (%r); ignored.", new_domain)
                return None
            if not self._accepts(now):
                logger.warning("Rejected out-of-order domain change to %s at %s", domain, now)
                return None
            now = self._split_point(now)

            page_title = normalize_page_title(title)
            if not session.browser_visits:
                # The session has no domain yet, so it simply adopts this one.
                self._start_visit(session, domain, page_title, context, now)
                session.primary_domain = domain
                session.primary_title = page_title
                self._persist(session)
                return session

            if domain == session.primary_domain and self._current_visit is not None:
                return session

            logger.debug("Domain change %s -> %s", old_domain, domain)
            self._close_current(now)
            new_session = Session(
                app_identifier=session.app_identifier,
                app_name=session.app_name,
                focus_state=session.focus_state,
                start_time=now,
                activity_type=ActivityType.BROWSER,
                confidence=1.0,
                needs_review=False,
                primary_domain=domain,
                primary_title=page_title,
                task_id=self._active_task_id,
            )
            self._start_visit(new_session, domain, page_title, context, now)
            self._current = new_session
            self._persist(new_session)
            logger.info("New browser session for %s", domain)
            self._request_label(new_session, context)
            return new_session

    def check_pending_commit(self, now: Optional[datetime] = None) -> Optional[Session]:
        """Commit the pending segment if it has held focus long enough."""
        with self._lock:
            if self._closed or self._pending is None:
                return None
            now = now or self._clock()
            elapsed = now - self._pending.start_time
            if elapsed >= self.settings.commit_threshold:
                return self._commit_pending(now)
            return None

    def heartbeat(self, now: Optional[datetime] = None) -> None:
        """Fold the live segment into ``accumulated_duration`` and persist."""
        with self._lock:
            session = self._current
            if self._closed or session is None:
                return
            now = now or self._clock()
            active_start = session.last_resumed_at or session.start_time
            if now <= active_start:
                return
            session.accumulated_duration += (now - active_start).total_seconds()
            session.last_resumed_at = now
            self._persist(session)
            logger.debug(
                "Heartbeat saved %s (%ds)", session.app_name, int(session.accumulated_duration)
            )

    # ------------------------------------------------------------------
    # Task and label commands

    def start_task(self, task_id: str) -> None:
        """Declare the task the user is working on; later sessions link to it."""
        with self._lock:
            if self._closed or self._active_task_id == task_id:
                return
            logger.info("Switching focus to task %s", task_id)
            self._restart_with_task(task_id)

    def stop_task(self) -> None:
        with self._lock:
            if self._closed or self._active_task_id is None:
                return
            logger.info("Stopping active task %s", self._active_task_id)
            self._restart_with_task(None)

    def set_user_label(self, session_id: str, label: Optional[str]) -> None:
        with self._lock:
            live = self._live_session(session_id)
            if live is not None:
                live.user_label = label
                self._persist(live)
                return
            update_session_labels(self._conn, session_id, user_label=label)

    def link_task(self, session_id: str, task_id: Optional[str]) -> None:
        with self._lock:
            live = self._live_session(session_id)
            if live is not None:
                live.task_id = task_id
                self._persist(live)
                return
            update_session_labels(self._conn, session_id, task_id=task_id)

    def apply_inferred_label(self, session_id: str, label: Optional[str]) -> None:
        with self._lock:
            live = self._live_session(session_id)
            if live is not None:
                live.inferred_label = label
                self._persist(live)
                return
            update_session_labels(self._conn, session_id, inferred_label=label)

    def map_app(
        self, app_identifier: str, activity_type: ActivityType, is_ambiguous: bool = False
    ) -> int:
        """Store a category rule and re-classify existing sessions of that app."""
        rule = AppCategoryRule(app_identifier, activity_type, is_ambiguous)
        with self._lock:
            upsert_app_rule(self._conn, rule)
            updated = reclassify_app_sessions(self._conn, rule)
            for live in self._live_sessions():
                if live.app_identifier == app_identifier and live.focus_state is FocusState.ACTIVE:
                    _apply_rule(live, rule)
        logger.info("Mapped %s -> %s (%d sessions updated)", app_identifier, activity_type.value, updated)
        return updated

    # ------------------------------------------------------------------
    # Core transitions (caller holds the lock)

    def _accepts(self, timestamp: datetime) -> bool:
        last = self._last_observation
        if last is not None and timestamp < last.timestamp:
            return False
        session = self._current
        if session is not None and timestamp < session.start_time:
            return False
        if self._pending is not None and timestamp < self._pending.start_time:
            return False
        return True

    def _handle_observation(self, observation: Observation) -> None:
        now = observation.timestamp
        self._last_observation = observation
        key = (observation.app_identifier, observation.focus_state)

        # Catch up on a commit whose timer has not fired yet.
        if self._pending is not None and not _segment_matches(self._pending, key):
            if now - self._pending.start_time >= self.settings.commit_threshold:
                self._commit_pending(now)

        current = self._current
        if current is not None and (current.app_identifier, current.focus_state) == key:
            self._discard_pending("returned to current session")
            return
        if self._pending is not None and _segment_matches(self._pending, key):
            return

        target = self._find_merge_target(key, now)
        if target is not None:
            self._merge_back(target, now)
            return

        if self._pending is not None:
            if now - self._pending.start_time >= self.settings.commit_threshold:
                self._commit_pending(now)
            else:
                self._discard_pending("too short")

        self._pending = PendingSegment(
            app_identifier=observation.app_identifier,
            app_name=observation.app_name,
            focus_state=observation.focus_state,
            start_time=now,
        )
        self._pending_token += 1
        self._schedule_commit_check(self._pending_token)

    def _merge_back(self, target: Session, now: datetime) -> None:
        logger.info("Merging back into session %s", target.app_name)
        now = self._split_point(now)
        self._discard_pending("merge-back")
        self._close_current(now)

        target.end_time = None
        target.last_resumed_at = now
        target.micro_interruptions += 1
        self._recent = [entry for entry in self._recent if entry.session.id != target.id]
        if target.primary_domain:
            last_visit = target.browser_visits[-1] if target.browser_visits else None
            self._start_visit(
                target,
                target.primary_domain,
                target.primary_title,
                None,
                now,
                is_distraction=last_visit.is_distraction if last_visit else None,
            )
        self._current = target
        self._persist(target)

    def _commit_pending(self, now: datetime) -> Optional[Session]:
        pending = self._pending
        if pending is None:
            return None
        self._pending = None
        self._cancel_timer(self._pending_token)

        start = pending.start_time
        if self._current is not None:
            # The user left the current app when the pending segment began.
            start = self._split_point(start)
            self._close_current(start)

        activity_type, confidence, reason = self._classify(pending)
        session = Session(
            app_identifier=pending.app_identifier,
            app_name=pending.app_name,
            focus_state=pending.focus_state,
            start_time=start,
            activity_type=activity_type,
            confidence=confidence,
            unknown_reason=reason,
            needs_review=activity_type is ActivityType.UNKNOWN or confidence < 0.8,
            task_id=self._active_task_id,
        )

        if activity_type is ActivityType.BROWSER and self._browser_context is not None:
            domain, title = self._browser_context() or (None, None)
            domain = normalize_domain(domain)
            if domain:
                page_title = normalize_page_title(title)
                session.primary_domain = domain
                session.primary_title = page_title
                self._start_visit(session, domain, page_title, None, start)

        self._current = session
        self._persist(session)
        logger.info(
            "Committed session %s -> %s%s",
            pending.app_name,
            activity_type.value,
            f" [{session.primary_domain}]" if session.primary_domain else "",
        )
        if activity_type is not ActivityType.META:
            self._request_label(session, None)
        return session

    def _close_current(self, at: datetime) -> Optional[Session]:
        """Close the open session at ``at``; short sessions are discarded."""
        session = self._current
        if session is None:
            return None
        self._current = None

        active_start = session.last_resumed_at or session.start_time
        at = max(at, active_start)
        if self._current_visit is not None:
            self._current_visit.end_time = at
            self._current_visit = None
        _update_primary_domain(session, at)

        session.accumulated_duration += (at - active_start).total_seconds()
        session.end_time = at
        session.last_resumed_at = None

        duration = session.duration_at(at)
        if duration < self.settings.commit_threshold.total_seconds():
            self._delete(session)
            logger.debug("Discarded short session %s (%.1fs)", session.app_name, duration)
            return None

        if session.activity_type is not ActivityType.META:
            self._recent.append(_RecentSession(session.app_identifier, at, session))
        cutoff = at - self.settings.merge_threshold
        self._recent = [entry for entry in self._recent if entry.closed_at >= cutoff]

        self._persist(session)
        logger.info("Closed session %s (duration: %ds)", session.app_name, int(duration))
        return session

    def _find_merge_target(
        self, key: tuple[str, FocusState], now: datetime
    ) -> Optional[Session]:
        cutoff = now - self.settings.merge_threshold
        # Most recently closed wins.
        for entry in reversed(self._recent):
            session = entry.session
            if (
                entry.closed_at >= cutoff
                and (session.app_identifier, session.focus_state) == key
            ):
                return session
        return None

    def _classify(
        self, pending: PendingSegment
    ) -> tuple[ActivityType, float, Optional[UnknownReason]]:
        if pending.focus_state is FocusState.IDLE:
            return ActivityType.IDLE, 1.0, UnknownReason.IDLE
        if pending.focus_state is FocusState.AWAY:
            return ActivityType.AWAY, 1.0, UnknownReason.IDLE

        rule = self._rule_lookup(pending.app_identifier)
        if rule is None:
            return ActivityType.UNKNOWN, 0.0, UnknownReason.UNMAPPED_APP
        if rule.is_ambiguous:
            return rule.activity_type, 0.5, UnknownReason.AMBIGUOUS_APP
        return rule.activity_type, 1.0, None

    def _split_point(self, at: datetime) -> datetime:
        """Never split the open session before its last checkpoint."""
        session = self._current
        if session is None:
            return at
        return max(at, session.last_resumed_at or session.start_time)

    def _lookup_rule_in_db(self, app_identifier: str) -> Optional[AppCategoryRule]:
        try:
            return fetch_app_rule(self._conn, app_identifier)
        except sqlite3.Error:
            logger.exception("Failed to look up category rule for %s", app_identifier)
            return None

    def _restart_with_task(self, task_id: Optional[str]) -> None:
        now = self._clock()
        self._discard_pending("task switch")
        previous = self._current
        self._close_current(now)
        self._active_task_id = task_id
        if previous is None:
            return
        # The old session is not a merge-back target under the new task.
        self._recent = [entry for entry in self._recent if entry.session.id != previous.id]
        self._pending = PendingSegment(
            app_identifier=previous.app_identifier,
            app_name=previous.app_name,
            focus_state=previous.focus_state,
            start_time=now,
        )
        self._pending_token += 1
        self._commit_pending(now)

    def _start_visit(
        self,
        session: Session,
        domain: str,
        title: Optional[str],
        context: Optional[BrowserContext],
        now: datetime,
        *,
        is_distraction: Optional[bool] = None,
    ) -> BrowserVisit:
        visit = BrowserVisit(
            start_time=now,
            domain=domain,
            title=title,
            is_distraction=(
                DistractionRules.is_distraction_domain(domain)
                if is_distraction is None
                else is_distraction
            ),
            path=context.path if context else None,
            description=context.description if context else None,
            content_snippet=context.content_snippet if context else None,
        )
        session.browser_visits.append(visit)
        self._current_visit = visit
        return visit

    def _discard_pending(self, reason: str) -> None:
        if self._pending is None:
            return
        logger.debug("Discarded pending segment %s (%s)", self._pending.app_name, reason)
        self._pending = None
        self._cancel_timer(self._pending_token)

    def _live_session(self, session_id: str) -> Optional[Session]:
        for session in self._live_sessions():
            if session.id == session_id:
                return session
        return None

    def _live_sessions(self) -> list[Session]:
        sessions = [entry.session for entry in self._recent]
        if self._current is not None:
            sessions.append(self._current)
        return sessions

    # ------------------------------------------------------------------
    # Persistence (best effort)

    def _persist(self, session: Session) -> None:
        try:
            save_session(self._conn, session)
        except sqlite3.Error:
            logger.exception("Failed to save session %s; keeping in-memory state.", session.id)

    def _delete(self, session: Session) -> None:
        try:
            delete_session(self._conn, session.id)
        except sqlite3.Error:
            logger.exception("Failed to delete short session %s.", session.id)

    # ------------------------------------------------------------------
    # Timers and background work

    def _schedule_commit_check(self, token: int) -> None:
        delay = (self.settings.commit_threshold + self.settings.commit_check_slack).total_seconds()
        self._timers[token] = self._scheduler.call_later(
            delay, lambda: self._on_commit_timer(token)
        )

    def _cancel_timer(self, token: int) -> None:
        timer = self._timers.pop(token, None)
        if timer is not None:
            timer.cancel()

    def _on_commit_timer(self, token: int) -> None:
        with self._lock:
            self._timers.pop(token, None)
            if self._closed or token != self._pending_token:
                return
            self.check_pending_commit()

    def _start_heartbeat(self) -> None:
        if self._heartbeat_thread and self._heartbeat_thread.is_alive():
            return
        self._heartbeat_stop.clear()
        thread = threading.Thread(
            target=self._heartbeat_loop, name="session-heartbeat", daemon=True
        )
        self._heartbeat_thread = thread
        thread.start()

    def _heartbeat_loop(self) -> None:
        interval = self.settings.heartbeat_interval.total_seconds()
        while not self._heartbeat_stop.wait(interval):
            self.heartbeat()

    def _request_label(self, session: Session, context: Optional[BrowserContext]) -> None:
        if self._labeling_pool is None or session.focus_state is not FocusState.ACTIVE:
            return
        snapshot = dataclasses.replace(session, browser_visits=list(session.browser_visits))
        self._labeling_pool.submit(self._run_labeling, snapshot, context)

    def _run_labeling(self, snapshot: Session, context: Optional[BrowserContext]) -> None:
        classifier = self._classifier
        if classifier is None:
            return
        try:
            label = classifier(snapshot, context)
        except Exception as exc:  # labeling hook is external code
            logger.exception("Labeling hook failed for session %s", snapshot.id)
            with self._lock:
                self._last_error = f"Labeling failed: {exc}"
            return
        if not label:
            return
        try:
            self.apply_inferred_label(snapshot.id, label)
        except ValueError:
            logger.debug("Session %s vanished before its label arrived.", snapshot.id)
            return
        with self._lock:
            self._last_error = None

    def status(self) -> dict[str, Any]:
        with self._lock:
            current = self._current
            pending = self._pending
            now = self._clock()
            return {
                "running": not self._closed,
                "current_session": (
                    {
                        "id": current.id,
                        "app_name": current.app_name,
                        "activity_type": current.activity_type.value,
                        "primary_domain": current.primary_domain,
                        "duration_seconds": current.duration_at(now),
                    }
                    if current
                    else None
                ),
                "pending_app": pending.app_name if pending else None,
                "active_task_id": self._active_task_id,
                "last_error": self._last_error,
            }


def _segment_matches(pending: PendingSegment, key: tuple[str, FocusState]) -> bool:
    return (pending.app_identifier, pending.focus_state) == key


def _update_primary_domain(session: Session, now: datetime) -> None:
    """Primary domain/title come from the domain with the most visit time."""
    if not session.browser_visits:
        return
    totals: dict[str, float] = {}
    longest: dict[str, BrowserVisit] = {}
    for visit in session.browser_visits:
        duration = visit.duration_at(now)
        totals[visit.domain] = totals.get(visit.domain, 0.0) + duration
        best = longest.get(visit.domain)
        if best is None or duration > best.duration_at(now):
            longest[visit.domain] = visit
    domain = max(totals, key=lambda key: totals[key])
    session.primary_domain = domain
    session.primary_title = longest[domain].title


def _apply_rule(session: Session, rule: AppCategoryRule) -> None:
    session.activity_type = rule.activity_type
    session.confidence = 0.5 if rule.is_ambiguous else 1.0
    session.unknown_reason = UnknownReason.AMBIGUOUS_APP if rule.is_ambiguous else None
    session.needs_review = rule.is_ambiguous
