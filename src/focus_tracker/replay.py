"""Feed recorded observation logs (JSON lines) through the state machine."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from pydantic import ValidationError

from .models import BrowserContext, Observation
from .state_machine import SessionStateMachine
from .webapp import DomainChangePayload, ObservationPayload

logger = logging.getLogger(__name__)


class ReplayClock:
    """Clock that only moves when the replay advances it."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime.now()

    def __call__(self) -> datetime:
        return self.now

    def advance_to(self, moment: datetime) -> None:
        if moment > self.now:
            self.now = moment


class ManualScheduler:
    """Never fires on its own; the replay drives commit checks explicitly."""

    class _Handle:
        def cancel(self) -> None:
            pass

    def call_later(self, delay: float, callback: Callable[[], None]) -> "ManualScheduler._Handle":
        return self._Handle()


def replay_lines(
    machine: SessionStateMachine, clock: ReplayClock, lines: Iterable[str]
) -> tuple[int, int]:
    """Replay events in order. Returns (accepted, rejected) counts.

    Each line is a JSON object with ``"kind": "observation"`` or
    ``"kind": "domain_change"`` plus the fields of the matching HTTP payload;
    ``timestamp`` is mandatory.
    """
    accepted = rejected = 0
    for number, line in enumerate(lines, start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            data = json.loads(line)
            kind = data.pop("kind", "observation")
            if kind == "observation":
                payload = ObservationPayload.model_validate(data)
            elif kind == "domain_change":
                payload = DomainChangePayload.model_validate(data)
            else:
                raise ValueError(f"unknown event kind {kind!r}")
            if payload.timestamp is None:
                raise ValueError("timestamp is required")
        except (ValueError, ValidationError) as exc:
            logger.warning("Skipping line %d: %s", number, exc)
            rejected += 1
            continue

        moment = payload.timestamp
        if moment.tzinfo is not None:
            moment = moment.astimezone().replace(tzinfo=None)
        clock.advance_to(moment)
        machine.check_pending_commit(moment)

        if isinstance(payload, ObservationPayload):
            ok = machine.on_observation(
                Observation(
                    app_identifier=payload.app_identifier,
                    app_name=payload.app_name,
                    focus_state=payload.focus_state,
                    timestamp=moment,
                )
            )
        else:
            context = (
                BrowserContext(**payload.context.model_dump()) if payload.context else None
            )
            ok = (
                machine.on_domain_change(
                    payload.old_domain,
                    payload.new_domain,
                    payload.title,
                    context=context,
                    timestamp=moment,
                )
                is not None
            )
        if ok:
            accepted += 1
        else:
            rejected += 1
    return accepted, rejected
