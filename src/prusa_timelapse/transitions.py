"""Classify consecutive printer snapshots into lifecycle transitions."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .status import PrinterState, StatusSnapshot, is_active


class Transition(str, Enum):
    """Lifecycle event derived from one poll observation."""

    NONE = "none"
    STARTED = "started"
    STOPPED = "stopped"
    HEARTBEAT = "heartbeat"


@dataclass(frozen=True, slots=True)
class SessionFlags:
    """The parts of the monitor session the classifier depends on."""

    first_poll: bool = False
    capturing: bool = False
    capture_interrupted: bool = False


def classify_transition(
    previous: PrinterState | None,
    current: StatusSnapshot,
    flags: SessionFlags,
) -> Transition:
    """Return the transition implied by moving from ``previous`` to ``current``.

    Only ``PRINTING`` counts as active; every other state, including errors,
    ends a capture period the same way. A period is open while a capture runs
    or after its process died on its own (``capture_interrupted``).
    """

    active = current.active
    has_job = current.job_id is not None

    if flags.first_poll:
        return Transition.STARTED if active and has_job else Transition.NONE

    if flags.capturing or flags.capture_interrupted:
        if not active:
            return Transition.STOPPED
        if flags.capturing:
            return Transition.HEARTBEAT
        return Transition.STARTED if has_job else Transition.NONE

    if active and has_job and not is_active(previous):
        return Transition.STARTED
    return Transition.NONE


__all__ = ["SessionFlags", "Transition", "classify_transition"]
