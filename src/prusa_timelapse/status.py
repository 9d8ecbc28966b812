"""Printer activity states and the snapshots derived from them."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PrinterState(str, Enum):
    """States reported by PrusaLink in ``printer.state``."""

    IDLE = "IDLE"
    BUSY = "BUSY"
    PRINTING = "PRINTING"
    PAUSED = "PAUSED"
    FINISHED = "FINISHED"
    STOPPED = "STOPPED"
    ERROR = "ERROR"
    ATTENTION = "ATTENTION"
    READY = "READY"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: object) -> "PrinterState":
        """Return the matching state, treating unrecognised values as ``UNKNOWN``."""

        if isinstance(value, PrinterState):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                return cls.UNKNOWN
        return cls.UNKNOWN

    @property
    def active(self) -> bool:
        return self is PrinterState.PRINTING


def is_active(state: PrinterState | None) -> bool:
    """Return ``True`` only for the single active state."""

    return state is not None and state.active


@dataclass(frozen=True, slots=True)
class StatusSnapshot:
    """One poll observation of the printer."""

    state: PrinterState
    job_id: int | None = None
    job_label: str | None = None

    @property
    def active(self) -> bool:
        return self.state.active


__all__ = ["PrinterState", "StatusSnapshot", "is_active"]
