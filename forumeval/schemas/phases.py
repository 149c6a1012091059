"""Run phase definitions for the batch orchestrator."""

from __future__ import annotations

from enum import StrEnum


class RunPhase(StrEnum):
    """Canonical phase values for a forum run."""

    IDLE = "idle"
    SELECTING = "selecting"
    BATCHING = "batching"
    EVALUATING = "evaluating"
    VALIDATING = "validating"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"
