"""Behaviour sets for review workflow schema versions.

A workflow records its ``schema_version`` when it is created and consults this
table at every optional step, so instances started under an older version
keep that behaviour for their whole lifetime.
"""

from __future__ import annotations

from dataclasses import dataclass

from src.config import LATEST_REVIEW_SCHEMA_VERSION


@dataclass(slots=True, frozen=True)
class WorkflowBehaviour:
    version: int
    poll_external: bool
    sync_completion: bool


WORKFLOW_BEHAVIOURS: dict[int, WorkflowBehaviour] = {
    1: WorkflowBehaviour(version=1, poll_external=False, sync_completion=False),
    2: WorkflowBehaviour(version=2, poll_external=True, sync_completion=False),
    3: WorkflowBehaviour(version=3, poll_external=True, sync_completion=True),
}


def behaviour_for(version: int | None) -> WorkflowBehaviour:
    if version is None:
        version = LATEST_REVIEW_SCHEMA_VERSION
    try:
        return WORKFLOW_BEHAVIOURS[int(version)]
    except (KeyError, ValueError, TypeError) as exc:
        raise ValueError(f"Unknown review workflow schema version: {version!r}") from exc


__all__ = ["WORKFLOW_BEHAVIOURS", "WorkflowBehaviour", "behaviour_for"]
