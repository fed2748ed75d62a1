"""Per-step FIFO of pending instructions for queueable steps.

Every operation is a single read-modify-write of the whole queue row, guarded
by the row version, so two writers issuing mutations back to back never lose
an update. Indices are positions at the time of the call; a concurrent pop
shifts them.
"""

import json
import logging
from typing import Any, Callable

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from flowmachine.core.exceptions import (
    ConflictError,
    EntityNotFoundError,
    QueueIndexError,
    ValidationError,
)
from flowmachine.core.models import QUEUEABLE_STEP_TYPES, StepType, utcnow_iso
from flowmachine.db import repository

logger = logging.getLogger(__name__)


def _require_queueable_step(db: Session, flow_id: int, step_id: str):
    flow = repository.require_flow(db, flow_id)
    pipeline = repository.require_pipeline(db, flow.pipeline_id)
    for step in repository.pipeline_steps(pipeline):
        if step["id"] == step_id:
            if StepType(step["type"]) not in QUEUEABLE_STEP_TYPES:
                raise ValidationError(
                    f"Step '{step_id}' is a {step['type']} step and has no prompt queue"
                )
            return
    raise EntityNotFoundError("Step", step_id)


def _check_index(entries: list, index: int):
    if index < 0 or index >= len(entries):
        raise QueueIndexError(index, len(entries))


def _mutate(
    db: Session,
    flow_id: int,
    step_id: str,
    fn: Callable[[list[dict[str, Any]]], Any],
    validate: bool = True,
):
    if validate:
        _require_queueable_step(db, flow_id, step_id)
    for _ in range(repository.CAS_ATTEMPTS):
        queue = repository.get_or_create_prompt_queue(db, flow_id, step_id)
        entries = json.loads(queue.entries)
        result = fn(entries)
        queue.entries = json.dumps(entries)
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            continue
        return result
    raise ConflictError(f"Prompt queue for flow {flow_id} step '{step_id}' is busy")


def _clean_prompt(prompt: str) -> str:
    if not prompt or not prompt.strip():
        raise ValidationError("prompt cannot be empty")
    return prompt


def add(db: Session, flow_id: int, step_id: str, prompt: str) -> dict[str, Any]:
    entry = {"prompt": _clean_prompt(prompt), "added_at": utcnow_iso()}
    _mutate(db, flow_id, step_id, lambda entries: entries.append(entry))
    logger.info("Queued prompt for flow %s step %s", flow_id, step_id)
    return entry


def list_entries(db: Session, flow_id: int, step_id: str) -> list[dict[str, Any]]:
    _require_queueable_step(db, flow_id, step_id)
    queue = repository.get_prompt_queue(db, flow_id, step_id)
    return json.loads(queue.entries) if queue else []


def remove(db: Session, flow_id: int, step_id: str, index: int) -> dict[str, Any]:
    def apply(entries):
        _check_index(entries, index)
        return entries.pop(index)

    return _mutate(db, flow_id, step_id, apply)


def update(
    db: Session, flow_id: int, step_id: str, index: int, prompt: str
) -> dict[str, Any]:
    prompt = _clean_prompt(prompt)

    def apply(entries):
        _check_index(entries, index)
        entries[index] = {**entries[index], "prompt": prompt}
        return entries[index]

    return _mutate(db, flow_id, step_id, apply)


def move(db: Session, flow_id: int, step_id: str, from_index: int, to_index: int):
    def apply(entries):
        _check_index(entries, from_index)
        _check_index(entries, to_index)
        if from_index != to_index:
            entries.insert(to_index, entries.pop(from_index))
        return list(entries)

    return _mutate(db, flow_id, step_id, apply)


def clear(db: Session, flow_id: int, step_id: str) -> int:
    def apply(entries):
        count = len(entries)
        entries.clear()
        return count

    return _mutate(db, flow_id, step_id, apply)


def pop(db: Session, flow_id: int, step_id: str) -> dict[str, Any] | None:
    """Remove and return the head of the queue, or None when it is empty."""

    def apply(entries):
        return entries.pop(0) if entries else None

    return _mutate(db, flow_id, step_id, apply, validate=False)

