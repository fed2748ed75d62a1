import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flowmachine import config
from flowmachine.core.exceptions import SchedulingError
from flowmachine.core.models import TaskState, TaskType, to_iso, utcnow
from flowmachine.db import repository
from flowmachine.db.database import SessionLocal

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Session, dict[str, Any]], None]


class TaskDispatcher:
    """Durable delayed-task queue backed by the ``scheduled_tasks`` table.

    Delivery is at-least-once: a handler that raises is retried after
    ``retry_delay`` until ``max_attempts`` is reached, and a task whose
    worker disappeared is released again after ``claim_timeout``.
    """

    def __init__(
        self,
        session_factory=SessionLocal,
        interval: float = config.DISPATCHER_INTERVAL,
        batch_size: int = config.DISPATCHER_BATCH_SIZE,
        max_attempts: int = config.TASK_MAX_ATTEMPTS,
        retry_delay: float = config.TASK_RETRY_DELAY,
        claim_timeout: float = config.TASK_CLAIM_TIMEOUT,
    ):
        self.session_factory = session_factory
        self.interval = interval
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.claim_timeout = claim_timeout
        self._handlers: dict[TaskType, TaskHandler] = {}

    def register_handler(self, task_type: TaskType, fn: TaskHandler):
        self._handlers[TaskType(task_type)] = fn

    def schedule(
        self,
        db: Session,
        task_type: TaskType,
        payload: dict[str, Any],
        run_at: datetime | None = None,
        delay: float = 0,
        max_attempts: int | None = None,
    ) -> str:
        task_type = TaskType(task_type)
        when = run_at if run_at is not None else utcnow() + timedelta(seconds=delay)
        try:
            task = repository.create_task(
                db,
                task_type.value,
                payload,
                run_at=to_iso(when),
                max_attempts=max_attempts or self.max_attempts,
            )
        except SQLAlchemyError as e:
            db.rollback()
            raise SchedulingError(f"Could not schedule {task_type.value}: {e}") from e
        logger.debug("Scheduled %s task %s at %s", task_type.value, task.id, task.run_at)
        return task.id

    def cancel(self, db: Session, task_id: str) -> bool:
        return repository.cancel_task(db, task_id)

    async def start(self):
        logger.info(
            "Dispatcher started (interval: %ss, handlers: %s)",
            self.interval,
            sorted(t.value for t in self._handlers),
        )
        while True:
            try:
                await asyncio.to_thread(self.run_due)
            except Exception as e:
                logger.error("Dispatcher tick error: %s", e)
            await asyncio.sleep(self.interval)

    def run_due(self, now: datetime | None = None, limit: int | None = None) -> int:
        """Run every task due at ``now``. Returns how many tasks were run."""
        now = now or utcnow()
        self.release_abandoned(now)
        db = self.session_factory()
        try:
            task_ids = repository.due_task_ids(db, to_iso(now), limit or self.batch_size)
            ran = 0
            for task_id in task_ids:
                if not repository.claim_task(db, task_id, to_iso(utcnow())):
                    continue
                self._run_task(task_id)
                ran += 1
            return ran
        finally:
            db.close()

    def release_abandoned(self, now: datetime | None = None) -> int:
        """Return tasks claimed longer than ``claim_timeout`` ago to pending."""
        now = now or utcnow()
        db = self.session_factory()
        try:
            released = repository.release_abandoned_tasks(
                db, to_iso(now - timedelta(seconds=self.claim_timeout))
            )
        finally:
            db.close()
        if released:
            logger.warning("Released %d abandoned task(s)", released)
        return released

    def run_until_idle(self, max_rounds: int = 1000) -> int:
        total = 0
        for _ in range(max_rounds):
            ran = self.run_due()
            if not ran:
                break
            total += ran
        return total

    def _run_task(self, task_id: str):
        db = self.session_factory()
        try:
            task = repository.get_task(db, task_id)
            handler = self._handlers.get(TaskType(task.task_type))
            if handler is None:
                logger.error("No handler registered for %s", task.task_type)
                repository.update_task_status(
                    db, task_id, TaskState.FAILED.value, last_error="no handler registered"
                )
                return

            try:
                handler(db, json.loads(task.payload))
            except Exception as e:
                db.rollback()
                logger.exception("Task %s (%s) failed", task_id, task.task_type)
                task = repository.get_task(db, task_id)
                if task.attempts < task.max_attempts:
                    repository.update_task_status(
                        db,
                        task_id,
                        TaskState.PENDING.value,
                        run_at=to_iso(utcnow() + timedelta(seconds=self.retry_delay)),
                        last_error=str(e),
                    )
                else:
                    repository.update_task_status(
                        db, task_id, TaskState.FAILED.value, last_error=str(e)
                    )
                return

            repository.update_task_status(db, task_id, TaskState.COMPLETE.value)
        finally:
            db.close()
