"""Batch fan-out: one parent job, one child job per chunk of items."""

import logging
import math
from typing import Any

from sqlalchemy.orm import Session

from flowmachine import config
from flowmachine.core.dispatcher import TaskDispatcher
from flowmachine.core.engine import error_detail
from flowmachine.core.engine_data import BatchItemState, BatchState, EngineData
from flowmachine.core.exceptions import (
    InvalidTransitionError,
    SchedulingError,
    ValidationError,
)
from flowmachine.core.handlers import (
    BatchTaskRegistry,
    InvalidResultError,
    StepStatus,
    check_result,
)
from flowmachine.core.models import (
    ErrorCategory,
    JobSource,
    JobStatus,
    TaskType,
    is_terminal,
    utcnow_iso,
)
from flowmachine.db import repository
from flowmachine.db.tables import Job

logger = logging.getLogger(__name__)

_CHILD_STATUS = {
    StepStatus.COMPLETED: JobStatus.COMPLETED,
    StepStatus.FAILED: JobStatus.FAILED,
    StepStatus.SKIP: JobStatus.AGENT_SKIPPED,
    StepStatus.NO_ITEMS: JobStatus.COMPLETED_NO_ITEMS,
}


def expected_children(state: BatchState) -> int:
    if state.total == 0:
        return 0
    return math.ceil(state.total / state.chunk_size)


class BatchManager:
    def __init__(
        self,
        dispatcher: TaskDispatcher,
        tasks: BatchTaskRegistry,
        chunk_size: int = config.BATCH_CHUNK_SIZE,
        chunk_delay: float = config.BATCH_CHUNK_DELAY,
        chunks_per_tick: int = config.BATCH_CHUNKS_PER_TICK,
    ):
        self.dispatcher = dispatcher
        self.tasks = tasks
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.chunks_per_tick = max(1, chunks_per_tick)
        dispatcher.register_handler(TaskType.PROCESS_BATCH, self.process_batch)
        dispatcher.register_handler(TaskType.RUN_BATCH_ITEM, self.run_batch_item)

    def start_batch(
        self,
        db: Session,
        task_type: str,
        items: list[Any],
        chunk_size: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> int:
        if task_type not in self.tasks:
            raise ValidationError(f"Unknown batch task type '{task_type}'")
        chunk_size = chunk_size or self.chunk_size
        if chunk_size <= 0:
            raise ValidationError("chunk_size must be positive")

        state = BatchState(
            task_type=task_type,
            total=len(items),
            chunk_size=chunk_size,
            items=list(items),
            context=context or {},
            started_at=utcnow_iso(),
        )
        parent = repository.create_job(
            db,
            flow_id=None,
            pipeline_id=None,
            engine_data=EngineData(batch=state),
            source=JobSource.BATCH,
            status=JobStatus.PROCESSING,
        )

        if state.total == 0:
            self._finish(db, parent.id, JobStatus.COMPLETED)
            logger.info("Batch %s (%s) has no items, completed", parent.id, task_type)
            return parent.id

        try:
            self.dispatcher.schedule(
                db, TaskType.PROCESS_BATCH, {"batch_job_id": parent.id}
            )
        except SchedulingError as e:
            self._finish(
                db,
                parent.id,
                JobStatus.FAILED,
                error=error_detail(ErrorCategory.INFRASTRUCTURE, str(e)),
            )
            raise
        logger.info(
            "Batch %s scheduled: %s (%d items in chunks of %d)",
            parent.id,
            task_type,
            state.total,
            chunk_size,
        )
        return parent.id

    def process_batch(self, db: Session, payload: dict[str, Any]):
        batch_job_id = payload["batch_job_id"]
        for _ in range(self.chunks_per_tick):
            parent = repository.get_job(db, batch_job_id)
            if parent is None or is_terminal(parent.status):
                return
            state = repository.job_engine_data(parent).batch
            if state is None:
                logger.warning("Job %s is not a batch", batch_job_id)
                return
            if state.cancelled:
                logger.info(
                    "Batch %s cancelled at %d/%d items",
                    batch_job_id,
                    state.tasks_scheduled,
                    state.total,
                )
                self.check_completion(db, batch_job_id)
                return
            if state.offset >= state.total:
                break
            self._schedule_chunk(db, parent, state)

        state = repository.job_engine_data(repository.require_job(db, batch_job_id)).batch
        if state.offset < state.total:
            self.dispatcher.schedule(
                db,
                TaskType.PROCESS_BATCH,
                {"batch_job_id": batch_job_id},
                delay=self.chunk_delay,
            )
        else:
            self.check_completion(db, batch_job_id)

    def _schedule_chunk(self, db: Session, parent: Job, state: BatchState):
        offset = state.offset
        chunk = state.items[offset : offset + state.chunk_size]
        chunk_index = offset // state.chunk_size

        already = {
            repository.job_engine_data(child).batch_item.chunk_index
            for child in repository.list_child_jobs(db, parent.id)
        }
        if chunk_index not in already:
            child = repository.create_job(
                db,
                flow_id=None,
                pipeline_id=None,
                engine_data=EngineData(
                    batch_item=BatchItemState(
                        task_type=state.task_type,
                        items=chunk,
                        context=state.context,
                        chunk_index=chunk_index,
                    )
                ),
                source=JobSource.BATCH_ITEM,
                parent_job_id=parent.id,
            )
            try:
                self.dispatcher.schedule(db, TaskType.RUN_BATCH_ITEM, {"job_id": child.id})
            except SchedulingError:
                db.delete(child)
                db.commit()
                raise

        def advance(_job, engine_data: EngineData):
            batch = engine_data.batch
            if batch.offset != offset:
                return
            batch.offset = min(batch.total, offset + len(chunk))
            batch.tasks_scheduled = min(batch.total, batch.tasks_scheduled + len(chunk))

        repository.update_job(db, parent.id, advance)
        logger.debug("Batch %s chunk %d scheduled (%d items)", parent.id, chunk_index, len(chunk))

    def run_batch_item(self, db: Session, payload: dict[str, Any]):
        job = repository.get_job(db, payload["job_id"])
        if job is None:
            return
        if is_terminal(job.status):
            if job.parent_job_id:
                self.check_completion(db, job.parent_job_id)
            return

        item = repository.job_engine_data(job).batch_item
        handler = self.tasks.get(item.task_type)
        if job.status == JobStatus.PENDING.value:
            job = repository.transition_job(db, job.id, JobStatus.PROCESSING)

        if handler is None:
            status = JobStatus.FAILED
            patch = {}
            error = error_detail(
                ErrorCategory.HANDLER, f"No handler for batch task '{item.task_type}'"
            )
        else:
            try:
                result = check_result(handler(job, item.items, item.context))
            except InvalidResultError as e:
                db.rollback()
                logger.error("Batch item job %s returned an invalid result: %s", job.id, e)
                status, patch = JobStatus.FAILED, {}
                error = error_detail(ErrorCategory.HANDLER, f"invalid handler result: {e}")
            except Exception as e:
                db.rollback()
                logger.exception("Batch item job %s raised", job.id)
                status, patch = JobStatus.FAILED, {}
                error = error_detail(ErrorCategory.HANDLER, str(e) or type(e).__name__)
            else:
                status = _CHILD_STATUS[StepStatus(result.status)]
                patch = result.engine_data_patch
                error = None
                if status == JobStatus.FAILED:
                    error = error_detail(
                        ErrorCategory.HANDLER, result.message or "Batch item failed"
                    )

        def merge(_job, engine_data: EngineData):
            engine_data.merge_step_output(item.task_type, patch)

        try:
            repository.transition_job(db, job.id, status, error=error, mutate=merge)
        except InvalidTransitionError as e:
            logger.info("Batch item %s already finished: %s", job.id, e)
        if job.parent_job_id:
            self.check_completion(db, job.parent_job_id)

    def check_completion(self, db: Session, batch_job_id: int):
        """Close the parent once nothing more will be scheduled and every child is done."""
        parent = repository.get_job(db, batch_job_id)
        if parent is None or is_terminal(parent.status):
            return
        state = repository.job_engine_data(parent).batch
        counts = repository.count_jobs_by_status(db, batch_job_id)
        if counts.get(JobStatus.PENDING.value, 0) or counts.get(JobStatus.PROCESSING.value, 0):
            return

        if state.tasks_scheduled >= state.total:
            self._finish(db, batch_job_id, JobStatus.COMPLETED)
            logger.info("Batch %s complete: %s (%d items)", batch_job_id, state.task_type, state.total)
        elif state.cancelled:
            self._finish(
                db,
                batch_job_id,
                JobStatus.FAILED,
                error=error_detail(
                    ErrorCategory.CANCELLED,
                    f"Batch cancelled after {state.tasks_scheduled} of {state.total} items were scheduled",
                ),
            )
            logger.info("Batch %s closed after cancellation", batch_job_id)

    def _finish(self, db: Session, batch_job_id: int, status: JobStatus, error=None):
        def stamp(_job, engine_data: EngineData):
            engine_data.batch.completed_at = utcnow_iso()

        try:
            repository.transition_job(db, batch_job_id, status, error=error, mutate=stamp)
        except InvalidTransitionError as e:
            logger.debug("Batch %s already closed: %s", batch_job_id, e)

    def get_batch_status(self, db: Session, batch_job_id: int) -> dict[str, Any] | None:
        parent = repository.get_job(db, batch_job_id)
        if parent is None:
            return None
        state = repository.job_engine_data(parent).batch
        if state is None:
            return None

        counts = repository.count_jobs_by_status(db, batch_job_id)
        failed = counts.get(JobStatus.FAILED.value, 0)
        completed = sum(
            counts.get(s.value, 0)
            for s in (
                JobStatus.COMPLETED,
                JobStatus.AGENT_SKIPPED,
                JobStatus.COMPLETED_NO_ITEMS,
            )
        )
        total = expected_children(state)
        progress = 100.0 if total == 0 else round((completed + failed) / total * 100, 1)
        return {
            "batch_job_id": parent.id,
            "task_type": state.task_type,
            "status": parent.status,
            "total": total,
            "total_items": state.total,
            "tasks_scheduled": state.tasks_scheduled,
            "chunk_size": state.chunk_size,
            "cancelled": state.cancelled,
            "started_at": state.started_at,
            "completed_at": state.completed_at,
            "completed": completed,
            "failed": failed,
            "processing": counts.get(JobStatus.PROCESSING.value, 0),
            "pending": counts.get(JobStatus.PENDING.value, 0),
            "progress": progress,
        }

    def cancel_batch(self, db: Session, batch_job_id: int) -> bool:
        parent = repository.get_job(db, batch_job_id)
        if parent is None or repository.job_engine_data(parent).batch is None:
            return False

        def flag(_job, engine_data: EngineData):
            engine_data.batch.cancelled = True

        repository.update_job(db, batch_job_id, flag)
        logger.info("Batch %s cancellation requested", batch_job_id)
        self.check_completion(db, batch_job_id)
        return True

    def list_batches(self, db: Session, limit: int = 20) -> list[dict[str, Any]]:
        batches = repository.list_jobs(db, source=JobSource.BATCH.value, limit=limit)
        return [self.get_batch_status(db, job.id) for job in batches]
