"""Operator job commands and the stuck-job sweep."""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from flowmachine import config
from flowmachine.core.engine import StepEngine, error_detail
from flowmachine.core.exceptions import InvalidTransitionError, ValidationError
from flowmachine.core.models import (
    ErrorCategory,
    JobSource,
    JobStatus,
    to_iso,
    utcnow,
    utcnow_iso,
)
from flowmachine.db import repository
from flowmachine.db.tables import Job

logger = logging.getLogger(__name__)

STUCK_MESSAGE = "stuck: exceeded timeout"


class JobRecovery:
    def __init__(self, engine: StepEngine):
        self.engine = engine

    def recover_stuck(
        self,
        db: Session,
        timeout_hours: float = config.STUCK_JOB_TIMEOUT_HOURS,
        flow_id: int | None = None,
        dry_run: bool = False,
    ) -> list[dict[str, Any]]:
        """Fail jobs left in ``processing`` past the timeout.

        Jobs holding a backed-up prompt for the step they were stuck on are
        retried as a new job from that step. Batch parents are never swept,
        and jobs parked at an unexpired webhook gate are not stuck. With
        ``dry_run`` the same candidates are reported and nothing is written.
        """
        cutoff = to_iso(utcnow() - timedelta(hours=timeout_hours))
        now = utcnow_iso()
        results = []
        for job in repository.find_stuck_jobs(db, cutoff, flow_id):
            engine_data = repository.job_engine_data(job)
            if engine_data.gate and engine_data.gate.expires_at > now:
                continue
            backup = engine_data.queued_prompt_backup
            retryable = (
                backup is not None
                and job.source == JobSource.PIPELINE.value
                and self._step_id_at(db, job) == backup.step_id
            )
            entry = {
                "job_id": job.id,
                "flow_id": job.flow_id,
                "started_at": job.started_at,
                "step_index": job.current_step_index,
            }
            if dry_run:
                entry["action"] = "would_retry" if retryable else "would_fail"
                results.append(entry)
                continue

            try:
                repository.transition_job(
                    db,
                    job.id,
                    JobStatus.FAILED,
                    error=error_detail(ErrorCategory.STUCK, STUCK_MESSAGE),
                )
            except InvalidTransitionError:
                entry["action"] = "skipped"
                results.append(entry)
                continue

            if retryable:
                new_job = self.engine.retry_from_step(db, job, job.current_step_index)
                entry["action"] = "retried"
                entry["new_job_id"] = new_job.id
            else:
                entry["action"] = "failed"
            logger.warning("Recovered stuck job %s: %s", job.id, entry["action"])
            results.append(entry)
        return results

    def fail_job(self, db: Session, job_id: int, reason: str = "manual") -> Job:
        job = repository.require_job(db, job_id)
        if job.status == JobStatus.FAILED.value:
            raise InvalidTransitionError(f"Job '{job_id}' is already failed")
        logger.warning("Operator override: failing job %s (%s): %s", job_id, job.status, reason)
        return repository.transition_job(
            db,
            job_id,
            JobStatus.FAILED,
            error=error_detail(ErrorCategory.OPERATOR, reason),
            override=True,
        )

    def retry_job(self, db: Session, job_id: int, force: bool = False) -> dict[str, Any]:
        job = repository.require_job(db, job_id)
        if job.source != JobSource.PIPELINE.value or job.flow_id is None:
            raise ValidationError(f"Job '{job_id}' is not a flow job and cannot be retried")
        retryable = (JobStatus.FAILED.value, JobStatus.PROCESSING.value)
        if job.status not in retryable and not force:
            raise InvalidTransitionError(
                f"Job '{job_id}' is {job.status}; only failed or processing jobs can be retried without force"
            )

        logger.warning("Operator override: retrying job %s (%s)", job_id, job.status)
        if job.status != JobStatus.FAILED.value:
            repository.transition_job(
                db,
                job_id,
                JobStatus.FAILED,
                error=error_detail(ErrorCategory.OPERATOR, "retried by operator"),
                override=True,
            )
            job = repository.require_job(db, job_id)

        backup = repository.job_engine_data(job).queued_prompt_backup
        if backup is not None:
            step_index = self._step_index(db, job, backup.step_id)
            new_job = self.engine.retry_from_step(db, job, step_index)
        else:
            new_job = self.engine.run_flow(db, job.flow_id)

            def link_old(_job, engine_data):
                engine_data.retried_as = new_job.id

            def link_new(_job, engine_data):
                engine_data.retry_of = job_id

            repository.update_job(db, job_id, link_old)
            new_job = repository.update_job(db, new_job.id, link_new)

        return {
            "job_id": job_id,
            "new_job_id": new_job.id,
            "prompt_requeued": backup is not None,
        }

    def _step_index(self, db: Session, job: Job, step_id: str) -> int:
        pipeline = repository.require_pipeline(db, job.pipeline_id)
        for index, step in enumerate(repository.pipeline_steps(pipeline)):
            if step["id"] == step_id:
                return index
        return job.current_step_index

    def _step_id_at(self, db: Session, job: Job) -> str | None:
        pipeline = repository.get_pipeline(db, job.pipeline_id)
        if pipeline is None:
            return None
        steps = repository.pipeline_steps(pipeline)
        if 0 <= job.current_step_index < len(steps):
            return steps[job.current_step_index]["id"]
        return None

    def jobs_summary(self, db: Session) -> dict[str, int]:
        counts = repository.count_jobs_by_status(db)
        return {status.value: counts.get(status.value, 0) for status in JobStatus}
