"""Flow schedules and the per-flow webhook trigger."""

import json
import logging
import secrets
import zlib
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from flowmachine.core.dispatcher import TaskDispatcher
from flowmachine.core.engine import StepEngine
from flowmachine.core.exceptions import AuthenticationError, ValidationError
from flowmachine.core.models import TaskType, to_iso, utcnow, utcnow_iso
from flowmachine.db import repository
from flowmachine.db.tables import Flow, Job

logger = logging.getLogger(__name__)

MANUAL = "manual"
ONE_TIME = "one_time"

INTERVALS = {
    "every_5_minutes": 300,
    "hourly": 3600,
    "every_2_hours": 7200,
    "every_4_hours": 14400,
    "qtrdaily": 21600,
    "twicedaily": 43200,
    "daily": 86400,
    "weekly": 604800,
}

MAX_STAGGER_SECONDS = 3600


def stagger_offset(flow_id: int, interval_seconds: int) -> int:
    """Deterministic per-flow delay so flows sharing an interval don't fire together."""
    max_offset = min(interval_seconds, MAX_STAGGER_SECONDS)
    if max_offset <= 0:
        return 0
    return zlib.crc32(f"flow_stagger_{flow_id}".encode()) % max_offset


def flow_schedule(flow: Flow) -> dict[str, Any]:
    return json.loads(flow.schedule or '{"interval": "manual"}')


class FlowScheduler:
    def __init__(self, dispatcher: TaskDispatcher, engine: StepEngine):
        self.dispatcher = dispatcher
        self.engine = engine
        dispatcher.register_handler(TaskType.RUN_FLOW, self.run_scheduled)

    def set_schedule(
        self,
        db: Session,
        flow_id: int,
        interval: str,
        timestamp: datetime | None = None,
    ) -> Flow:
        flow = repository.require_flow(db, flow_id)
        if interval != MANUAL and interval != ONE_TIME and interval not in INTERVALS:
            raise ValidationError(f"Invalid interval: {interval}")
        if interval == ONE_TIME and timestamp is None:
            raise ValidationError("Timestamp required for one-time scheduling")

        if flow.scheduled_task_id:
            self.dispatcher.cancel(db, flow.scheduled_task_id)

        if interval == MANUAL:
            logger.info("Flow %s set to manual", flow_id)
            return repository.update_flow(
                db, flow_id, schedule={"interval": MANUAL}, scheduled_task_id=None
            )

        if interval == ONE_TIME:
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
            run_at = timestamp
        else:
            run_at = utcnow() + timedelta(
                seconds=stagger_offset(flow_id, INTERVALS[interval])
            )

        task_id = self.dispatcher.schedule(
            db, TaskType.RUN_FLOW, {"flow_id": flow_id}, run_at=run_at
        )
        schedule = {"interval": interval, "next_run_at": to_iso(run_at)}
        if interval == ONE_TIME:
            schedule["timestamp"] = to_iso(timestamp)
        logger.info("Flow %s scheduled (%s), next run %s", flow_id, interval, to_iso(run_at))
        return repository.update_flow(
            db, flow_id, schedule=schedule, scheduled_task_id=task_id
        )

    def run_scheduled(self, db: Session, payload: dict[str, Any]):
        flow = repository.get_flow(db, payload["flow_id"])
        if flow is None:
            logger.warning("Scheduled flow %s no longer exists", payload["flow_id"])
            return
        schedule = flow_schedule(flow)
        interval = schedule.get("interval", MANUAL)

        if interval in INTERVALS:
            run_at = utcnow() + timedelta(seconds=INTERVALS[interval])
            task_id = self.dispatcher.schedule(
                db, TaskType.RUN_FLOW, {"flow_id": flow.id}, run_at=run_at
            )
            schedule["next_run_at"] = to_iso(run_at)
            repository.update_flow(db, flow.id, schedule=schedule, scheduled_task_id=task_id)
        elif interval == ONE_TIME:
            repository.update_flow(
                db, flow.id, schedule={"interval": MANUAL}, scheduled_task_id=None
            )

        self.engine.run_flow(db, flow.id)

    # ── Webhook trigger ─────────────────────────────────────────────────────

    def enable_webhook(self, db: Session, flow_id: int) -> str:
        token = secrets.token_hex(32)
        repository.update_flow(db, flow_id, webhook_enabled=True, webhook_token=token)
        logger.info("Webhook trigger enabled for flow %s", flow_id)
        return token

    def disable_webhook(self, db: Session, flow_id: int) -> Flow:
        logger.info("Webhook trigger disabled for flow %s", flow_id)
        return repository.update_flow(
            db, flow_id, webhook_enabled=False, webhook_token=None
        )

    def trigger_webhook(
        self,
        db: Session,
        flow_id: int,
        token: str | None,
        payload: dict[str, Any],
        remote_ip: str | None = None,
    ) -> Job:
        flow = repository.require_flow(db, flow_id)
        if not flow.webhook_enabled or not flow.webhook_token:
            raise AuthenticationError(f"Webhook trigger is not enabled for flow {flow_id}")
        if not token or not secrets.compare_digest(flow.webhook_token, token):
            logger.warning("Webhook trigger token mismatch for flow %s", flow_id)
            raise AuthenticationError("Invalid webhook token")

        trigger = {
            "payload": payload,
            "received_at": utcnow_iso(),
            "remote_ip": remote_ip,
        }
        job = self.engine.run_flow(db, flow_id, trigger=trigger)
        logger.info("Flow %s triggered by webhook as job %s", flow_id, job.id)
        return job
