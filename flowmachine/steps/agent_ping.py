import logging
from typing import Any

import httpx

from flowmachine import config
from flowmachine.core.engine_data import EngineData
from flowmachine.core.handlers import StepResult
from flowmachine.core.models import utcnow_iso
from flowmachine.db.tables import Job

logger = logging.getLogger(__name__)


class AgentPingStep:
    """POST the job context and instruction to the step's ``webhook_url``."""

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout: float = config.AGENT_PING_TIMEOUT,
    ):
        self._client = client
        self.timeout = timeout

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def execute(
        self, job: Job, step_config: dict[str, Any], engine_data: EngineData
    ) -> StepResult:
        step_id = step_config["step_id"]
        previous = engine_data.step_output(step_id)
        if previous.get("delivered_at"):
            logger.info("Job %s: agent ping %s already delivered", job.id, step_id)
            return StepResult.completed()

        url = (step_config.get("webhook_url") or "").strip()
        if not url:
            return StepResult.failed("Agent ping step requires a webhook URL")

        payload = {
            "job_id": job.id,
            "flow_id": job.flow_id,
            "prompt": step_config.get("prompt", ""),
            "step_outputs": engine_data.step_outputs,
            "trigger": engine_data.trigger,
        }
        try:
            response = self.client.post(url, json=payload, timeout=self.timeout)
        except httpx.HTTPError as e:
            return StepResult.failed(f"Agent ping request failed: {e}")

        if response.status_code >= 400:
            return StepResult.failed(f"Agent ping returned HTTP {response.status_code}")

        logger.info("Job %s: agent ping %s delivered (%s)", job.id, step_id, response.status_code)
        return StepResult.completed(
            delivered_at=utcnow_iso(), status_code=response.status_code
        )
