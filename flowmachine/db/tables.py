from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Text, UniqueConstraint
from flowmachine.db.database import Base


class Pipeline(Base):
    __tablename__ = "pipelines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    steps = Column(Text, nullable=False)
    created_at = Column(String, nullable=False)


class Flow(Base):
    __tablename__ = "flows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pipeline_id = Column(Integer, ForeignKey("pipelines.id"), nullable=False)
    name = Column(String, nullable=False)
    step_config = Column(Text, nullable=False, default="{}")
    schedule = Column(Text, nullable=False, default='{"interval": "manual"}')
    scheduled_task_id = Column(String, nullable=True)
    webhook_enabled = Column(Boolean, nullable=False, default=False)
    webhook_token = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    flow_id = Column(Integer, ForeignKey("flows.id"), nullable=True, index=True)
    pipeline_id = Column(Integer, nullable=True)
    parent_job_id = Column(Integer, ForeignKey("jobs.id"), nullable=True, index=True)
    source = Column(String, nullable=False, default="pipeline")
    status = Column(String, nullable=False, default="pending", index=True)
    current_step_index = Column(Integer, nullable=False, default=0)
    engine_data = Column(Text, nullable=False, default="{}")
    created_at = Column(String, nullable=False)
    started_at = Column(String, nullable=True)
    completed_at = Column(String, nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class PromptQueue(Base):
    __tablename__ = "prompt_queues"
    __table_args__ = (UniqueConstraint("flow_id", "step_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    flow_id = Column(Integer, ForeignKey("flows.id"), nullable=False)
    step_id = Column(String, nullable=False)
    entries = Column(Text, nullable=False, default="[]")
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class ScheduledTask(Base):
    __tablename__ = "scheduled_tasks"

    id = Column(String, primary_key=True)
    task_type = Column(String, nullable=False)
    payload = Column(Text, nullable=False)
    run_at = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    last_error = Column(Text, nullable=True)
    claimed_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


class GateToken(Base):
    __tablename__ = "gate_tokens"

    token = Column(String, primary_key=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False)
    step_id = Column(String, nullable=False)
    expires_at = Column(String, nullable=False)
    used_at = Column(String, nullable=True)
