import os

API_KEY = os.getenv("FLOWMACHINE_API_KEY", "flowmachine-secret-key")

DATABASE_PATH = os.getenv("FLOWMACHINE_DB_PATH", "flowmachine.db")
DATABASE_URL = f"sqlite:///{DATABASE_PATH}"
DATABASE_LOCK_TIMEOUT = float(os.getenv("FLOWMACHINE_DB_LOCK_TIMEOUT", "30"))

MASTER_HOST = os.getenv("FLOWMACHINE_HOST", "127.0.0.1")
MASTER_PORT = int(os.getenv("FLOWMACHINE_PORT", "8000"))

# Dispatcher polling
DISPATCHER_INTERVAL = float(os.getenv("FLOWMACHINE_DISPATCHER_INTERVAL", "2.0"))
DISPATCHER_BATCH_SIZE = int(os.getenv("FLOWMACHINE_DISPATCHER_BATCH_SIZE", "25"))
TASK_MAX_ATTEMPTS = int(os.getenv("FLOWMACHINE_TASK_MAX_ATTEMPTS", "3"))
TASK_RETRY_DELAY = float(os.getenv("FLOWMACHINE_TASK_RETRY_DELAY", "30"))
TASK_CLAIM_TIMEOUT = float(os.getenv("FLOWMACHINE_TASK_CLAIM_TIMEOUT", "3600"))

# Step chaining
NEXT_STEP_DELAY = float(os.getenv("FLOWMACHINE_NEXT_STEP_DELAY", "0"))
SCHEDULE_RETRY_ATTEMPTS = int(os.getenv("FLOWMACHINE_SCHEDULE_RETRY_ATTEMPTS", "3"))
SCHEDULE_RETRY_BACKOFF = float(os.getenv("FLOWMACHINE_SCHEDULE_RETRY_BACKOFF", "0.5"))

# Batches
BATCH_CHUNK_SIZE = int(os.getenv("FLOWMACHINE_BATCH_CHUNK_SIZE", "10"))
BATCH_CHUNK_DELAY = float(os.getenv("FLOWMACHINE_BATCH_CHUNK_DELAY", "30"))
BATCH_CHUNKS_PER_TICK = int(os.getenv("FLOWMACHINE_BATCH_CHUNKS_PER_TICK", "5"))

STUCK_JOB_TIMEOUT_HOURS = float(os.getenv("FLOWMACHINE_STUCK_JOB_TIMEOUT_HOURS", "2"))

WEBHOOK_GATE_TTL = int(os.getenv("FLOWMACHINE_WEBHOOK_GATE_TTL", str(7 * 24 * 3600)))

AGENT_PING_TIMEOUT = float(os.getenv("FLOWMACHINE_AGENT_PING_TIMEOUT", "30"))
