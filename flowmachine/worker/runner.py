"""Standalone dispatcher process.

Runs the same task handlers as the master against the shared database. Any
number of runners can drain the task table side by side because a task is
claimed with a single conditional update.
"""

import asyncio
import logging

from flowmachine.core.dispatcher import TaskDispatcher
from flowmachine.core.runtime import build_runtime
from flowmachine.db.database import SessionLocal, init_db

logger = logging.getLogger(__name__)


def run_worker(interval: float | None = None, batch_size: int | None = None):
    init_db()
    dispatcher = TaskDispatcher(session_factory=SessionLocal)
    if interval is not None:
        dispatcher.interval = interval
    if batch_size is not None:
        dispatcher.batch_size = batch_size
    build_runtime(SessionLocal, dispatcher=dispatcher)
    logger.info("Worker starting")
    try:
        asyncio.run(dispatcher.start())
    except KeyboardInterrupt:
        logger.info("Worker stopped")
