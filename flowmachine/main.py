import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from flowmachine.api.exception_handlers import setup_exception_handlers
from flowmachine.api.routes import router
from flowmachine.core.runtime import Runtime, build_runtime
from flowmachine.db.database import SessionLocal, init_db

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)


def create_app(
    runtime: Runtime | None = None,
    session_factory=SessionLocal,
    start_dispatcher: bool = True,
) -> FastAPI:
    runtime = runtime or build_runtime(session_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db()
        task = None
        if start_dispatcher:
            task = asyncio.create_task(runtime.dispatcher.start())
        yield
        if task:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    app = FastAPI(title="Flow Machine", lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(router)
    setup_exception_handlers(app)
    return app


app = create_app()
