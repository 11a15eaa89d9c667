"""FastAPI command surface for the extraction queue."""

import csv
import io
import logging
import re
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import get_settings
from .models import QueueStats, SchedulerState
from .runtime import Runtime

logger = logging.getLogger(__name__)


class EnqueueRequest(BaseModel):
    """Keys to add, as a list or as pasted text."""
    model_config = ConfigDict(populate_by_name=True)

    keys: list[str] = []
    text: Optional[str] = None
    marketplace_id: str = Field(default="amazon.com", alias="marketplaceId")


class RemotePollRequest(BaseModel):
    enabled: bool


def split_keys(text: str) -> list[str]:
    """Split pasted text on commas, whitespace and newlines."""
    return [part for part in re.split(r"[\s,]+", text) if part]


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the API around ``runtime``, or around one built from settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if runtime is not None:
            app.state.runtime = runtime
            yield
            return

        owned = Runtime(get_settings())
        await owned.startup()
        app.state.runtime = owned
        try:
            yield
        finally:
            await owned.shutdown()

    app = FastAPI(
        title="Q&A Extraction Queue API",
        description="Commands and state for the sequential extraction queue",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_runtime(request: Request) -> Runtime:
        return request.app.state.runtime

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "Q&A Extraction Queue API",
            "version": "1.0.0",
            "endpoints": {
                "state": "/api/state",
                "stats": "/api/stats",
                "enqueue": "/api/queue",
                "start": "/api/start",
                "stop": "/api/stop",
                "export": "/api/export?format=json|csv",
                "remote_poll": "/api/remote-poll",
            },
        }

    @app.get("/api/state", response_model=SchedulerState)
    async def get_state(rt: Runtime = Depends(get_runtime)):
        return rt.queue.state

    @app.get("/api/stats", response_model=QueueStats)
    async def get_stats(rt: Runtime = Depends(get_runtime)):
        return rt.queue.stats()

    @app.post("/api/queue")
    async def enqueue(body: EnqueueRequest, rt: Runtime = Depends(get_runtime)):
        """Add keys to the queue. Malformed and duplicate keys are skipped."""
        keys = list(body.keys)
        if body.text:
            keys.extend(split_keys(body.text))
        if not keys:
            raise HTTPException(status_code=400, detail="No keys given")

        added = rt.queue.enqueue(keys, body.marketplace_id)
        return {
            "success": True,
            "added": added,
            "queueLength": len(rt.queue.state.queue),
        }

    @app.delete("/api/queue/{marketplace_id}/{key}")
    async def remove(marketplace_id: str, key: str, rt: Runtime = Depends(get_runtime)):
        removed = rt.queue.remove(key.upper(), marketplace_id)
        return {"success": True, "removed": removed}

    @app.post("/api/start")
    async def start(rt: Runtime = Depends(get_runtime)):
        started = await rt.processor.start()
        return {"success": True, "started": started}

    @app.post("/api/stop")
    async def stop(rt: Runtime = Depends(get_runtime)):
        await rt.processor.stop()
        return {"success": True}

    @app.post("/api/clear")
    async def clear(rt: Runtime = Depends(get_runtime)):
        rt.queue.clear_all()
        return {"success": True}

    @app.post("/api/clear-finished")
    async def clear_finished(rt: Runtime = Depends(get_runtime)):
        removed = rt.queue.clear_finished()
        return {"success": True, "removed": removed}

    @app.post("/api/retry-failed")
    async def retry_failed(rt: Runtime = Depends(get_runtime)):
        retried = rt.queue.retry_failed()
        return {"success": True, "retried": retried}

    @app.get("/api/export")
    async def export(format: str = "json", rt: Runtime = Depends(get_runtime)):
        """Export finished items that carry results.

        Args:
            format: ``json`` (items) or ``csv`` (one row per result)
        """
        if format not in ("json", "csv"):
            raise HTTPException(status_code=400, detail="format must be json or csv")

        items = rt.queue.export_finished()
        if format == "json":
            return {"success": True, "data": [item.model_dump(mode="json") for item in items]}

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["key", "marketplace", "status", "question", "answer"])
        for item in items:
            for result in item.results:
                writer.writerow(
                    [item.key, item.marketplace_id, item.status, result.question, result.answer]
                )
        filename = f"qa-export-{date.today().isoformat()}.csv"
        return StreamingResponse(
            iter([buffer.getvalue()]),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/remote-poll")
    async def remote_poll(body: RemotePollRequest, rt: Runtime = Depends(get_runtime)):
        if body.enabled:
            if not await rt.poller.enable():
                raise HTTPException(
                    status_code=400,
                    detail="Remote polling requires BACKEND_API_KEY",
                )
        else:
            await rt.poller.disable()
        return {"success": True, "enabled": rt.poller.enabled}

    return app


app = create_app()


def main():
    """Run the API server."""
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(f"Starting command API on {settings.API_HOST}:{settings.API_PORT}")
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)


if __name__ == "__main__":
    main()
