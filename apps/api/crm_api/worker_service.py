"""Cloud Run service entrypoint for the background worker."""

from __future__ import annotations

import os

from fastapi import FastAPI

from crm_api.core.config import settings
from crm_api.core.structured_logging import configure_logging
from crm_api.worker import WorkerPool

app = FastAPI()
_pool: WorkerPool | None = None


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "worker_running": bool(_pool and _pool.running)}


@app.on_event("startup")
async def _startup() -> None:
    global _pool
    configure_logging()
    _pool = WorkerPool(concurrency=settings.WORKER_CONCURRENCY)
    await _pool.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _pool:
        await _pool.stop()


def main() -> None:
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    host = os.getenv("HOST", "0.0.0.0")
    # nosec B104 - Cloud Run requires binding to all interfaces.
    uvicorn.run("crm_api.worker_service:app", host=host, port=port)


if __name__ == "__main__":
    main()
