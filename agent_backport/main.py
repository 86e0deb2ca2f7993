"""
agent_backport API entry point.

Serves the read-only job query API used by the dashboard. Backport runs
themselves execute on Celery workers (see ``celery_worker.py``).
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from agent_backport.config import settings, setup_opentelemetry
from agent_backport.api.v1.router import api_router
from logging import getLogger, Filter
import logging

logger = getLogger(__name__)
logger.setLevel(logging.INFO)


class HealthCheckFilter(Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.getMessage().find("/health") == -1


logging.getLogger("uvicorn.access").addFilter(HealthCheckFilter())


app = FastAPI(title=settings.app_name, debug=settings.debug, redirect_slashes=False)


@app.on_event("startup")
async def startup_event():
    try:
        logger.info("--- Starting agent_backport API ---")

        setup_opentelemetry()

        logger.info("--- agent_backport startup completed ---")
    except Exception as e:
        logger.error(f"Warning: Failed to setup resources: {e}")
        import traceback

        logger.error(f"Full traceback: {traceback.format_exc()}")


@app.on_event("shutdown")
async def shutdown_event():
    try:
        logger.info("--- Server shutting down! ---")

        from agent_backport.db.session import dispose_engine

        await dispose_engine()
        logger.info("--- Database connections closed. ---")
    except Exception as e:
        logger.error(f"Warning: Error during shutdown: {e}")


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
