from celery import Celery, signals

from agent_backport.config import settings, setup_opentelemetry


@signals.worker_process_init.connect
def init_worker_process(**kwargs):
    """
    Initialize each worker process after fork.

    Async database engines created in the parent process are unusable in
    forked children, so each worker must build its own on first use.
    """
    import logging

    logger = logging.getLogger(__name__)

    logger.info("Initializing worker process - resetting database connections")

    import agent_backport.db.session as session_module

    session_module._engine = None
    session_module._AsyncSessionLocal = None

    setup_opentelemetry()

    logger.info("Worker process initialized successfully")


@signals.worker_process_shutdown.connect
def shutdown_worker_process(**kwargs):
    """
    Clean up resources when worker process shuts down.
    Properly dispose of async database connections.
    """
    import logging
    import asyncio

    logger = logging.getLogger(__name__)
    logger.info("Shutting down worker process - disposing database connections")

    import agent_backport.db.session as session_module

    if session_module._engine is not None:
        try:
            asyncio.run(session_module.dispose_engine())
        except Exception as e:
            logger.error(f"Error disposing database engine during shutdown: {e}")

    logger.info("Worker process shutdown complete")


def _build_broker_url() -> str:
    if settings.celery_broker_url:
        return settings.celery_broker_url

    scheme = "rediss" if settings.valkey_auth_token else "redis"
    auth_segment = (
        f":{settings.valkey_auth_token}@" if settings.valkey_auth_token else ""
    )
    ssl_params = "?ssl_cert_reqs=CERT_REQUIRED" if settings.valkey_auth_token else ""
    return f"{scheme}://{auth_segment}{settings.valkey_host}:{settings.valkey_port}/{settings.valkey_db}{ssl_params}"


def _build_result_backend() -> str:
    if settings.celery_result_backend:
        return settings.celery_result_backend
    return _build_broker_url()


celery_app = Celery(
    "agent_backport",
    broker=_build_broker_url(),
    backend=_build_result_backend(),
)

# Configure SSL for broker and backend when using rediss:// (production with auth token)
_ssl_conf = {}
if settings.valkey_auth_token:
    import ssl

    _ssl_conf = {
        "broker_use_ssl": {"ssl_cert_reqs": ssl.CERT_REQUIRED},
        "redis_backend_use_ssl": {"ssl_cert_reqs": ssl.CERT_REQUIRED},
    }

celery_app.conf.update(
    task_serializer=settings.celery_task_serializer,
    result_serializer=settings.celery_result_serializer,
    timezone="UTC",
    enable_utc=True,
    # A message is only acked once the task returns, so a crashed worker's
    # backport is redelivered and resumes from its last durable step
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    **_ssl_conf,
    beat_schedule={
        "backport-job-reconciler": {
            "task": "job_reconciler.reconcile_backport_jobs",
            "schedule": 60.0,  # Every minute
        },
    },
)

celery_app.autodiscover_tasks(["agent_backport.tasks"])


def get_celery_app() -> Celery:
    return celery_app
