from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
import json
import logging

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse, Response

from suggestmerge.config import WEBHOOK_PATH, AppConfig
from suggestmerge.events import EventRouter
from suggestmerge.models import PipelineOutcome
from suggestmerge.observability import log_event, log_warning_event
from suggestmerge.signature import verify_signature


LOGGER = logging.getLogger("suggestmerge.webhook_app")
SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"


def create_app(config: AppConfig, *, router: EventRouter | None = None) -> FastAPI:
    event_router = router or EventRouter(config)
    # Pipelines sleep while GitHub recomputes mergeability; keep them off the request pool.
    pipeline_executor = ThreadPoolExecutor(
        max_workers=config.service.pipeline_workers, thread_name_prefix="pipeline"
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        pipeline_executor.shutdown(wait=True)

    app = FastAPI(
        title="suggestmerge", docs_url=None, redoc_url=None, openapi_url=None, lifespan=lifespan
    )
    app.state.pipeline_executor = pipeline_executor

    @app.post(WEBHOOK_PATH)
    async def receive_webhook(request: Request, background_tasks: BackgroundTasks) -> Response:
        signature = request.headers.get(SIGNATURE_HEADER)
        event_kind = request.headers.get(EVENT_HEADER)
        delivery_id = request.headers.get(DELIVERY_HEADER)
        if not signature or not event_kind or not delivery_id:
            log_event(LOGGER, "webhook_rejected", reason="missing_headers")
            return PlainTextResponse("Missing GitHub headers", status_code=400)

        body = await request.body()
        if not verify_signature(config.service.webhook_secret, signature, body):
            log_warning_event(
                LOGGER, "webhook_rejected", reason="invalid_signature", delivery_id=delivery_id
            )
            return PlainTextResponse("Invalid signature", status_code=401)

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = None
        if not isinstance(payload, dict):
            log_event(LOGGER, "webhook_rejected", reason="invalid_json", delivery_id=delivery_id)
            return PlainTextResponse("Payload must be a JSON object", status_code=400)

        decision = await run_in_threadpool(
            event_router.route,
            event_kind=event_kind,
            delivery_id=delivery_id,
            payload=payload,
        )
        if decision.task is not None:
            background_tasks.add_task(
                pipeline_executor.submit, _run_pipeline_task, decision.task, delivery_id
            )
        return PlainTextResponse(decision.message, status_code=decision.status_code)

    return app


def _run_pipeline_task(task: Callable[[], PipelineOutcome], delivery_id: str) -> None:
    try:
        task()
    except Exception as exc:  # noqa: BLE001
        log_warning_event(
            LOGGER,
            "pipeline_task_failed",
            delivery_id=delivery_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
