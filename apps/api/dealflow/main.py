from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from dealflow import events
from dealflow.api.routes import router as api_router
from dealflow.core.config import get_settings
from dealflow.logging import configure_logging
from dealflow.metrics import observe_store_failure
from dealflow.middleware.correlation_id import CorrelationIdMiddleware
from dealflow.middleware.request_logging import RequestLoggingMiddleware
from dealflow.otel import configure_tracing, tag_correlation_id
from dealflow.pipeline.api import error_response
from dealflow.pipeline.errors import PipelineError, StoreFailure


configure_logging()
logger = logging.getLogger("dealflow.lifecycle")
error_logger = logging.getLogger("dealflow.errors")


def _warn_on_orphaned_deals(envelope: events.Envelope) -> None:
    orphaned = envelope["payload"].get("orphaned_deal_count", 0)
    if orphaned:
        logger.warning(
            "pipeline.stage.orphaned_deals",
            extra={"stage_id": envelope["payload"].get("stage_id"), "orphaned_deal_count": orphaned},
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    events.bus.subscribe("pipeline.stage.deactivated", _warn_on_orphaned_deals)
    settings = get_settings()
    logger.info("dealflow.started", extra={"environment": settings.app_env})
    yield
    events.bus.unsubscribe("pipeline.stage.deactivated", _warn_on_orphaned_deals)


app = FastAPI(title="Dealflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    if isinstance(exc, StoreFailure):
        observe_store_failure()
        error_logger.error(
            "pipeline.store_failure",
            exc_info=exc.cause or exc,
            extra={
                "method": request.method,
                "path": request.url.path,
                "error_code": exc.code,
                "operation": exc.operation,
            },
        )
        return error_response(request, status_code=exc.status_code, code=exc.code, message="internal error")
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


if get_settings().otel_enabled:
    configure_tracing()

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=tag_correlation_id)
