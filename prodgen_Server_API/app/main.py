# main.py
# Description: FastAPI application for the pipeline service (admin API, health, metrics, embedded workers and cron)
#
# Imports
from contextlib import asynccontextmanager
from typing import Optional
#
# 3rd-party Libraries
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException
#
# Local Imports
from prodgen_Server_API import __version__
from prodgen_Server_API.app.api.v1.endpoints.admin import router as admin_router
from prodgen_Server_API.app.api.v1.endpoints.health import router as health_router
from prodgen_Server_API.app.core.config import PipelineSettings, get_settings
from prodgen_Server_API.app.core.Logging.log_context import log_context, new_request_id
from prodgen_Server_API.app.core.Logging.log_setup import setup_logging
from prodgen_Server_API.app.core.Pipeline.exceptions import JobNotFoundError, UnknownStageError
from prodgen_Server_API.app.services.pipeline_cron import PipelineCronScheduler
from prodgen_Server_API.app.services.pipeline_runtime import PipelineRuntime

#######################################################################################################################
#
# Application factory

def create_app(
    settings: Optional[PipelineSettings] = None,
    runtime: Optional[PipelineRuntime] = None,
    *,
    configure_logging: bool = True,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Explicit settings; defaults to the process-wide singleton.
        runtime: Pre-built runtime (tests); built from settings at startup otherwise.
        configure_logging: Install the loguru sink on startup.
    """
    settings = settings or (runtime.settings if runtime is not None else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if configure_logging:
            setup_logging(settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
        rt = runtime or await PipelineRuntime.from_settings(settings)
        cron = PipelineCronScheduler.from_settings(rt.orchestrator, settings)
        app.state.pipeline = rt
        app.state.cron = cron
        try:
            if settings.WORKERS_ENABLED:
                await rt.start_workers()
            else:
                logger.info("WORKERS_ENABLED=false; stage queues are consumed by a separate worker process")
            await cron.start()
            logger.info(f"Pipeline service ready (env={settings.APP_ENV}, version={__version__})")
            yield
        finally:
            logger.info("Shutting down pipeline service")
            await cron.stop()
            await rt.close()
            app.state.pipeline = None

    app = FastAPI(title="Pipeline Orchestration Service", version=__version__, lifespan=lifespan)
    app.state.settings = settings

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or new_request_id()
        with log_context(request_id=request_id):
            response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ok": False, "error": "Invalid request", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(UnknownStageError)
    async def unknown_stage_handler(request: Request, exc: UnknownStageError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"ok": False, "error": str(exc)})

    @app.exception_handler(JobNotFoundError)
    async def job_not_found_handler(request: Request, exc: JobNotFoundError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"ok": False, "error": str(exc)})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.opt(exception=exc).error(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        message = "Internal Server Error" if settings.is_production else str(exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"ok": False, "error": message})

    app.include_router(health_router)
    app.include_router(admin_router)
    return app


app = create_app()

#
# End of main.py
#######################################################################################################################
