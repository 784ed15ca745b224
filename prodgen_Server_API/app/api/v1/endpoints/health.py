from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse
from loguru import logger

from prodgen_Server_API.app.api.v1.API_Deps.pipeline_deps import get_pipeline_runtime
from prodgen_Server_API.app.services.pipeline_runtime import PipelineRuntime


router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz(runtime: PipelineRuntime = Depends(get_pipeline_runtime)):
    """Liveness: the process is up and the job store answers."""
    try:
        store_ok = await runtime.store.ping()
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(status_code=500, content={"ok": False, "error": str(e)})
    if not store_ok:
        return JSONResponse(status_code=500, content={"ok": False, "error": "Job store unreachable"})
    return {"ok": True}


@router.get("/readyz")
async def readyz(runtime: PipelineRuntime = Depends(get_pipeline_runtime)):
    """Readiness: job store and queue transport are both reachable."""
    try:
        checks = await runtime.readiness()
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(status_code=500, content={"ok": False, "error": str(e)})
    if not all(checks.values()):
        failing = ", ".join(name for name, ok in checks.items() if not ok)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"ok": False, "error": f"Not ready: {failing}", "checks": checks},
        )
    return {"ok": True, "checks": checks}


@router.get("/metrics")
async def metrics(runtime: PipelineRuntime = Depends(get_pipeline_runtime)):
    return Response(content=runtime.metrics.render(), media_type=runtime.metrics.content_type)
