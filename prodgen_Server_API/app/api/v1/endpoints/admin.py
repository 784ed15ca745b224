# admin.py
# Description: Admin endpoints for manual stage runs, queue inspection, settings and API keys
#
# Imports
from typing import Any, List, Optional, Union
#
# 3rd-party Libraries
from fastapi import APIRouter, Depends, HTTPException, Query, status
from loguru import logger
from pydantic import BaseModel, Field
#
# Local Imports
from prodgen_Server_API.app.api.v1.API_Deps.admin_auth import require_admin_token
from prodgen_Server_API.app.api.v1.API_Deps.pipeline_deps import get_pipeline_runtime
from prodgen_Server_API.app.core.Admin.settings_store import DEFAULT_NAMESPACE
from prodgen_Server_API.app.core.Pipeline.exceptions import UnknownStageError
from prodgen_Server_API.app.core.Pipeline.models import JobStatus, parse_stage, queue_name_for
from prodgen_Server_API.app.services.pipeline_runtime import PipelineRuntime

#######################################################################################################################
#
# Request models

class SettingItem(BaseModel):
    key: str = Field(..., min_length=1)
    value: Any = None
    namespace: str = Field(default=DEFAULT_NAMESPACE, min_length=1)


class SettingsBatch(BaseModel):
    settings: List[SettingItem] = Field(..., min_length=1)


class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1)
    value: str = Field(..., min_length=1)
    namespace: str = Field(default=DEFAULT_NAMESPACE, min_length=1)


#######################################################################################################################
#
# Router

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


def _stage_or_400(stage: str):
    try:
        return parse_stage(stage)
    except UnknownStageError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


@router.post("/run/{stage}", status_code=status.HTTP_202_ACCEPTED)
async def run_stage(
    stage: str,
    chain: bool = Query(False, description="Schedule the following stages after this one succeeds"),
    runtime: PipelineRuntime = Depends(get_pipeline_runtime),
):
    """Queue a manual run of one stage. Returns the job immediately; poll /jobs/{id} for the outcome."""
    parsed = _stage_or_400(stage)
    job = await runtime.orchestrator.run_stage(
        parsed,
        manual=True,
        context={"trigger": "admin"},
        chain_next=chain and runtime.orchestrator.get_next_stage(parsed) is not None,
    )
    logger.info(f"Manual trigger accepted: stage={parsed.value} job_id={job.id} chain={chain}")
    return {"ok": True, "data": job.to_dict()}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, runtime: PipelineRuntime = Depends(get_pipeline_runtime)):
    job = await runtime.store.find_by_id(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return {"ok": True, "data": job.to_dict()}


@router.get("/jobs")
async def list_jobs(
    stage: Optional[str] = None,
    job_status: Optional[JobStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    runtime: PipelineRuntime = Depends(get_pipeline_runtime),
):
    parsed = _stage_or_400(stage) if stage else None
    jobs = await runtime.store.list_jobs(stage=parsed, status=job_status, limit=limit)
    return {"ok": True, "data": [j.to_dict() for j in jobs]}


@router.get("/queues")
async def queue_overview(runtime: PipelineRuntime = Depends(get_pipeline_runtime)):
    counts = await runtime.queue_counts()
    data = {}
    for queue, per_state in counts.items():
        data[queue] = {
            "counts": per_state,
            "circuit": await runtime.breaker_for(queue).get_state(),
            "workerRunning": queue in runtime.workers and runtime.workers[queue].running,
        }
    return {"ok": True, "data": data}


@router.get("/dlq/{stage}")
async def list_dead_letters(stage: str, runtime: PipelineRuntime = Depends(get_pipeline_runtime)):
    parsed = _stage_or_400(stage)
    entries = await runtime.dead_letters.list(queue_name_for(parsed))
    return {"ok": True, "data": [e.to_dict() for e in entries]}


@router.get("/settings")
async def list_settings(
    namespace: str = DEFAULT_NAMESPACE,
    runtime: PipelineRuntime = Depends(get_pipeline_runtime),
):
    return {"ok": True, "data": await runtime.settings_store.list(namespace)}


@router.post("/settings", status_code=status.HTTP_201_CREATED)
async def upsert_settings(
    body: Union[SettingsBatch, SettingItem],
    runtime: PipelineRuntime = Depends(get_pipeline_runtime),
):
    items = body.settings if isinstance(body, SettingsBatch) else [body]
    saved = [await runtime.settings_store.set(i.key, i.value, i.namespace) for i in items]
    updated = ", ".join(f"{s['namespace']}/{s['key']}" for s in saved)
    logger.info(f"Admin settings updated: {updated}")
    return {"ok": True, "data": saved}


@router.get("/keys/meta")
async def list_key_metadata(
    namespace: str = DEFAULT_NAMESPACE,
    runtime: PipelineRuntime = Depends(get_pipeline_runtime),
):
    return {"ok": True, "data": await runtime.api_keys.list_metadata(namespace)}


@router.post("/keys", status_code=status.HTTP_201_CREATED)
async def store_api_key(body: ApiKeyCreate, runtime: PipelineRuntime = Depends(get_pipeline_runtime)):
    try:
        meta = await runtime.api_keys.set_key(body.name, body.value, body.namespace)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return {"ok": True, "data": meta}

#
# End of admin.py
#######################################################################################################################
