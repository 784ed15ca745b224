from fastapi import HTTPException, Request, status

from prodgen_Server_API.app.services.pipeline_runtime import PipelineRuntime


def get_pipeline_runtime(request: Request) -> PipelineRuntime:
    runtime = getattr(request.app.state, "pipeline", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline runtime not initialized")
    return runtime
