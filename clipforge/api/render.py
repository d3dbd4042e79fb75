"""Render API endpoints - asynchronous jobs polled by id."""

from fastapi import APIRouter, status

from clipforge.api.deps import JobManagerDep
from clipforge.schemas.render import RenderJobCreate, RenderJobCreated, RenderJobResponse

router = APIRouter()


@router.post(
    "/render",
    response_model=RenderJobCreated,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_render(render_request: RenderJobCreate, manager: JobManagerDep) -> RenderJobCreated:
    """
    Queue a render job.

    Returns the job id immediately; downloading, encoding and publishing run
    in the background. Poll ``GET /api/render/{job_id}`` for the result.
    """
    job = manager.create_job(render_request.to_request())
    return RenderJobCreated(job_id=job.id, status=job.status.value)


@router.get("/render/{job_id}", response_model=RenderJobResponse)
async def get_render_status(job_id: str, manager: JobManagerDep) -> RenderJobResponse:
    """Get the current state of a render job."""
    return RenderJobResponse.from_job(manager.get_job(job_id))


@router.get("/status/{job_id}", response_model=RenderJobResponse, include_in_schema=False)
async def get_render_status_legacy(job_id: str, manager: JobManagerDep) -> RenderJobResponse:
    """Alias of ``GET /render/{job_id}``."""
    return RenderJobResponse.from_job(manager.get_job(job_id))
