from typing import Annotated

from fastapi import Depends, Request

from clipforge.render.job_manager import JobManager
from clipforge.services.storage_service import StorageService, get_storage_service


def get_job_manager(request: Request) -> JobManager:
    """The job manager started by the application lifespan."""
    return request.app.state.job_manager


JobManagerDep = Annotated[JobManager, Depends(get_job_manager)]
StorageDep = Annotated[StorageService, Depends(get_storage_service)]
