from fastapi import APIRouter, Depends

from mailsync.api.dependencies import get_services, verify_api_key
from mailsync.services.container import EmailServices

router = APIRouter(dependencies=[Depends(verify_api_key)])


@router.get("/stats")
async def queue_stats(services: EmailServices = Depends(get_services)):
    """Pending, running and parked sync jobs."""
    return await services.queue.stats()


@router.get("/failed")
async def failed_jobs(services: EmailServices = Depends(get_services)):
    """Jobs that exhausted their attempts (kept for 24 hours)."""
    jobs = await services.queue.failed_jobs()
    return {"count": len(jobs), "jobs": jobs}
