from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger

from receipt_vault.api.dependencies import get_services
from receipt_vault.api.schemas import job_status_view
from receipt_vault.services import Services

router = APIRouter()


@router.get("/status/{queue_name}/{job_id}")
async def get_job_status(
    queue_name: str, job_id: str, services: Services = Depends(get_services)
):
    job = await services.task_queue.get_status(queue_name, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_status_view(job)


@router.get("/stats")
async def get_queue_stats(services: Services = Depends(get_services)):
    stats = await services.task_queue.all_stats()
    return {queue: counts.model_dump() for queue, counts in stats.items()}


@router.post("/retry/{queue_name}/{job_id}")
async def retry_job(
    queue_name: str, job_id: str, services: Services = Depends(get_services)
):
    job = await services.task_queue.get_status(queue_name, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    retried = await services.task_queue.retry(job_id)
    if retried is None:
        raise HTTPException(status_code=404, detail="Job not found or not in failed state")

    logger.info(f"Job {job_id} on {queue_name} queued for retry via API")
    return {"success": True, "message": "Job queued for retry"}


@router.post("/cleanup")
async def cleanup_jobs(
    retention_hours: Optional[float] = Query(None, alias="retentionHours", gt=0),
    services: Services = Depends(get_services),
):
    retention = timedelta(hours=retention_hours) if retention_hours else None
    removed = await services.task_queue.cleanup(retention)
    return {"success": True, "removed": removed}


@router.get("/dead-letter/{queue_name}")
async def get_dead_letter(
    queue_name: str,
    limit: int = Query(100, ge=1, le=1000),
    services: Services = Depends(get_services),
):
    failed = await services.task_queue.dead_letter(queue_name, limit)
    archived = await services.task_queue.archived_stats(queue_name)
    return {
        "queue": queue_name,
        "jobs": [summary.model_dump(mode="json") for summary in failed],
        "archived": archived.model_dump(),
    }
