"""Retry queue and dead-letter administration endpoints."""

from fastapi import APIRouter, Query, Request

from payrelay.services.transactions.routes import pagination


router = APIRouter(prefix="/api", tags=["retry-queue"])


@router.get("/retry-queue")
def list_jobs(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    status: str | None = None,
):
    jobs, total = request.app.state.job_store.list_jobs(status=status, page=page, limit=limit)
    return {
        "success": True,
        "data": {"jobs": [job.to_dict() for job in jobs], "pagination": pagination(page, limit, total)},
    }


@router.post("/retry-queue")
async def process_queue(request: Request):
    """Run one processing cycle now."""

    result = await request.app.state.retry_processor.process_once()
    return {"success": True, "message": "Queue processing triggered", "data": result.as_dict()}


@router.get("/retry-queue/stats")
def queue_stats(request: Request):
    return {"success": True, "data": request.app.state.job_store.stats()}


@router.get("/dead-letter")
def list_dead_letter(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    items = request.app.state.dead_letters.list_dead_letter(limit=limit, offset=offset)
    return {"success": True, "data": {"items": [item.to_dict() for item in items]}}


@router.post("/dead-letter/{dead_letter_id}/retry")
def requeue_dead_letter(dead_letter_id: int, request: Request):
    new_job_id = request.app.state.dead_letters.requeue(dead_letter_id)
    return {"success": True, "data": {"newJobId": new_job_id}, "message": "Item requeued for retry"}
