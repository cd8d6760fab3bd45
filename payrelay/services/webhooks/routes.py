"""Provider callback endpoints.

Thin HTTP layer: verification decides whether the body is looked at, the
callback service does everything else and always yields an acknowledgment.
"""

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.concurrency import run_in_threadpool

from payrelay.common.errors import VerificationError
from payrelay.common.logging import logger


router = APIRouter(prefix="/api/mpesa/callback", tags=["callbacks"])


async def receive_callback(request: Request, background_tasks: BackgroundTasks, callback_type: str):
    verifier = request.app.state.webhook_verifier
    service = request.app.state.callback_service
    verification = verifier.verify(request.headers, callback_type, background_tasks)
    try:
        verification.raise_for_status()
    except VerificationError as exc:
        logger.warning(
            "callback_unverified callback_type=%s code=%s reason=%s client_ip=%s",
            callback_type,
            exc.code,
            exc.message,
            verification.client_ip,
        )
        return service.rejection_ack(callback_type, verification)
    try:
        body = await request.json()
    except ValueError:
        body = None
    return await run_in_threadpool(service.handle, callback_type, body, verification)


@router.post("/stk")
async def stk_callback(request: Request, background_tasks: BackgroundTasks):
    return await receive_callback(request, background_tasks, "STK")


@router.post("/c2b/validation")
async def c2b_validation(request: Request, background_tasks: BackgroundTasks):
    return await receive_callback(request, background_tasks, "C2B_VALIDATION")


@router.post("/c2b/confirmation")
async def c2b_confirmation(request: Request, background_tasks: BackgroundTasks):
    return await receive_callback(request, background_tasks, "C2B_CONFIRMATION")


@router.post("/b2c/result")
async def b2c_result(request: Request, background_tasks: BackgroundTasks):
    return await receive_callback(request, background_tasks, "B2C_RESULT")


@router.post("/b2c/timeout")
async def b2c_timeout(request: Request, background_tasks: BackgroundTasks):
    return await receive_callback(request, background_tasks, "B2C_TIMEOUT")
