"""Outbound provider operations exposed to the dashboard."""

from fastapi import APIRouter, Request

from payrelay.services.mpesa.schemas import (
    B2CPaymentRequest,
    C2BRegisterRequest,
    C2BSimulateRequest,
    StkPushRequest,
    StkQueryRequest,
)


router = APIRouter(prefix="/api/mpesa", tags=["mpesa"])


@router.post("/stk-push")
async def stk_push(req: StkPushRequest, request: Request):
    data = await request.app.state.mpesa_client.stk_push(
        phone_number=req.phone_number,
        amount=req.amount,
        account_reference=req.account_reference,
        transaction_desc=req.transaction_desc,
    )
    return {"success": True, "data": data}


@router.post("/stk-push/query")
async def stk_query(req: StkQueryRequest, request: Request):
    data = await request.app.state.mpesa_client.stk_query(req.checkout_request_id)
    return {"success": True, "data": data}


@router.post("/c2b/register")
async def c2b_register(req: C2BRegisterRequest, request: Request):
    data = await request.app.state.mpesa_client.c2b_register(req.response_type)
    return {"success": True, "data": data}


@router.post("/c2b/simulate")
async def c2b_simulate(req: C2BSimulateRequest, request: Request):
    data = await request.app.state.mpesa_client.c2b_simulate(
        amount=req.amount,
        msisdn=req.msisdn,
        bill_ref_number=req.bill_ref_number,
        command_id=req.command_id,
    )
    return {"success": True, "data": data}


@router.post("/b2c")
async def b2c_payment(req: B2CPaymentRequest, request: Request):
    data = await request.app.state.mpesa_client.b2c_payment(
        amount=req.amount,
        phone_number=req.phone_number,
        remarks=req.remarks,
        occasion=req.occasion,
        command_id=req.command_id,
    )
    return {"success": True, "data": data}
