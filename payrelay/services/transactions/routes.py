"""Read-only transaction endpoints and dashboard statistics."""

import math

from fastapi import APIRouter, Query, Request


router = APIRouter(prefix="/api", tags=["transactions"])


def pagination(page: int, limit: int, total: int) -> dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "totalPages": math.ceil(total / limit) if limit else 0}


@router.get("/transactions")
def list_transactions(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    type: str | None = None,
    status: str | None = None,
    search: str | None = None,
):
    rows, total = request.app.state.transactions.list_transactions(
        page=page, limit=limit, transaction_type=type, status=status, search=search
    )
    return {
        "success": True,
        "data": {"transactions": [row.to_dict() for row in rows], "pagination": pagination(page, limit, total)},
    }


@router.get("/transactions/{transaction_id}")
def get_transaction(transaction_id: int, request: Request):
    txn = request.app.state.transactions.get(transaction_id)
    return {"success": True, "data": txn.to_dict()}


@router.get("/stats")
def stats(request: Request):
    return {"success": True, "data": request.app.state.transactions.stats()}
