from typing import Annotated, Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from finance_tracker.api.dependencies import get_coordinator
from finance_tracker.api.errors import not_found, upstream_http_error
from finance_tracker.api.schemas import RefreshRequest, TransactionCreate, TransactionPatch
from finance_tracker.errors import UpstreamServiceError
from finance_tracker.services.reconciliation import ReconciliationCoordinator

router = APIRouter()


@router.get("/api/transactions")
async def list_transactions(
    coordinator: Annotated[ReconciliationCoordinator, Depends(get_coordinator)],
) -> dict[str, Any]:
    coordinator.sweep_stale()
    state = coordinator.state
    return {
        "transactions": [record.model_dump(mode="json") for record in state.merged_records()],
        "stats": state.stats.model_dump(),
    }


@router.post("/api/transactions", status_code=201)
async def create_transaction(
    body: TransactionCreate,
    coordinator: Annotated[ReconciliationCoordinator, Depends(get_coordinator)],
    wait: bool = True,
) -> Any:
    payload = body.model_dump(exclude_none=True)
    if not wait:
        record = coordinator.create_nowait(payload)
        return JSONResponse(status_code=202, content={"transaction": record.model_dump(mode="json")})

    try:
        outcome = await coordinator.create(payload)
    except UpstreamServiceError as exc:
        raise upstream_http_error(exc) from exc
    return {
        "transaction": outcome.record.model_dump(mode="json"),
        "temp_id": outcome.temp_id,
        "matched_temp_id": outcome.matched_temp_id,
        "stats": coordinator.state.stats.model_dump(),
    }


@router.post("/api/transactions/refresh")
async def refresh_transactions(
    coordinator: Annotated[ReconciliationCoordinator, Depends(get_coordinator)],
    body: RefreshRequest | None = None,
) -> dict[str, Any]:
    filters = body.model_dump(exclude_none=True) if body else None
    try:
        records = await coordinator.refresh(filters)
    except UpstreamServiceError as exc:
        raise upstream_http_error(exc) from exc
    return {
        "count": len(records),
        "stats": coordinator.state.stats.model_dump(),
    }


@router.patch("/api/transactions/{transaction_id}")
async def update_transaction(
    transaction_id: str,
    body: TransactionPatch,
    coordinator: Annotated[ReconciliationCoordinator, Depends(get_coordinator)],
) -> dict[str, Any]:
    if coordinator.state.get_confirmed(transaction_id) is None:
        raise not_found("Transaction", transaction_id)
    try:
        record = await coordinator.update(transaction_id, body.changes())
    except UpstreamServiceError as exc:
        raise upstream_http_error(exc) from exc
    return {"transaction": record.model_dump(mode="json")}


@router.delete("/api/transactions/{transaction_id}")
async def delete_transaction(
    transaction_id: str,
    coordinator: Annotated[ReconciliationCoordinator, Depends(get_coordinator)],
) -> dict[str, str]:
    state = coordinator.state
    if state.get_confirmed(transaction_id) is None and state.get_held(transaction_id) is None:
        raise not_found("Transaction", transaction_id)
    try:
        await coordinator.delete(transaction_id)
    except UpstreamServiceError as exc:
        raise upstream_http_error(exc) from exc
    return {"status": "deleted", "id": transaction_id}
