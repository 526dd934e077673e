from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException

from finance_tracker.api.dependencies import get_coordinator, get_state
from finance_tracker.api.errors import not_found, upstream_http_error
from finance_tracker.api.schemas import ReviewResolution
from finance_tracker.errors import UpstreamServiceError
from finance_tracker.models import Stats
from finance_tracker.services.reconciliation import ReconciliationCoordinator
from finance_tracker.services.state import ReconciliationState

router = APIRouter()


@router.get("/api/stats")
async def get_stats(state: Annotated[ReconciliationState, Depends(get_state)]) -> Stats:
    return state.stats


@router.get("/api/review")
async def review_queue(state: Annotated[ReconciliationState, Depends(get_state)]) -> dict[str, Any]:
    records = state.review_queue()
    return {
        "transactions": [record.model_dump(mode="json") for record in records],
        "count": len(records),
    }


@router.post("/api/review/{transaction_id}/resolve")
async def resolve_review(
    transaction_id: str,
    body: ReviewResolution,
    coordinator: Annotated[ReconciliationCoordinator, Depends(get_coordinator)],
) -> dict[str, Any]:
    state = coordinator.state
    if state.get_confirmed(transaction_id) is None and state.get_held(transaction_id) is None:
        raise not_found("Transaction", transaction_id)
    try:
        record = await coordinator.resolve_review(transaction_id, body.amount, body.category)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UpstreamServiceError as exc:
        raise upstream_http_error(exc) from exc
    return {"transaction": record.model_dump(mode="json")}


@router.get("/api/diagnostics")
async def diagnostics(
    coordinator: Annotated[ReconciliationCoordinator, Depends(get_coordinator)],
) -> dict[str, Any]:
    state = coordinator.state
    return {
        "normalization_fallbacks": state.fallbacks.counts(),
        "reconciliation_mismatches": state.mismatch_count,
        "pending": len(state.ledger),
        "in_flight": len(coordinator.in_flight),
        "failed": len(coordinator.failed_entries()),
        "confirmed": len(state.confirmed_records()),
        "held_for_review": len(state.held_records()),
    }
