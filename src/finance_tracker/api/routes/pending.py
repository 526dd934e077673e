from typing import Annotated, Any

from fastapi import APIRouter, Depends

from finance_tracker.api.dependencies import get_coordinator
from finance_tracker.api.errors import not_found, upstream_http_error
from finance_tracker.api.schemas import TransactionPatch
from finance_tracker.errors import UpstreamServiceError
from finance_tracker.services.reconciliation import ReconciliationCoordinator

router = APIRouter()


@router.get("/api/pending")
async def list_pending(
    coordinator: Annotated[ReconciliationCoordinator, Depends(get_coordinator)],
) -> dict[str, Any]:
    coordinator.sweep_stale()
    return {
        "pending": [record.model_dump(mode="json") for record in coordinator.state.optimistic_records()],
        "in_flight": sorted(coordinator.in_flight),
        "failed": [entry.model_dump(mode="json") for entry in coordinator.failed_entries()],
    }


@router.patch("/api/pending/{temp_id}")
async def update_pending(
    temp_id: str,
    body: TransactionPatch,
    coordinator: Annotated[ReconciliationCoordinator, Depends(get_coordinator)],
) -> dict[str, Any]:
    record = coordinator.update_pending(temp_id, body.changes())
    if record is None:
        raise not_found("Pending transaction", temp_id)
    return {"transaction": record.model_dump(mode="json")}


@router.delete("/api/pending/{temp_id}")
async def discard_pending(
    temp_id: str,
    coordinator: Annotated[ReconciliationCoordinator, Depends(get_coordinator)],
) -> dict[str, str]:
    if not coordinator.discard(temp_id):
        raise not_found("Pending transaction", temp_id)
    return {"status": "discarded", "temp_id": temp_id}


@router.post("/api/pending/{temp_id}/retry")
async def retry_pending(
    temp_id: str,
    coordinator: Annotated[ReconciliationCoordinator, Depends(get_coordinator)],
) -> dict[str, Any]:
    try:
        outcome = await coordinator.retry(temp_id)
    except KeyError as exc:
        raise not_found("Failed transaction", temp_id) from exc
    except UpstreamServiceError as exc:
        raise upstream_http_error(exc) from exc
    return {
        "transaction": outcome.record.model_dump(mode="json"),
        "temp_id": outcome.temp_id,
        "matched_temp_id": outcome.matched_temp_id,
    }


@router.post("/api/reset")
async def reset_state(
    coordinator: Annotated[ReconciliationCoordinator, Depends(get_coordinator)],
) -> dict[str, str]:
    coordinator.reset()
    return {"status": "reset"}
