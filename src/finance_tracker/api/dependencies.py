from fastapi import HTTPException, Request

from finance_tracker.ingestion.converter import DocumentConverter
from finance_tracker.ingestion.pipeline import IngestionPipeline
from finance_tracker.services.reconciliation import ReconciliationCoordinator
from finance_tracker.services.state import ReconciliationState


def get_coordinator(request: Request) -> ReconciliationCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if not coordinator:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return coordinator


def get_state(request: Request) -> ReconciliationState:
    coordinator = get_coordinator(request)
    # Reads also sweep, so stale entries expire when no create completes.
    coordinator.sweep_stale()
    return coordinator.state


def get_ingestion(request: Request) -> IngestionPipeline:
    pipeline = getattr(request.app.state, "ingestion", None)
    if not pipeline:
        raise HTTPException(status_code=500, detail="Ingestion not initialized")
    return pipeline


def get_converter(request: Request) -> DocumentConverter:
    converter = getattr(request.app.state, "converter", None)
    if not converter:
        raise HTTPException(status_code=500, detail="Converter not initialized")
    return converter
