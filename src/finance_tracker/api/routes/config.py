from typing import Any

from fastapi import APIRouter, HTTPException, Request

from finance_tracker.core import configuration

router = APIRouter()


@router.get("/api/config")
async def get_config() -> dict[str, object]:
    return configuration.build_config_context()


@router.post("/api/config")
async def save_config(request: Request, values: dict[str, Any]) -> dict[str, object]:
    errors, updates = configuration.apply_config_updates(values)
    if errors:
        raise HTTPException(status_code=422, detail={"errors": errors})
    configuration.apply_runtime_updates(request.app, updates)
    return {"status": "saved", "updated": sorted(updates)}
