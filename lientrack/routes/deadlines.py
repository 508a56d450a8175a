from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import Response

from lientrack.application import get_deadline_service
from lientrack.core.dates import utc_now
from lientrack.core.schema import CalculateRequest, StatusUpdate
from lientrack.exporters.reminder_queue_csv import reminders_to_csv

router = APIRouter(prefix="/deadlines", tags=["deadlines"])


@router.post("/calculate")
async def calculate_deadline(payload: CalculateRequest) -> dict:
    """Evaluate one rule without persisting anything."""
    service = get_deadline_service()
    result = service.rules.compute(
        payload.category,
        payload.facts,
        payload.as_of or utc_now(),
        urgent_window=service.urgent_window,
    )
    return result.model_dump(mode="json")


@router.get("/reminders")
async def list_reminders(
    window: int | None = Query(default=None, ge=0),
    user_id: str | None = Query(default=None),
) -> dict:
    service = get_deadline_service()
    applied = service.reminder_window if window is None else window
    views = await service.get_deadlines_needing_reminders(applied, user_id=user_id)
    return {"window": applied, "items": [view.model_dump(mode="json") for view in views]}


@router.get("/reminders.csv")
async def export_reminders(
    window: int | None = Query(default=None, ge=0),
    user_id: str | None = Query(default=None),
) -> Response:
    service = get_deadline_service()
    views = await service.get_deadlines_needing_reminders(window, user_id=user_id)
    return Response(content=reminders_to_csv(views), media_type="text/csv")


@router.get("/{deadline_id}")
async def get_deadline(deadline_id: str) -> dict:
    service = get_deadline_service()
    view = await service.get_deadline(deadline_id)
    return view.model_dump(mode="json")


@router.patch("/{deadline_id}")
async def update_deadline_status(deadline_id: str, payload: StatusUpdate) -> dict:
    if not payload.status:
        raise HTTPException(status_code=400, detail="status is required")
    service = get_deadline_service()
    view = await service.update_deadline_status(deadline_id, payload.status)
    return view.model_dump(mode="json")


@router.delete("/{deadline_id}")
async def delete_deadline(deadline_id: str) -> dict:
    service = get_deadline_service()
    await service.delete_deadline(deadline_id)
    return {"id": deadline_id, "deleted": True}
