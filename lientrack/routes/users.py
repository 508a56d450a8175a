from __future__ import annotations

from fastapi import APIRouter, Query

from lientrack.application import get_deadline_service

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/{user_id}/deadlines")
async def list_user_deadlines(user_id: str) -> dict:
    service = get_deadline_service()
    views = await service.fetch_deadlines_by_user(user_id)
    return {"user_id": user_id, "items": [view.model_dump(mode="json") for view in views]}


@router.get("/{user_id}/deadlines/stats")
async def get_user_stats(user_id: str) -> dict:
    service = get_deadline_service()
    return await service.get_dashboard_stats(user_id)


@router.get("/{user_id}/deadlines/upcoming")
async def list_upcoming(user_id: str, days: int = Query(default=30, ge=0)) -> dict:
    service = get_deadline_service()
    views = await service.get_upcoming_deadlines(user_id, days)
    return {"user_id": user_id, "days": days, "items": [view.model_dump(mode="json") for view in views]}


@router.get("/{user_id}/deadlines/overdue")
async def list_overdue(user_id: str) -> dict:
    service = get_deadline_service()
    views = await service.get_overdue_deadlines(user_id)
    return {"user_id": user_id, "items": [view.model_dump(mode="json") for view in views]}
