from __future__ import annotations

import logging
import tempfile
from pathlib import Path

from fastapi import APIRouter, File, Form, HTTPException, UploadFile

from lientrack.application import get_deadline_service
from lientrack.core.errors import StorageError, UnsupportedRuleError
from lientrack.core.schema import ProjectFacts
from lientrack.extractors import project_facts

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects", tags=["projects"])

IMPORT_SUFFIXES = {".csv", ".xlsx", ".xls"}


@router.post("/import")
async def import_projects(file: UploadFile = File(...), user_id: str | None = Form(default=None)) -> dict:
    """Create or refresh deadlines for every project row in an uploaded sheet."""
    if not file.filename:
        raise HTTPException(status_code=400, detail="Uploaded file must have a filename")
    safe_name = Path(file.filename).name
    suffix = Path(safe_name).suffix.lower()
    if suffix not in IMPORT_SUFFIXES:
        raise HTTPException(status_code=400, detail=f"unsupported file type {suffix or '<none>'}")

    try:
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / safe_name
            target.write_bytes(await file.read())
            parsed = project_facts.parse(target, default_user_id=user_id)
    finally:
        await file.close()

    service = get_deadline_service()
    items: list[dict] = []
    errors = list(parsed.errors)
    for project_id, facts in parsed.projects:
        try:
            report = await service.create_project_deadlines(project_id, facts)
        except (UnsupportedRuleError, StorageError) as exc:
            logger.warning("import of project %s failed: %s", project_id, exc)
            errors.append({"row": None, "project_id": project_id, "error": str(exc)})
            continue
        items.append(report.to_dict())

    return {"filename": safe_name, "items": items, "errors": errors}


@router.post("/{project_id}/deadlines")
async def create_project_deadlines(project_id: str, facts: ProjectFacts) -> dict:
    service = get_deadline_service()
    report = await service.create_project_deadlines(project_id, facts)
    return report.to_dict()


@router.put("/{project_id}/deadlines")
async def update_project_deadlines(project_id: str, facts: ProjectFacts) -> dict:
    service = get_deadline_service()
    report = await service.update_project_deadlines(project_id, facts)
    return report.to_dict()


@router.get("/{project_id}/deadlines")
async def list_project_deadlines(project_id: str) -> dict:
    service = get_deadline_service()
    views = await service.fetch_deadlines_by_project(project_id)
    return {"project_id": project_id, "items": [view.model_dump(mode="json") for view in views]}


@router.delete("/{project_id}/deadlines")
async def delete_project_deadlines(project_id: str) -> dict:
    service = get_deadline_service()
    deleted = await service.delete_project_deadlines(project_id)
    return {"project_id": project_id, "deleted": deleted}
