"""Project CRUD routes. Deleting a project removes its prompts and their runs."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

import auth
import db
from schemas import ProjectCreate, ProjectUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects", tags=["projects"])


@router.get("")
async def list_projects(session: auth.Session = Depends(auth.get_session)):
    """List the current user's projects, newest first."""
    projects = await db.get_projects(session.user_id)
    return {"projects": projects}


@router.post("")
async def create_project(body: ProjectCreate, session: auth.Session = Depends(auth.get_session)):
    """Create a project."""
    project = await db.create_project(session.user_id, body.name, body.description)
    logger.info("Project created: %s", project["id"], extra={"user_id": session.user_id})
    return {"status": "ok", "project": project}


@router.get("/{project_id}")
async def get_project(project_id: str, session: auth.Session = Depends(auth.get_session)):
    """Get one project with its prompts."""
    project = await db.get_project(project_id, session.user_id)
    if not project:
        return JSONResponse({"error": "Project not found"}, status_code=404)
    project["prompts"] = await db.get_prompts(session.user_id, project_id=project_id)
    return project


@router.put("/{project_id}")
async def update_project(project_id: str, body: ProjectUpdate, session: auth.Session = Depends(auth.get_session)):
    """Rename or re-describe a project."""
    update_data = {
        k: v for k, v in body.model_dump(exclude_unset=True).items()
        if v is not None or k == "description"
    }
    if not update_data:
        return JSONResponse({"error": "No fields to update"}, status_code=400)

    updated = await db.update_project(project_id, session.user_id, **update_data)
    if not updated:
        return JSONResponse({"error": "Project not found"}, status_code=404)
    return {"status": "ok", "project": await db.get_project(project_id, session.user_id)}


@router.delete("/{project_id}")
async def delete_project(project_id: str, request: Request, session: auth.Session = Depends(auth.get_session)):
    """Delete a project and everything in it."""
    deleted = await db.delete_project(project_id, session.user_id)
    if not deleted:
        return JSONResponse({"error": "Project not found"}, status_code=404)

    await db.log_audit(
        user_id=session.user_id,
        username=session.email,
        action="project_delete",
        resource_type="project",
        resource_id=project_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent", ""),
    )
    return {"status": "ok"}
