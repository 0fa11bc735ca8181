"""Prompt template CRUD routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

import auth
import db
from schemas import PromptCreate, PromptUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/prompts", tags=["prompts"])

_CLEARABLE = {"project_id", "tags"}


async def _project_belongs_to(project_id: Optional[str], session: auth.Session) -> bool:
    if not project_id:
        return True
    return await db.get_project(project_id, session.user_id) is not None


@router.get("")
async def list_prompts(project_id: str = "", session: auth.Session = Depends(auth.get_session)):
    """List the current user's prompts, newest first."""
    prompts = await db.get_prompts(session.user_id, project_id=project_id or None)
    return {"prompts": prompts}


@router.post("")
async def create_prompt(body: PromptCreate, session: auth.Session = Depends(auth.get_session)):
    """Create a prompt template."""
    if not await _project_belongs_to(body.project_id, session):
        return JSONResponse({"error": "Project not found"}, status_code=404)

    prompt = await db.create_prompt(
        user_id=session.user_id,
        title=body.title,
        content=body.content,
        model=body.model,
        temperature=body.temperature,
        max_tokens=body.max_tokens,
        tags=body.tags,
        project_id=body.project_id,
    )
    logger.info("Prompt created: %s", prompt["id"], extra={"user_id": session.user_id})
    return {"status": "ok", "prompt": prompt}


@router.get("/{prompt_id}")
async def get_prompt(prompt_id: str, session: auth.Session = Depends(auth.get_session)):
    """Get a single prompt."""
    prompt = await db.get_prompt(prompt_id, session.user_id)
    if not prompt:
        return JSONResponse({"error": "Prompt not found"}, status_code=404)
    return prompt


@router.put("/{prompt_id}")
async def update_prompt(prompt_id: str, body: PromptUpdate, session: auth.Session = Depends(auth.get_session)):
    """Edit a prompt. Changing the content bumps its version."""
    # project_id and tags may be cleared with null; other fields are left unchanged
    update_data = {
        k: v for k, v in body.model_dump(exclude_unset=True).items()
        if v is not None or k in _CLEARABLE
    }
    if not update_data:
        return JSONResponse({"error": "No fields to update"}, status_code=400)
    if not await _project_belongs_to(update_data.get("project_id"), session):
        return JSONResponse({"error": "Project not found"}, status_code=404)

    updated = await db.update_prompt(prompt_id, session.user_id, **update_data)
    if not updated:
        return JSONResponse({"error": "Prompt not found"}, status_code=404)
    return {"status": "ok", "prompt": await db.get_prompt(prompt_id, session.user_id)}


@router.delete("/{prompt_id}")
async def delete_prompt(prompt_id: str, request: Request, session: auth.Session = Depends(auth.get_session)):
    """Delete a prompt. Its runs are deleted with it."""
    deleted = await db.delete_prompt(prompt_id, session.user_id)
    if not deleted:
        return JSONResponse({"error": "Prompt not found"}, status_code=404)

    await db.log_audit(
        user_id=session.user_id,
        username=session.email,
        action="prompt_delete",
        resource_type="prompt",
        resource_id=prompt_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent", ""),
    )
    return {"status": "ok"}
