"""User profile routes.

Any signed-in user can read any profile; only the owner can edit theirs.
Profiles are created by the database when the user registers.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

import auth
import db
from schemas import ProfileUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/profiles", tags=["profiles"])


@router.get("/me")
async def get_my_profile(session: auth.Session = Depends(auth.get_session)):
    """Current user's profile."""
    profile = await db.get_profile(session.user_id)
    if not profile:
        return JSONResponse({"error": "Profile not found"}, status_code=404)
    return profile


@router.put("/me")
async def update_my_profile(body: ProfileUpdate, session: auth.Session = Depends(auth.get_session)):
    """Update display name and/or avatar."""
    update_data = body.model_dump(exclude_none=True)
    if not update_data:
        return JSONResponse({"error": "No fields to update"}, status_code=400)

    updated = await db.update_profile(session.user_id, **update_data)
    if not updated:
        return JSONResponse({"error": "Profile not found"}, status_code=404)
    return await db.get_profile(session.user_id)


@router.get("/{profile_id}")
async def get_profile(profile_id: str, session: auth.Session = Depends(auth.get_session)):
    """Any user's public profile."""
    profile = await db.get_profile(profile_id)
    if not profile:
        return JSONResponse({"error": "Profile not found"}, status_code=404)
    return profile
