"""Session-authenticated account routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from beout.dependencies import get_current_session, get_db
from beout.models.user import User
from beout.schemas.auth import MeResponse, ProfileResponse
from beout.services.identity_service import to_summary
from beout.services.session_issuer import SessionClaims

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me", response_model=MeResponse)
async def get_me(
    claims: SessionClaims = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
):
    """Get the user behind the current session token."""
    result = await db.execute(select(User).where(User.id == claims.user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    profile = None
    if user.profile is not None:
        profile = ProfileResponse.model_validate(user.profile, from_attributes=True)
    return MeResponse(user=to_summary(user), profile=profile)
