"""Session endpoints: current user, logout."""
from fastapi import APIRouter, Depends, Request

from upload_gateway.api.schemas import MessageResponse, SessionUser
from upload_gateway.core.deps import authenticate_user

router = APIRouter(prefix="/1", tags=["auth"])


@router.get("/me", response_model=SessionUser)
async def me(user_id: str | None = Depends(authenticate_user)):
    return SessionUser(user_id=user_id)


@router.post("/logout", response_model=MessageResponse)
async def logout(request: Request):
    """Drop the server-side session; the cookie is cleared on the way out."""
    session = getattr(request.state, "session", None)
    if session is not None:
        session.clear()
    return MessageResponse(message="logged out")
