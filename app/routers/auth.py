from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from app.core.authorization import Role
from app.core.config import is_dev_env
from app.services.auth_service import create_access_token

router = APIRouter(prefix="/auth", tags=["auth"])


class TokenRequest(BaseModel):
    user_id: str
    organization_id: int
    role: Role = Role.EMPLOYEE


@router.post("/token")
def issue_token(payload: TokenRequest):
    if not is_dev_env():
        raise HTTPException(status_code=404, detail="Not Found")
    try:
        token = create_access_token(
            user_id=str(payload.user_id),
            organization_id=int(payload.organization_id),
            role=payload.role.value,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return {
        "access_token": token,
        "token_type": "bearer",
    }
