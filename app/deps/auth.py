from typing import Tuple

from fastapi import HTTPException, Request

from app.services.auth_service import verify_token

ORGANIZATION_HEADER = "X-Organization-Id"


def _parse_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise HTTPException(status_code=401, detail="Invalid Authorization header")

    return parts[1].strip()


def require_auth(request: Request) -> Tuple[str, int]:
    token = _parse_bearer_token(request)

    try:
        claims = verify_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    try:
        token_organization_id = int(claims.get("organization_id"))
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=401, detail="Invalid token claims") from exc

    header_organization_id = request.headers.get(ORGANIZATION_HEADER)
    if header_organization_id is None:
        raise HTTPException(status_code=403, detail=f"Missing {ORGANIZATION_HEADER} header")

    try:
        header_organization_id_int = int(header_organization_id)
    except ValueError as exc:
        raise HTTPException(status_code=403, detail=f"Invalid {ORGANIZATION_HEADER} header") from exc

    if header_organization_id_int != token_organization_id:
        raise HTTPException(status_code=403, detail="Organization mismatch")

    user_id = str(claims.get("sub"))
    request.state.user_id = user_id
    request.state.organization_id = token_organization_id
    request.state.claims = claims

    return user_id, token_organization_id
