from fastapi import APIRouter, Depends, Form, HTTPException, status

from ..auth import authenticate_admin, create_access_token
from ..deps import enforce_rate_limit, get_request_meta
from ..schemas import Token
from ..session_validator import RequestMeta

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/login", response_model=Token)
def admin_login(
    username: str = Form(..., description="**Admin username**"),
    password: str = Form(..., description="**Admin password**"),
    meta: RequestMeta = Depends(get_request_meta),
):
    """
    Exchange the shared admin credential for a bearer token
    """
    enforce_rate_limit("admin", meta.ip_address)
    if not authenticate_admin(username, password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token = create_access_token(data={"sub": username, "role": "admin"})
    return {"access_token": access_token, "token_type": "bearer"}
