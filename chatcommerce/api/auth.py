import re

from fastapi import APIRouter, Depends, HTTPException, Response

from chatcommerce.dependecies import get_current_user, get_db_path, get_token
from chatcommerce.models.database import (
    authenticate_credentials,
    create_user,
    issue_token,
    revoke_token,
)
from chatcommerce.models.schemas import LoginRequest, RegisterRequest, User, ok

router = APIRouter(prefix="/api/auth", tags=["auth"])

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
TOKEN_MAX_AGE = 7 * 24 * 60 * 60


def _set_auth_cookie(response: Response, token: str):
    response.set_cookie(
        "auth-token", token, max_age=TOKEN_MAX_AGE, httponly=True, samesite="strict", path="/"
    )


@router.post("/register", status_code=201)
async def register(
    body: RegisterRequest,
    response: Response,
    db_path: str = Depends(get_db_path),
):
    if not body.email.strip() or not body.password or not body.name.strip():
        raise HTTPException(status_code=400, detail="Email, password, and name are required")
    if not EMAIL_RE.match(body.email.strip()):
        raise HTTPException(status_code=400, detail="Please enter a valid email address")
    if len(body.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters long")

    user = await create_user(db_path, body.email, body.name, body.password, phone=body.phone)
    token = await issue_token(db_path, user.id)
    _set_auth_cookie(response, token)
    return ok({"user": user.to_payload(), "token": token}, "User registered successfully")


@router.post("/login")
async def login(
    body: LoginRequest,
    response: Response,
    db_path: str = Depends(get_db_path),
):
    if not body.email.strip() or not body.password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    user = await authenticate_credentials(db_path, body.email, body.password)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    token = await issue_token(db_path, user.id)
    _set_auth_cookie(response, token)
    return ok({"user": user.to_payload(), "token": token}, "Login successful")


@router.post("/logout")
async def logout(
    response: Response,
    token: str | None = Depends(get_token),
    db_path: str = Depends(get_db_path),
):
    if token:
        await revoke_token(db_path, token)
    response.delete_cookie("auth-token", path="/")
    return ok(message="Logged out successfully")


@router.get("/me")
async def me(user: User = Depends(get_current_user)):
    return ok(user.to_payload())
