import logging
import os
import secrets
from typing import Annotated, Optional

from db import ServicesDep
from fastapi import APIRouter, Cookie, Depends, HTTPException, Response
from itsdangerous import BadSignature, URLSafeTimedSerializer
from models import Role
from passlib.context import CryptContext
from schemas import LoginData, UserCreate, UserRead, UserStats
from services.gamification import next_level_xp
from services.store import join_path, server_timestamp

router = APIRouter(tags=["auth"])
logger = logging.getLogger("ecowaste.auth")

SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
SESSION_MAX_AGE = int(os.getenv("SESSION_MAX_AGE", str(60 * 60 * 8)))
serializer = URLSafeTimedSerializer(SECRET_KEY)


pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def admin_emails() -> set:
    raw = os.getenv("ADMIN_EMAILS", "")
    return {e.strip().lower() for e in raw.split(",") if e.strip()}


def create_session_token(user_id: str, role: str) -> str:
    """
    Store user_id + role in the signed token.
    Example data:
        {"user_id": "018f3c2a9b1d7e4a2c", "role": "member"}
    """
    return serializer.dumps({"user_id": user_id, "role": role})


def verify_session_token(token: str, max_age_seconds: int = SESSION_MAX_AGE):
    """
    Returns dict {'user_id': ..., 'role': ...} if valid,
    or None if token is invalid/expired.
    """
    try:
        return serializer.loads(token, max_age=max_age_seconds)
    except BadSignature:
        return None


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key="session",
        value=token,
        httponly=True,
        secure=False,
        samesite="lax",
        max_age=SESSION_MAX_AGE,
    )


async def _find_by_email(services, email: str) -> Optional[UserStats]:
    users = await services.store.get("users") or {}
    wanted = email.lower()
    for key, value in users.items():
        if str((value or {}).get("email", "")).lower() == wanted:
            return UserStats.from_store(key, value)
    return None


async def _user_from_token(services, session_token: Optional[str]) -> Optional[dict]:
    if session_token is None:
        return None
    data = verify_session_token(session_token)
    if not data:
        return None
    raw = await services.store.get(join_path("users", data["user_id"]))
    if raw is None:
        return None
    return {"user": UserStats.from_store(data["user_id"], raw), "role": data["role"]}


async def get_current_user_and_role(
    services: ServicesDep,
    session_token: Optional[str] = Cookie(default=None, alias="session"),
) -> dict:
    """
    Reads the 'session' cookie, verifies the token,
    looks up the user, and returns {"user": UserStats, "role": str}.
    Raises 401 if not logged in / invalid.
    """
    if session_token is None:
        raise HTTPException(status_code=401, detail="Not logged in")

    current = await _user_from_token(services, session_token)
    if current is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return current


CurrentUserRoleDep = Annotated[dict, Depends(get_current_user_and_role)]


async def get_optional_user_and_role(
    services: ServicesDep,
    session_token: Optional[str] = Cookie(default=None, alias="session"),
) -> Optional[dict]:
    """
    Like get_current_user_and_role, but returns None instead of raising 401.
    Used where anonymous visitors may read public content.
    """
    return await _user_from_token(services, session_token)


OptionalUserRoleDep = Annotated[Optional[dict], Depends(get_optional_user_and_role)]


def _ensure_admin(role: str) -> None:
    if role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")


def require_admin(current: CurrentUserRoleDep) -> dict:
    _ensure_admin(current["role"])
    return current


AdminDep = Annotated[dict, Depends(require_admin)]


@router.post("/register", status_code=201)
async def register(user_in: UserCreate, services: ServicesDep, response: Response):
    """
    Register a new user with a hashed password and fresh gamification stats.
    """
    if await _find_by_email(services, user_in.email) is not None:
        raise HTTPException(status_code=400, detail="Email already registered")

    role = Role.ADMIN if user_in.email.lower() in admin_emails() else Role.MEMBER
    user_id = await services.store.push(
        "users",
        {
            "email": user_in.email,
            "name": user_in.name,
            "passwordHash": hash_password(user_in.password),
            "role": role,
            "xp": 0,
            "level": 1,
            "ecoPoints": 0,
            "recyclingCount": 0,
            "donationCount": 0,
            "projectsCompleted": 0,
            "equippedBorder": "default",
            "createdAt": server_timestamp(),
        },
    )
    logger.info("User %s registered as %s", user_id, role)

    _set_session_cookie(response, create_session_token(user_id, role))
    return {"message": "Registration successful", "id": user_id, "role": role}


@router.post("/login")
async def login(payload: LoginData, services: ServicesDep, response: Response):
    """
    Log in with email + password and set a signed session cookie.
    """
    user = await _find_by_email(services, payload.email)
    if user is None:
        raise HTTPException(status_code=400, detail="Invalid email or password")

    raw = await services.store.get(join_path("users", user.id)) or {}
    hashed = raw.get("passwordHash")
    if not hashed or not verify_password(payload.password, hashed):
        raise HTTPException(status_code=400, detail="Invalid email or password")

    _set_session_cookie(response, create_session_token(user.id, user.role))
    return {"message": "Login successful", "role": user.role}


@router.post("/logout")
def logout(response: Response):
    """
    Clear the session cookie.
    """
    response.delete_cookie("session")
    return {"message": "Logged out"}


@router.get("/me")
def read_me(current: CurrentUserRoleDep):
    """
    Get info about the currently logged-in user + role.
    """
    user = current["user"]
    profile = UserRead.model_validate(user.model_dump()).model_dump(by_alias=True)
    profile["email"] = user.email
    profile["role"] = current["role"]
    profile["nextLevelXp"] = next_level_xp(user.level)
    return profile
