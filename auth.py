import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from jose import jwt
from passlib.context import CryptContext

import models
from config import Settings
from errors import Conflict
from services import MemberService
from store import LibraryStore
from utils.dependencies import get_current_user, get_member_service, get_settings, get_store

logger = logging.getLogger("library.auth")

pwd_context = CryptContext(
    schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=int(os.getenv("BCRYPT_ROUNDS", "12"))
)
router = APIRouter(prefix="/auth", tags=["Auth"])


def hash_password(password: str):
    return pwd_context.hash(password)


def verify_password(plain, hashed):
    return pwd_context.verify(plain, hashed)


def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=15))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def token_for(user: models.User, settings: Settings) -> str:
    return create_access_token(
        {"sub": str(user.user_id), "role": user.role.value, "member_id": user.member_id},
        settings,
        timedelta(minutes=settings.access_token_expire_minutes),
    )


def _user_response(user: models.User) -> models.UserResponse:
    return models.UserResponse(
        user_id=user.user_id, username=user.username, role=user.role, member_id=user.member_id
    )


@router.post("/register", response_model=models.UserResponse, status_code=status.HTTP_201_CREATED)
async def register(
    user: models.UserCreate,
    store: LibraryStore = Depends(get_store),
    members: MemberService = Depends(get_member_service),
):
    hashed_pw = hash_password(user.password)

    async with store.transaction() as session:
        if await store.find_user(user.username, session=session):
            raise Conflict("Username already exists")

        member_id = None
        if user.role == models.Role.MEMBER:
            # If registering as a member, create member record first
            if not user.full_name:
                raise HTTPException(status_code=422, detail="full_name is required to register a new member")
            member = await members.create_member(
                models.MemberCreate(full_name=user.full_name, email=user.email, phone=user.phone),
                session=session,
            )
            member_id = member.member_id

        new_user = models.User(
            user_id=await store.next_id("users", session=session),
            username=user.username,
            password_hash=hashed_pw,
            role=user.role,
            member_id=member_id,
        )
        await store.insert_user(new_user, session=session)

    logger.info("user registered | user_id=%s role=%s", new_user.user_id, new_user.role.value)
    return _user_response(new_user)


@router.post("/login", response_model=models.Token)
async def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    store: LibraryStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    user = await store.find_user(form_data.username)

    if not user or not user.active or not verify_password(form_data.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    return models.Token(access_token=token_for(user, settings))


@router.get("/me", response_model=models.UserResponse)
async def get_current_user_info(current_user: models.User = Depends(get_current_user)):
    """Get current user information"""
    return _user_response(current_user)
