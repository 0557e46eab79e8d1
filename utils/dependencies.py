from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from circulation import CirculationEngine
from config import Settings
from models import Role, User
from reporting import ReportingAggregator
from services import CatalogService, MemberService
from store import LibraryStore

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> LibraryStore:
    return request.app.state.store


def get_engine(request: Request) -> CirculationEngine:
    state = request.app.state
    return CirculationEngine(
        state.store,
        policy=state.settings.policy,
        today=state.today,
        reservations=state.reservations,
    )


def get_catalog(store: LibraryStore = Depends(get_store)) -> CatalogService:
    return CatalogService(store)


def get_member_service(request: Request) -> MemberService:
    return MemberService(request.app.state.store, today=request.app.state.today)


def get_reports(request: Request) -> ReportingAggregator:
    state = request.app.state
    return ReportingAggregator(state.store, policy=state.settings.policy, today=state.today)


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    store: LibraryStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
        user_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        raise credentials_exception

    # Verify user still exists and is active
    user = await store.get_user(user_id)
    if user is None or not user.active:
        raise credentials_exception
    return user


async def librarian_required(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != Role.LIBRARIAN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Librarian access required",
        )
    return current_user


def ensure_member_access(user: User, member_id: int) -> None:
    """Librarians see everyone; members only themselves."""
    if user.role != Role.LIBRARIAN and user.member_id != member_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
