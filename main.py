import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import auth
from config import Settings
from database import MongoStore
from errors import Conflict, LibraryError, NotFound, Rejected, Transient
from memory_store import MemoryStore
from reservations import InMemoryReservations, MongoReservations, ReservationChecker
from routers import books, borrowings, members, reports
from store import LibraryStore

logger = logging.getLogger("library.api")

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

STATUS_BY_KIND = {
    NotFound: 404,
    Rejected: 400,
    Conflict: 409,
    Transient: 503,
}


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger("library")
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)


async def library_error_handler(request: Request, exc: LibraryError):
    status_code = next((code for kind, code in STATUS_BY_KIND.items() if isinstance(exc, kind)), 500)
    if isinstance(exc, Transient):
        logger.warning("transient failure | %s %s | %s", request.method, request.url.path, exc.message)
    body = {"error": exc.kind, "message": exc.message}
    if isinstance(exc, Rejected):
        body["code"] = exc.reason.value
    headers = {"Retry-After": "1"} if isinstance(exc, Transient) else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[LibraryStore] = None,
    today: Callable[[], date] = date.today,
    reservations: Optional[ReservationChecker] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if app.state.store is None:
            if settings.store_backend == "mongo":
                owned = MongoStore.from_url(settings.mongo_url, settings.database_name)
                if not await owned.ping():
                    raise RuntimeError("MongoDB is not reachable")
                await owned.ensure_indexes()
                app.state.store = owned
                if app.state.reservations is None:
                    app.state.reservations = MongoReservations(owned.db)
            else:
                app.state.store = MemoryStore()
            logger.info("store ready | backend=%s", settings.store_backend)
        if app.state.reservations is None:
            app.state.reservations = InMemoryReservations()
        yield
        if owned is not None:
            owned.close()

    app = FastAPI(title="Library Circulation Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.today = today
    app.state.reservations = reservations
    if store is not None and reservations is None:
        app.state.reservations = InMemoryReservations()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LibraryError, library_error_handler)

    # Routers
    app.include_router(auth.router)
    app.include_router(books.router)
    app.include_router(members.router)
    app.include_router(borrowings.router)
    app.include_router(reports.router)

    @app.get("/health")
    async def health(request: Request):
        ok = await request.app.state.store.ping()
        return JSONResponse(
            status_code=200 if ok else 503,
            content={"status": "ok" if ok else "unavailable", "backend": settings.store_backend},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
