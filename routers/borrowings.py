import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, status

import models
from circulation import CirculationEngine
from config import Settings
from utils.dependencies import (
    ensure_member_access,
    get_current_user,
    get_engine,
    get_settings,
    librarian_required,
)

logger = logging.getLogger("library.api")

router = APIRouter(prefix="/borrowings", tags=["Borrowings"])


async def to_response(engine: CirculationEngine, borrowing: models.Borrowing) -> models.BorrowingResponse:
    """Borrowing plus the clock-derived overdue fields and display names."""
    today = engine.today()
    member = await engine.store.get_member(borrowing.member_id)
    book = await engine.store.get_book(borrowing.book_id)
    overdue = borrowing.is_overdue(today)
    return models.BorrowingResponse(
        **borrowing.model_dump(),
        overdue=overdue,
        overdue_days=(today - borrowing.due_date).days if overdue else 0,
        accrued_fine=engine.accrued_fine(borrowing),
        member_name=member.full_name if member else None,
        book_title=book.title if book else None,
    )


@router.get("/", response_model=List[models.BorrowingResponse])
async def list_borrowings(
    status: Optional[models.BorrowingStatus] = None,
    member_id: Optional[int] = None,
    book_id: Optional[int] = None,
    overdue: bool = False,
    engine: CirculationEngine = Depends(get_engine),
    librarian=Depends(librarian_required),
):
    """Get all borrowings (Librarian only)"""
    records = await engine.list_borrowings(status=status, member_id=member_id, book_id=book_id, overdue=overdue)
    return [await to_response(engine, b) for b in reversed(records)]


@router.get("/overdue", response_model=List[models.BorrowingResponse])
async def list_overdue(
    engine: CirculationEngine = Depends(get_engine),
    librarian=Depends(librarian_required),
):
    """Issued books past their due date, most overdue first (Librarian only)"""
    return [await to_response(engine, b) for b in await engine.list_overdue()]


@router.get("/{borrow_id}", response_model=models.BorrowingResponse)
async def get_borrowing(
    borrow_id: int,
    engine: CirculationEngine = Depends(get_engine),
    current_user: models.User = Depends(get_current_user),
):
    borrowing = await engine.get_borrowing(borrow_id)
    ensure_member_access(current_user, borrowing.member_id)
    return await to_response(engine, borrowing)


@router.post("/issue", response_model=models.BorrowingResponse, status_code=status.HTTP_201_CREATED)
async def issue_book(
    payload: models.IssueRequest,
    engine: CirculationEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    librarian: models.User = Depends(librarian_required),
):
    borrowing = await engine.issue_with_retry(
        payload.member_id, payload.book_id, attempts=settings.issue_retry_attempts
    )
    logger.info("book issued | borrow_id=%s by user_id=%s", borrowing.borrow_id, librarian.user_id)
    return await to_response(engine, borrowing)


@router.post("/{borrow_id}/return", response_model=models.BorrowingResponse)
async def return_book(
    borrow_id: int,
    engine: CirculationEngine = Depends(get_engine),
    librarian: models.User = Depends(librarian_required),
):
    borrowing = await engine.return_borrowing(borrow_id)
    return await to_response(engine, borrowing)


@router.post("/{borrow_id}/renew", response_model=models.BorrowingResponse)
async def renew_book(
    borrow_id: int,
    engine: CirculationEngine = Depends(get_engine),
    current_user: models.User = Depends(get_current_user),
):
    """Members renew their own books, librarians any"""
    existing = await engine.get_borrowing(borrow_id)
    ensure_member_access(current_user, existing.member_id)
    borrowing = await engine.renew(borrow_id)
    return await to_response(engine, borrowing)


@router.post("/{borrow_id}/pay-fine", response_model=models.BorrowingResponse)
async def pay_fine(
    borrow_id: int,
    payment: models.FinePayment,
    engine: CirculationEngine = Depends(get_engine),
    current_user: models.User = Depends(get_current_user),
):
    """Members pay their own fines, librarians any"""
    existing = await engine.get_borrowing(borrow_id)
    ensure_member_access(current_user, existing.member_id)
    borrowing = await engine.pay_fine(borrow_id, payment.amount)
    return await to_response(engine, borrowing)
