from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

import models
from circulation import CirculationEngine
from routers.borrowings import to_response
from services import MemberService
from utils.dependencies import (
    ensure_member_access,
    get_current_user,
    get_engine,
    get_member_service,
    librarian_required,
)

router = APIRouter(prefix="/members", tags=["Members"])


@router.get("/", response_model=List[models.Member])
async def list_members(
    q: Optional[str] = None,
    status: Optional[models.MemberStatus] = None,
    members: MemberService = Depends(get_member_service),
    librarian=Depends(librarian_required),
):
    """Get all members (Librarian only)"""
    return await members.list_members(search=q, status=status)


@router.get("/{member_id}", response_model=models.Member)
async def get_member(
    member_id: int,
    members: MemberService = Depends(get_member_service),
    current_user: models.User = Depends(get_current_user),
):
    ensure_member_access(current_user, member_id)
    return await members.get_member(member_id)


@router.post("/", response_model=models.Member, status_code=201)
async def create_member(
    member: models.MemberCreate,
    members: MemberService = Depends(get_member_service),
    librarian=Depends(librarian_required),
):
    return await members.create_member(member)


@router.put("/{member_id}", response_model=models.Member)
async def update_member(
    member_id: int,
    payload: models.MemberUpdate,
    members: MemberService = Depends(get_member_service),
    current_user: models.User = Depends(get_current_user),
):
    ensure_member_access(current_user, member_id)
    # Prevent members from lifting their own suspension
    if payload.status is not None and current_user.role != models.Role.LIBRARIAN:
        raise HTTPException(status_code=403, detail="Only librarians can change member status")
    return await members.update_member(member_id, payload)


@router.put("/{member_id}/suspend", response_model=models.Member)
async def suspend_member(
    member_id: int,
    members: MemberService = Depends(get_member_service),
    librarian=Depends(librarian_required),
):
    return await members.suspend(member_id)


@router.put("/{member_id}/activate", response_model=models.Member)
async def activate_member(
    member_id: int,
    members: MemberService = Depends(get_member_service),
    librarian=Depends(librarian_required),
):
    return await members.activate(member_id)


@router.delete("/{member_id}")
async def delete_member(
    member_id: int,
    members: MemberService = Depends(get_member_service),
    librarian=Depends(librarian_required),
):
    """Delete a member (no issued books, no outstanding fines)"""
    member = await members.delete_member(member_id)
    return {
        "message": f"Member '{member.full_name}' has been deleted successfully",
        "deleted_member_id": member_id,
    }


@router.get("/{member_id}/loans", response_model=List[models.BorrowingResponse])
async def get_member_loans(
    member_id: int,
    engine: CirculationEngine = Depends(get_engine),
    current_user: models.User = Depends(get_current_user),
):
    """Currently issued books of a member, earliest due first"""
    ensure_member_access(current_user, member_id)
    return [await to_response(engine, b) for b in await engine.member_loans(member_id)]


@router.get("/{member_id}/history", response_model=List[models.BorrowingResponse])
async def get_member_history(
    member_id: int,
    engine: CirculationEngine = Depends(get_engine),
    current_user: models.User = Depends(get_current_user),
):
    ensure_member_access(current_user, member_id)
    return [await to_response(engine, b) for b in await engine.member_history(member_id)]
