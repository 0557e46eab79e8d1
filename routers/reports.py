from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder

from reporting import ReportingAggregator
from utils.dependencies import get_reports, librarian_required

router = APIRouter(prefix="/reports", tags=["Reports"], dependencies=[Depends(librarian_required)])


def _encode(report):
    # Money as "5.00", matching the borrowing responses
    return jsonable_encoder(report, custom_encoder={Decimal: str})


@router.get("/stats")
async def library_stats(reports: ReportingAggregator = Depends(get_reports)):
    """Library statistics summary (Librarian only)"""
    return _encode({"stats": await reports.library_stats()})


@router.get("/popular-books")
async def popular_books(
    limit: int = Query(10, ge=1, le=100),
    reports: ReportingAggregator = Depends(get_reports),
):
    return _encode(await reports.popular_books(limit))


@router.get("/member-activity")
async def member_activity(
    limit: int = Query(10, ge=1, le=100),
    reports: ReportingAggregator = Depends(get_reports),
):
    return _encode(await reports.member_activity(limit))


@router.get("/overdue")
async def overdue(reports: ReportingAggregator = Depends(get_reports)):
    return _encode(await reports.overdue_report())


@router.get("/fines")
async def fines(reports: ReportingAggregator = Depends(get_reports)):
    return _encode(await reports.fines_report())


@router.get("/inventory")
async def inventory(reports: ReportingAggregator = Depends(get_reports)):
    return _encode(await reports.inventory_report())


@router.get("/member-fines/{member_id}")
async def member_fines(member_id: int, reports: ReportingAggregator = Depends(get_reports)):
    return _encode(await reports.member_fines(member_id))
