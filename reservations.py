"""
Reservation (hold) collaborator consulted by renewals.

Only the query is part of the circulation contract; how holds are placed,
queued and fulfilled belongs to the reservation system.
"""

from typing import Dict, List, Optional, Set


class ReservationChecker:
    async def has_active_reservation(self, book_id: int, excluding_member_id: Optional[int] = None) -> bool:
        raise NotImplementedError


class NoReservations(ReservationChecker):
    async def has_active_reservation(self, book_id, excluding_member_id=None) -> bool:
        return False


class InMemoryReservations(ReservationChecker):
    def __init__(self) -> None:
        self._holds: Dict[int, Set[int]] = {}

    def hold(self, book_id: int, member_id: int) -> None:
        self._holds.setdefault(book_id, set()).add(member_id)

    def release(self, book_id: int, member_id: int) -> None:
        self._holds.get(book_id, set()).discard(member_id)

    def holders(self, book_id: int) -> List[int]:
        return sorted(self._holds.get(book_id, set()))

    async def has_active_reservation(self, book_id, excluding_member_id=None) -> bool:
        return any(m != excluding_member_id for m in self._holds.get(book_id, set()))


class MongoReservations(ReservationChecker):
    """Reads holds from the `reservations` collection owned by the reservation system."""

    def __init__(self, db) -> None:
        self.db = db

    async def has_active_reservation(self, book_id, excluding_member_id=None) -> bool:
        filt = {"book_id": book_id, "status": "ACTIVE"}
        if excluding_member_id is not None:
            filt["member_id"] = {"$ne": excluding_member_id}
        return await self.db.reservations.find_one(filt, projection={"_id": 1}) is not None
