import os

# Cheap hashing for tests; must be set before auth is imported
os.environ["BCRYPT_ROUNDS"] = "4"

from contextlib import asynccontextmanager
from datetime import date, timedelta

import pytest

from circulation import CirculationEngine
from config import CirculationPolicy
from errors import Transient
from memory_store import MemoryStore
from models import BookCreate, MemberCreate
from reservations import InMemoryReservations
from services import CatalogService, MemberService

TODAY = date(2025, 3, 1)


class FixedClock:
    """Injectable 'today' that tests move by hand."""

    def __init__(self, today: date):
        self.current = today

    def __call__(self) -> date:
        return self.current

    def advance(self, days: int) -> None:
        self.current += timedelta(days=days)


class FlakyStore(MemoryStore):
    """MemoryStore whose next transactions fail with Transient."""

    def __init__(self):
        super().__init__()
        self.fail_before_commit = 0
        self.fail_after_commit = 0

    @asynccontextmanager
    async def transaction(self):
        async with super().transaction() as session:
            yield session
            if self.fail_before_commit:
                self.fail_before_commit -= 1
                raise Transient("write conflict")
        if self.fail_after_commit:
            self.fail_after_commit -= 1
            raise Transient("commit result unknown")


@pytest.fixture
def clock():
    return FixedClock(TODAY)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def policy():
    return CirculationPolicy()


@pytest.fixture
def reservations():
    return InMemoryReservations()


@pytest.fixture
def engine(store, policy, clock, reservations):
    return CirculationEngine(store, policy=policy, today=clock, reservations=reservations)


@pytest.fixture
def catalog(store):
    return CatalogService(store)


@pytest.fixture
def members(store, clock):
    return MemberService(store, today=clock)


@pytest.fixture
async def member(members):
    return await members.create_member(MemberCreate(full_name="Alice Reader", email="alice@example.com"))


@pytest.fixture
async def book(catalog):
    return await catalog.create_book(
        BookCreate(title="Dune", author="Frank Herbert", isbn="9780441172719", category="Sci-Fi", total_copies=3)
    )


@pytest.fixture
def add_book(catalog):
    async def _add(title: str, copies: int = 1, **kw):
        return await catalog.create_book(BookCreate(title=title, author=kw.pop("author", "Anon"), total_copies=copies, **kw))

    return _add


@pytest.fixture
def add_member(members):
    async def _add(name: str, email: str = None):
        return await members.create_member(MemberCreate(full_name=name, email=email))

    return _add
