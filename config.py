import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()  # Make sure .env variables are loaded


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _decimal(name: str, default: Optional[str]) -> Optional[Decimal]:
    raw = os.getenv(name, default)
    if raw in (None, ""):
        return None
    return Decimal(raw)


@dataclass(frozen=True)
class CirculationPolicy:
    """Loan, renewal and fine rules applied by the circulation engine."""

    loan_period_days: int = 14
    renewal_period_days: int = 14
    max_renewals: int = 2
    max_loans_per_member: int = 5
    fine_per_day: Decimal = Decimal("0.50")
    fine_grace_days: int = 0
    fine_cap: Optional[Decimal] = None

    @classmethod
    def from_env(cls) -> "CirculationPolicy":
        return cls(
            loan_period_days=_int("LOAN_PERIOD_DAYS", 14),
            renewal_period_days=_int("RENEWAL_PERIOD_DAYS", 14),
            max_renewals=_int("MAX_RENEWALS", 2),
            max_loans_per_member=_int("MAX_LOANS_PER_MEMBER", 5),
            fine_per_day=_decimal("FINE_PER_DAY", "0.50"),
            fine_grace_days=_int("FINE_GRACE_DAYS", 0),
            fine_cap=_decimal("FINE_CAP", None),
        )


@dataclass(frozen=True)
class Settings:
    mongo_url: Optional[str] = None
    database_name: str = "library_db"
    store_backend: str = "memory"
    secret_key: str = "supersecretkey"  # set SECRET_KEY in real deployments
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    origins: List[str] = field(default_factory=list)
    log_level: str = "INFO"
    issue_retry_attempts: int = 2
    policy: CirculationPolicy = field(default_factory=CirculationPolicy)

    @classmethod
    def from_env(cls) -> "Settings":
        mongo_url = os.getenv("MONGO_URL")
        # Get origins from .env (comma-separated string)
        origins = [o.strip() for o in os.getenv("ORIGINS", "").split(",") if o.strip()]
        return cls(
            mongo_url=mongo_url,
            database_name=os.getenv("DATABASE_NAME", "library_db"),
            store_backend=os.getenv("STORE_BACKEND", "mongo" if mongo_url else "memory").lower(),
            secret_key=os.getenv("SECRET_KEY", "supersecretkey"),
            algorithm=os.getenv("ALGORITHM", "HS256"),
            access_token_expire_minutes=_int("ACCESS_TOKEN_EXPIRE_MINUTES", 60),
            origins=origins,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            issue_retry_attempts=_int("ISSUE_RETRY_ATTEMPTS", 2),
            policy=CirculationPolicy.from_env(),
        )
