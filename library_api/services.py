"""Wiring of the database, stores and services.

Both the HTTP app and the CLI build one ``LibraryServices`` from a
``Settings`` instance; nothing here is global.
"""

from datetime import datetime
from typing import Callable, Optional

from library_api.auth import AuthService
from library_api.availability import AvailabilityEngine
from library_api.config import Settings
from library_api.database import Database, initialize_database
from library_api.fees import FeePolicy, PerDayFeePolicy
from library_api.lending import LendingService
from library_api.models import utcnow
from library_api.stores import CatalogStore, LoanLedger, MembershipStore, UserStore


class LibraryServices:

    def __init__(self, db: Database, settings: Settings, fee_policy: Optional[FeePolicy] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.settings = settings
        self.catalog = CatalogStore(db)
        self.members = MembershipStore(db)
        self.ledger = LoanLedger(db)
        self.users = UserStore(db)
        self.availability = AvailabilityEngine(db, self.catalog, self.ledger)
        self.lending = LendingService(
            db,
            self.catalog,
            self.members,
            self.ledger,
            engine=self.availability,
            fee_policy=fee_policy or PerDayFeePolicy(settings.late_fee_per_day, settings.late_fee_cap),
            clock=clock,
            default_loan_days=settings.default_loan_days,
        )
        self.auth = AuthService(self.users, settings)


def build_services(settings: Settings, fee_policy: Optional[FeePolicy] = None,
                   clock: Callable[[], datetime] = utcnow) -> LibraryServices:
    db = initialize_database(
        settings.database_file,
        timeout=settings.store_timeout,
        read_retries=settings.store_read_retries,
        retry_backoff=settings.store_retry_backoff,
    )
    return LibraryServices(db, settings, fee_policy=fee_policy, clock=clock)
