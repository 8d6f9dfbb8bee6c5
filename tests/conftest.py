from datetime import datetime, timedelta, timezone

import pytest

from library_api.config import Settings
from library_api.database import initialize_database
from library_api.fees import PerDayFeePolicy
from library_api.models import Author, Book, Member
from library_api.services import LibraryServices


class FakeClock:
    """Settable clock so due dates and fees are deterministic."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_file(tmp_path, request):
    # unique database per test
    return str(tmp_path / f"library_{request.node.name[:40]}.db")


@pytest.fixture
def settings(db_file):
    return Settings(database_file=db_file, store_timeout=2.0, store_read_retries=2, store_retry_backoff=0.0,
                    jwt_secret_key="test-secret")


@pytest.fixture
def db(settings):
    return initialize_database(settings.database_file, timeout=settings.store_timeout,
                               read_retries=settings.store_read_retries,
                               retry_backoff=settings.store_retry_backoff)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def services(db, settings, clock):
    return LibraryServices(db, settings, fee_policy=PerDayFeePolicy("0.50"), clock=clock)


@pytest.fixture
def author(services):
    return services.catalog.save_author(Author("Ursula", "Le Guin", nationality="American"))


@pytest.fixture
def book(services, author):
    """A title with exactly one copy."""
    return services.catalog.save_book(Book(isbn="9780306406157", title="The Dispossessed",
                                           author_id=author.id, total_copies=1))


@pytest.fixture
def member(services):
    return services.members.save_member(Member("Ada", "Lovelace", "ada@example.com", "+44 20 7946 0000"))
