from datetime import datetime, timedelta, timezone

import pytest

from library_api.config import Settings
from library_api.models import Role
from library_api.services import LibraryServices

MEMBER_PASSWORD = "member-pass"
ADMIN_PASSWORD = "admin-pass"


def isbn13(prefix):
    """Append the ISBN-13 check digit to a 12-digit prefix."""
    total = sum(int(ch) * (1 if i % 2 == 0 else 3) for i, ch in enumerate(prefix))
    return prefix + str((10 - total % 10) % 10)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.current = start or datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path, request):
    # Unique database file per test
    return Settings(
        database_file=str(tmp_path / f"test_{request.node.name}.db"),
        jwt_secret_key="test-secret",
        bcrypt_rounds=4,
        admin_registration_code="letmein",
        require_email_verification=True,
        api_rate_limit=0,
    )


@pytest.fixture
def services(settings, clock):
    return LibraryServices(settings, clock=clock)


@pytest.fixture
def make_member(services):
    counter = {"n": 0}

    def _make(email=None, verified=True, first_name="Ada", last_name="Lovelace"):
        counter["n"] += 1
        email = email or f"member{counter['n']}@example.com"
        return services.users.create_user(
            email=email,
            password_hash=services.hasher.hash(MEMBER_PASSWORD),
            first_name=first_name,
            last_name=last_name,
            role=Role.MEMBER,
            is_verified=verified,
        )

    return _make


@pytest.fixture
def member(make_member):
    return make_member(email="ada@example.com")


@pytest.fixture
def admin(services):
    return services.auth.create_admin("admin@example.com", ADMIN_PASSWORD, "Grace", "Hopper")


@pytest.fixture
def author(services):
    return services.authors.create("Frank Herbert")


@pytest.fixture
def category(services):
    return services.categories.create("Science Fiction")


@pytest.fixture
def make_book(services, author, category):
    counter = {"n": 0}

    def _make(copies=1, title=None, isbn=None):
        counter["n"] += 1
        return services.books.create_book(
            isbn=isbn or isbn13(f"978000000{counter['n']:03d}"),
            title=title or f"Book {counter['n']:02d}",
            total_copies=copies,
            author_ids=[author.id],
            category_ids=[category.id],
        )

    return _make


@pytest.fixture
def book(make_book):
    return make_book(copies=1, title="Dune", isbn="9780441172719")
