import itertools
import os

# Must be set before config.get_settings() is first called.
os.environ.setdefault("FINANCE_DATABASE_URL", "sqlite://")
os.environ.setdefault("FINANCE_BCRYPT_ROUNDS", "4")
os.environ.setdefault("FINANCE_CACHE_BACKEND", "memory")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from cache import Cache, MemoryCacheBackend
from database import Base, enable_sqlite_pragmas, get_db
from models import Role, User
from policy import Identity


_emails = itertools.count(1)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(eng, "connect", enable_sqlite_pragmas)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def cache() -> Cache:
    return Cache(MemoryCacheBackend())


@pytest.fixture
def make_identity(session):
    def _make(role: Role = Role.user, name: str = "Test User") -> Identity:
        user = User(
            name=name,
            email=f"user{next(_emails)}@example.com",
            password_hash="not-a-real-hash",
            role=role,
        )
        session.add(user)
        session.commit()
        return Identity(id=user.id, email=user.email, role=user.role, name=user.name)

    return _make


@pytest.fixture
def client(engine):
    from fastapi.testclient import TestClient

    from main import app

    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.cache = Cache(MemoryCacheBackend())
    app.state.rate_limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()
