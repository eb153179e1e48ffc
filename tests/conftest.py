import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

_now_iso = datetime.now(timezone.utc).isoformat()
os.environ.setdefault('ENVIRONMENT', 'test')
os.environ.setdefault('SECRETS_FALLBACK', 'never')
os.environ.setdefault('JWT_SECRET', 'test-jwt-secret-for-research-exports')
os.environ.setdefault('JWT_SECRET_ROTATED_AT', _now_iso)
os.environ.setdefault('RESEARCH_PSEUDONYM_SALT', 'test-research-salt')

from ppc_backend import main  # noqa: E402
from ppc_backend.auth import assign_role, create_access_token, get_jwt_secret  # noqa: E402
from ppc_backend.config import get_export_settings  # noqa: E402
from ppc_backend.db.models import Base, research_view_metadata  # noqa: E402
from ppc_backend.db.session import get_session_factory, session_scope  # noqa: E402
from ppc_backend.pseudonymize import load_pseudonymizer  # noqa: E402


@dataclass
class DatabaseContext:
    """Holds state for the ephemeral in-memory SQLite database."""

    engine: sa.engine.Engine
    session_factory: sessionmaker

    def make_session(self) -> Session:
        return self.session_factory()

    def count(self, model) -> int:
        with self.session_factory() as session:
            return session.execute(sa.select(sa.func.count()).select_from(model)).scalar_one()


@pytest.fixture(autouse=True)
def _reset_cached_settings():
    get_jwt_secret.cache_clear()
    load_pseudonymizer.cache_clear()
    get_export_settings.cache_clear()
    yield
    get_jwt_secret.cache_clear()
    load_pseudonymizer.cache_clear()
    get_export_settings.cache_clear()


@pytest.fixture(scope='function')
def in_memory_db() -> Iterator[DatabaseContext]:
    """Provide an isolated in-memory SQLite database with the research views."""

    engine = sa.create_engine(
        'sqlite+pysqlite:///:memory:',
        future=True,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    research_view_metadata.create_all(engine)
    session_factory = sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )
    main.app.dependency_overrides[get_session_factory] = lambda: session_factory

    try:
        yield DatabaseContext(engine=engine, session_factory=session_factory)
    finally:
        main.app.dependency_overrides.pop(get_session_factory, None)
        engine.dispose()


@pytest.fixture(scope='function')
def db_session(in_memory_db: DatabaseContext) -> Iterator[Session]:
    session = in_memory_db.make_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope='function')
def api_client(in_memory_db: DatabaseContext) -> Iterator[TestClient]:
    """Yield a FastAPI test client bound to the in-memory database."""

    with TestClient(main.app) as client:
        yield client
    main.app.dependency_overrides.pop(main.get_view_reader, None)


@pytest.fixture(scope='function')
def auth_headers(in_memory_db: DatabaseContext) -> Callable[..., Dict[str, str]]:
    """Return a factory granting roles to a user and building bearer headers."""

    def _factory(user_id: str, *roles: str) -> Dict[str, str]:
        with session_scope(in_memory_db.session_factory) as session:
            for role in roles:
                assign_role(session, user_id, role)
        return {'Authorization': f'Bearer {create_access_token(user_id)}'}

    return _factory


@pytest.fixture(scope='function')
def seed_view(in_memory_db: DatabaseContext) -> Callable[[str, List[dict]], None]:
    """Insert rows into one of the research views."""

    def _seed(view_name: str, rows: List[dict]) -> None:
        table = research_view_metadata.tables[view_name]
        with in_memory_db.engine.begin() as connection:
            connection.execute(table.insert(), rows)

    return _seed
