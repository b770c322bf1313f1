import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from casgate.main import app
from casgate.database import get_session
from casgate.core.config import Settings, get_settings
from casgate.auth import pgt_registry

from sqlalchemy.pool import StaticPool

CAS_URL = "https://cas.example.com/cas"

# Use in-memory database for testing
sqlite_url = "sqlite://" # Use shared memory url
engine = create_engine(
    sqlite_url, 
    connect_args={"check_same_thread": False}, 
    poolclass=StaticPool
)

@pytest.fixture(name="settings")
def settings_fixture():
    return Settings(_env_file=None, cas_url=CAS_URL, max_attempts=2, anonymous_user="anonymous-user")

@pytest.fixture(name="session")
def session_fixture():
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    SQLModel.metadata.drop_all(engine)

@pytest.fixture(name="client")
def client_fixture(session: Session, settings: Settings):
    def get_session_override():
        return session

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[get_settings] = lambda: settings

    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
    pgt_registry._entries.clear()
