from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware
from contextlib import asynccontextmanager
import logging
import os

from .core.config import get_settings
from .database import create_db_and_tables
from .auth import check_configuration

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Lifespan event to create tables on startup
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Misconfigured CAS options are fatal here, not on the first request
    check_configuration(settings)
    # Ensure data dir exists for the default SQLite file
    if settings.database_url.startswith("sqlite:///data/") and not os.path.exists("data"):
        os.makedirs("data")
    create_db_and_tables()
    yield

app = FastAPI(title="CAS Gateway Authentication", version="1.0", lifespan=lifespan)

# Per-visitor session (gateway attempt counter, logged in user)
app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)

# Register Routers
from casgate.routers import cas, pages

app.include_router(cas.router)
app.include_router(pages.router)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("casgate.main:app", host="0.0.0.0", port=8000, reload=True)
