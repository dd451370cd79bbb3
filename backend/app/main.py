"""Ballot Auth - multi-factor authentication sessions for the voting platform."""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.errors import register_exception_handlers
from app.config import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup: Create tables and load security questions
    from app.database import Base, engine, SessionLocal
    from app.services.question_loader import load_security_questions

    # Import all models so they're registered with Base
    from app import models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        load_security_questions(db, settings.security_questions_file)
    finally:
        db.close()

    yield


app = FastAPI(
    title=settings.app_name,
    description="Progressive multi-factor authentication for voters",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "app": settings.app_name}


# Import and include routers
from app.api import enrollment, identity, otp, session, sso  # noqa: E402

app.include_router(identity.router, prefix="/api/v1")
app.include_router(sso.router, prefix="/api/v1")
app.include_router(otp.router, prefix="/api/v1")
app.include_router(enrollment.router, prefix="/api/v1")
app.include_router(session.router, prefix="/api/v1")
