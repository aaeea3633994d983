import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from .agenda_api import router as agenda_router
from .core.config import get_settings
from .core.db import AsyncSessionLocal, Base, engine
from .core.errors import AgendaError, StoreError
from .core.responses import ErrorCodes, envelope, error_response
from .seed import seed_demo_data


settings = get_settings()
app = FastAPI(title="Agenda Scheduling Backend")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(agenda_router)


@app.exception_handler(AgendaError)
async def agenda_error_handler(request: Request, exc: AgendaError):
    if isinstance(exc, StoreError):
        logger.error("Store error on %s: %s", request.url.path, exc.message)
    elif exc.status_code >= 400:
        logger.info("Request to %s rejected (%s): %s", request.url.path, exc.code, exc.message)
    return envelope(error_response(exc.message, exc.code, exc.details), status_code=exc.status_code)


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error on %s", request.url.path, exc_info=exc)
    return envelope(
        error_response("Internal storage error", ErrorCodes.DATABASE_ERROR),
        status_code=500,
    )


@app.on_event("startup")
async def on_startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    if settings.seed_demo_data:
        async with AsyncSessionLocal() as session:
            await seed_demo_data(session)


@app.get("/health")
async def healthcheck():
    return {"status": "ok"}
