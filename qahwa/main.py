import logging
import sys

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from qahwa.config import settings
from qahwa.db import Base, engine
from qahwa.errors import db_exception_handler, validation_exception_handler
from qahwa.middleware import RequestIdMiddleware
import qahwa.models  # noqa: F401  (registers tables)

from qahwa.routers import accounting, admin, auth, inventory, menu, orders

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Qahwa API", version="0.1.0")

@app.on_event("startup")
def init_db():
    logger.info(f"Starting Qahwa API ({settings.APP_ENV})")
    Base.metadata.create_all(bind=engine)

# Error handlers
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(SQLAlchemyError, db_exception_handler)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(admin.router)
app.include_router(menu.router)
app.include_router(orders.router)
app.include_router(inventory.router)
app.include_router(accounting.router)

@app.get("/healthz")
def healthz():
    return {"ok": True}
