"""Domain exceptions raised by the service layer, plus the app-wide handlers
for request validation and database failures."""
import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class QahwaError(Exception):
    pass

class ValidationError(QahwaError):
    pass

class NotFoundError(QahwaError):
    pass

class InsufficientStockError(QahwaError):
    def __init__(self, raw_item_id: str, available, requested):
        self.raw_item_id = raw_item_id
        self.available = available
        self.requested = requested
        super().__init__(f"Insufficient stock. Available: {available}, Requested: {requested}")

class UnitConversionError(QahwaError):
    pass

class StockConflictError(QahwaError):
    def __init__(self, raw_item_id: str):
        self.raw_item_id = raw_item_id
        super().__init__(f"Stock for {raw_item_id} is being updated concurrently, try again")


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "invalid request"))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": msg, "errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors]},
    )


async def db_exception_handler(request: Request, exc: SQLAlchemyError):
    req_id = getattr(request.state, "request_id", None)
    logger.error(f"Database error on {request.method} {request.url.path} (request {req_id})", exc_info=exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Internal server error"})
