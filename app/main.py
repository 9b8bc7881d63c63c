from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.config import settings
from app.logging_setup import setup_logging
from app.routers import receiving
from app.security.principal_middleware import install_principal_middleware
from app.services.receiving_errors import (
    LockConflictError,
    NotFoundError,
    PreconditionFailedError,
    ReceivingError,
    ValidationError,
    VersionConflictError,
)

setup_logging(settings.log_level)

app = FastAPI(title='WMS Receiving')

install_principal_middleware(app)

app.include_router(receiving.router)

ERROR_STATUS = {
    NotFoundError: 404,
    ValidationError: 400,
    PreconditionFailedError: 409,
    VersionConflictError: 409,
    LockConflictError: 423,
}


def error_body(exc: ReceivingError) -> dict:
    body = {'error': exc.message, 'category': exc.category}
    if isinstance(exc, VersionConflictError):
        body.update({'expected_version': exc.expected, 'current_version': exc.actual})
    if isinstance(exc, LockConflictError):
        body.update({'locked_by': exc.locked_by, 'locked_at': exc.locked_at.isoformat() if exc.locked_at else None})
    return body


@app.exception_handler(ReceivingError)
async def receiving_error_handler(request: Request, exc: ReceivingError):
    return JSONResponse(error_body(exc), status_code=ERROR_STATUS.get(type(exc), 400))


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}
