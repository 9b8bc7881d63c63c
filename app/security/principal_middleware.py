from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select

from app.auth import Principal, Role
from app.config import settings
from app.db import SessionLocal
from app.models import Principal as PrincipalModel


AUTH_EXEMPT_PATHS = {'/health'}


def load_principal(db, principal_id: str | None) -> Principal | None:
    if not principal_id or not principal_id.strip().isdigit():
        return None

    principal = db.execute(
        select(PrincipalModel).where(PrincipalModel.id == int(principal_id.strip()))
    ).scalar_one_or_none()
    if not principal:
        return None

    role = Role(principal.role.value if hasattr(principal.role, 'value') else principal.role)
    return Principal(
        id=principal.id,
        username=principal.username,
        role=role,
        active=principal.active,
        display_name=principal.display_name,
    )


def install_principal_middleware(app: FastAPI) -> None:
    @app.middleware('http')
    async def principal_middleware(request: Request, call_next):
        header_value = request.headers.get(settings.principal_header)
        session_factory = getattr(request.app.state, 'session_factory', SessionLocal)
        with session_factory() as db:
            request.state.principal = load_principal(db, header_value)

        if request.url.path not in AUTH_EXEMPT_PATHS and request.state.principal is None:
            return JSONResponse({'error': 'Not authenticated', 'category': 'unauthenticated'}, status_code=401)

        response = await call_next(request)
        return response
