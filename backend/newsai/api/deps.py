"""Request-scoped dependencies."""

from __future__ import annotations

from typing import Iterator, Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from newsai.services.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_db_session(services: ServiceContainer = Depends(get_services)) -> Iterator[Session]:
    session = services.session_factory()
    try:
        yield session
    finally:
        session.close()


def get_user_id(
    x_user_id: Optional[str] = Header(default=None),
    services: ServiceContainer = Depends(get_services),
) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    services.ledger.ensure_account(user_id)
    return user_id
