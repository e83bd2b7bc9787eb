from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session, sessionmaker

from moobee.application.assignments import resolve_employee_id
from moobee.application.generation import QuestionGenerator
from moobee.application.notifications import LoggingNotificationDispatcher, NotificationDispatcher
from moobee.infrastructure.config import DatabaseConfig, SecurityConfig, get_settings
from moobee.infrastructure.db import create_database_engine, create_session_factory
from moobee.infrastructure.exceptions import AuthenticationError, AuthorizationError
from moobee.infrastructure.logging import get_logger, set_context

logger = get_logger(__name__)

bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True, slots=True)
class Principal:
    user_id: str
    tenant_id: str
    role: str


def get_db_config(request: Request) -> DatabaseConfig:
    config = getattr(request.app.state, "db_config", None)
    if config is None:
        config = get_settings().database
        request.app.state.db_config = config
    return config


def get_session_factory(request: Request) -> sessionmaker[Session]:
    cached_factory = getattr(request.app.state, "session_factory", None)
    if cached_factory is not None:
        return cached_factory

    session_factory = create_session_factory(create_database_engine(get_db_config(request)))
    request.app.state.session_factory = session_factory
    return session_factory


def get_db_session(request: Request) -> Generator[Session, None, None]:
    session = get_session_factory(request)()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_security_config(request: Request) -> SecurityConfig:
    return getattr(request.app.state, "security_config", None) or get_settings().security


def decode_token(token: str, config: SecurityConfig) -> Principal:
    """Verify a bearer token and read ``{userId, tenantId, role}`` from its claims."""
    options = {"verify_aud": config.jwt_audience is not None}
    try:
        claims = jwt.decode(
            token,
            config.jwt_secret,
            algorithms=[config.jwt_algorithm],
            audience=config.jwt_audience,
            options=options,
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("Token has expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f"Invalid token: {e}") from e

    user_id = claims.get("userId") or claims.get("sub")
    tenant_id = claims.get("tenantId")
    if not user_id or not tenant_id:
        raise AuthenticationError("Token is missing user or tenant claims")
    return Principal(user_id=str(user_id), tenant_id=str(tenant_id), role=str(claims.get("role", "employee")))


def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    config: SecurityConfig = Depends(get_security_config),
) -> Principal:
    if credentials is None:
        raise AuthenticationError()
    principal = decode_token(credentials.credentials, config)
    set_context(tenant_id=principal.tenant_id, user_id=principal.user_id)
    return principal


def require_admin(
    principal: Principal = Depends(get_principal),
    config: SecurityConfig = Depends(get_security_config),
) -> Principal:
    if principal.role not in config.admin_roles:
        logger.warning(f"User {principal.user_id} with role {principal.role} refused admin access")
        raise AuthorizationError()
    return principal


def get_employee_id(
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db_session),
) -> int:
    return resolve_employee_id(db, principal.tenant_id, principal.user_id)


def get_dispatcher(request: Request) -> NotificationDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        dispatcher = LoggingNotificationDispatcher()
        request.app.state.dispatcher = dispatcher
    return dispatcher


def get_generator(request: Request) -> QuestionGenerator:
    generator = getattr(request.app.state, "generator", None)
    if generator is None:
        generator = QuestionGenerator()
        request.app.state.generator = generator
    return generator
