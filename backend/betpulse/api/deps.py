"""FastAPI dependencies: authentication and service wiring."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from betpulse.config import settings
from betpulse.database import get_session_factory
from betpulse.errors import AuthenticationError, PermissionDenied
from betpulse.models import User
from betpulse.redis_client import redis_client
from betpulse.repositories import UserRepository
from betpulse.services.events import EventBus
from betpulse.services.mpesa import MpesaClient
from betpulse.services.payments import PaymentService
from betpulse.services.reconciliation import ReconciliationService
from betpulse.services.settlement import BetSettlementService

bearer_scheme = HTTPBearer(auto_error=False)

mpesa_client = MpesaClient(settings.mpesa)


def create_access_token(user_id: str, role: str, expires_minutes: Optional[int] = None) -> str:
    """Sign a bearer token whose ``sub`` is the user id."""
    expires = datetime.now(timezone.utc) + timedelta(
        minutes=expires_minutes or settings.access_token_expire_minutes
    )
    payload = {"sub": user_id, "role": role, "exp": expires}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        raise AuthenticationError() from e
    if not payload.get("sub"):
        raise AuthenticationError()
    return payload


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> User:
    if credentials is None:
        raise AuthenticationError("Token not provided.")
    payload = decode_access_token(credentials.credentials)
    async with session_factory() as session:
        user = await UserRepository(session).find_by_id(payload["sub"])
    if user is None:
        raise AuthenticationError("Invalid user.")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise PermissionDenied()
    return user


def get_event_bus() -> EventBus:
    return EventBus(redis_client.client, settings.events_channel)


def get_mpesa_client() -> MpesaClient:
    return mpesa_client


def get_settlement_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    events: EventBus = Depends(get_event_bus),
) -> BetSettlementService:
    return BetSettlementService(session_factory, events)


def get_payment_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    mpesa: MpesaClient = Depends(get_mpesa_client),
    events: EventBus = Depends(get_event_bus),
) -> PaymentService:
    return PaymentService(session_factory, mpesa, events)


def get_reconciliation_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    events: EventBus = Depends(get_event_bus),
) -> ReconciliationService:
    return ReconciliationService(session_factory, events)
