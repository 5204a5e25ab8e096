"""Shared fixtures: a throwaway SQLite database, a fake M-Pesa API and recording events."""

import itertools
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import func, select

from betpulse.config import MpesaSettings
from betpulse.database import Base, build_engine, build_session_factory
from betpulse.models import Bet, GameDefinition, Transaction, User
from betpulse.services import fairness
from betpulse.services.events import EventBus
from betpulse.services.mpesa import (
    B2C_PAYMENT_PATH,
    C2B_REGISTER_PATH,
    C2B_SIMULATE_PATH,
    OAUTH_PATH,
    STK_PUSH_PATH,
    MpesaClient,
)
from betpulse.services.payments import PaymentService
from betpulse.services.reconciliation import ReconciliationService
from betpulse.services.settlement import BetSettlementService


class RecordingEventBus(EventBus):
    """Keeps published events in memory instead of sending them to Redis."""

    def __init__(self):
        super().__init__(None, "test-events")
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def types(self) -> List[str]:
        return [event_type for event_type, _ in self.events]


class FakeMpesaApi:
    """httpx MockTransport handler imitating the Daraja endpoints we call."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.failures: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self._counter = itertools.count(1)

    def fail(self, path: str, status_code: int = 500, error_message: str = "Internal error") -> None:
        self.failures[path] = lambda request: httpx.Response(
            status_code, json={"errorMessage": error_message}
        )

    def respond(self, path: str, status_code: int, body) -> None:
        self.failures[path] = lambda request: httpx.Response(status_code, json=body)

    def time_out(self, path: str) -> None:
        def _raise(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        self.failures[path] = _raise

    def recover(self, path: str) -> None:
        self.failures.pop(path, None)

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.failures:
            return self.failures[path](request)
        if path == OAUTH_PATH:
            return httpx.Response(200, json={"access_token": "token-123", "expires_in": "3599"})
        n = next(self._counter)
        if path == STK_PUSH_PATH:
            return httpx.Response(
                200,
                json={
                    "MerchantRequestID": f"29115-{n}",
                    "CheckoutRequestID": f"ws_CO_{n}",
                    "ResponseCode": "0",
                    "CustomerMessage": "Success. Request accepted for processing",
                },
            )
        if path == B2C_PAYMENT_PATH:
            return httpx.Response(
                200,
                json={
                    "ConversationID": f"AG_2024_{n}",
                    "OriginatorConversationID": f"orig-{n}",
                    "ResponseCode": "0",
                    "ResponseDescription": "Accept the service request successfully.",
                },
            )
        if path == C2B_REGISTER_PATH:
            return httpx.Response(200, json={"ResponseDescription": "success"})
        if path == C2B_SIMULATE_PATH:
            return httpx.Response(
                200,
                json={
                    "ConversationID": f"AG_2024_{n}",
                    "ResponseDescription": "Accept the service request successfully.",
                },
            )
        return httpx.Response(404, json={"errorMessage": "Not found"})


@pytest.fixture
async def engine(tmp_path):
    """Fresh file-backed SQLite database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'betpulse-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def events():
    return RecordingEventBus()


@pytest.fixture
def fake_mpesa():
    return FakeMpesaApi()


@pytest.fixture
def mpesa_config():
    return MpesaSettings(
        consumer_key="consumer-key",
        consumer_secret="consumer-secret",
        shortcode="174379",
        passkey="test-passkey",
        initiator_name="testapi",
        security_credential="preshared-credential",
        callback_base_url="https://betpulse.example",
        country_code="258",
        timeout_seconds=5.0,
    )


@pytest.fixture
async def mpesa(mpesa_config, fake_mpesa):
    client = MpesaClient(mpesa_config, transport=httpx.MockTransport(fake_mpesa.handler))
    yield client
    await client.close()


@pytest.fixture
async def game(session_factory):
    async with session_factory() as session, session.begin():
        game = GameDefinition(
            key="lucky-wheel",
            name="Lucky Wheel",
            description="Spin a four-segment wheel.",
            category="Arcade",
            payout_multiplier=Decimal("3.85"),
        )
        session.add(game)
    return game


@pytest.fixture
def make_user(session_factory):
    """Factory creating a user with the given balance."""

    async def _make(balance="0", role="player", mpesa_number="+258841234567") -> User:
        async with session_factory() as session, session.begin():
            user = User(
                email=f"{uuid4().hex[:10]}@example.com",
                password_hash="not-a-real-hash",
                role=role,
                phone=mpesa_number,
                mpesa_number=mpesa_number,
                balance=Decimal(balance),
            )
            session.add(user)
        return user

    return _make


@pytest.fixture
def balance_of(session_factory):
    async def _balance(user_id: str) -> Decimal:
        async with session_factory() as session:
            result = await session.execute(select(User.balance).where(User.id == user_id))
            return result.scalar_one()

    return _balance


@pytest.fixture
def bet_count(session_factory):
    async def _count(user_id: str) -> int:
        async with session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(Bet).where(Bet.user_id == user_id)
            )
            return int(result.scalar_one())

    return _count


@pytest.fixture
def load_transaction(session_factory):
    async def _load(tx_id: str) -> Transaction:
        async with session_factory() as session:
            return await session.get(Transaction, tx_id)

    return _load


@pytest.fixture
def make_transaction(session_factory):
    """Factory inserting a transaction row directly, bypassing the payment service."""

    async def _make(
        user_id: str,
        type: str = "deposit",
        amount: str = "150",
        status: str = "pending",
        meta: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        async with session_factory() as session, session.begin():
            tx = Transaction(
                user_id=user_id,
                type=type,
                amount=Decimal(amount),
                status=status,
                reference=f"TEST-{uuid4().hex[:12]}",
                channel="MPESA",
                meta=meta,
            )
            session.add(tx)
        return tx

    return _make


@pytest.fixture
def seed_for_outcome():
    """Find a server seed that yields ``outcome`` for the given client seed and nonce."""

    def _find(outcome: int, client_seed: str, nonce: int = 1) -> str:
        for i in itertools.count():
            candidate = f"server-seed-{i}"
            if fairness.compute_outcome(candidate, client_seed, nonce) == outcome:
                return candidate

    return _find


@pytest.fixture
def settlement(session_factory, events):
    return BetSettlementService(session_factory, events)


@pytest.fixture
def payments(session_factory, mpesa, events):
    return PaymentService(session_factory, mpesa, events)


@pytest.fixture
def reconciliation(session_factory, events):
    return ReconciliationService(session_factory, events)


@pytest.fixture
def stk_payload():
    """Build an STK push callback body as M-Pesa delivers it."""

    def _build(checkout_request_id: str, result_code: int = 0, amount=150, receipt="NLJ7RT61SV") -> Dict[str, Any]:
        callback: Dict[str, Any] = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": "The service request is processed successfully."
            if result_code == 0
            else "Request cancelled by user",
        }
        if result_code == 0:
            callback["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": amount},
                    {"Name": "MpesaReceiptNumber", "Value": receipt},
                    {"Name": "TransactionDate", "Value": 20240101120000},
                    {"Name": "PhoneNumber", "Value": 258841234567},
                ]
            }
        return {"Body": {"stkCallback": callback}}

    return _build


@pytest.fixture
def b2c_payload():
    """Build a B2C result body as M-Pesa delivers it."""

    def _build(conversation_id: str, originator_conversation_id: str = "orig-unknown", result_code: int = 0) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "ResultType": 0,
            "ResultCode": result_code,
            "ResultDesc": "The service request is processed successfully."
            if result_code == 0
            else "The balance is insufficient for the transaction.",
            "OriginatorConversationID": originator_conversation_id,
            "ConversationID": conversation_id,
            "TransactionID": "NLJ41HAY6Q",
        }
        if result_code == 0:
            result["ResultParameters"] = {
                "ResultParameter": [
                    {"Key": "TransactionAmount", "Value": 200},
                    {"Key": "ReceiverPartyPublicName", "Value": "258841234567 - Jane Doe"},
                ]
            }
        return {"Result": result}

    return _build
