"""Request/response models and M-Pesa webhook payload shapes."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

Scalar = Union[int, float, str]


# Games

class GameResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    name: str
    description: str
    category: str
    payout_multiplier: Decimal
    icon: Optional[str] = None


class GameListResponse(BaseModel):
    games: List[GameResponse]


class BetRequest(BaseModel):
    """Selection and wager are range-checked by the settlement service."""
    game_key: str
    selection: int
    wager: Decimal
    client_seed: Optional[str] = Field(default=None, max_length=128)


class BetResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    game_key: str
    selection: int
    wager: Decimal
    outcome: int
    payout: Decimal
    win: bool
    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce: int
    created_at: datetime


class FairnessResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce: int
    outcome: int


class BetReceiptResponse(BaseModel):
    bet: BetResponse
    balance: Decimal
    fairness: FairnessResponse
    payout: Decimal
    win: bool


class BetHistoryResponse(BaseModel):
    bets: List[BetResponse]


class VerifyBetRequest(BaseModel):
    bet_id: str


class VerifyBetResponse(BaseModel):
    bet: BetResponse
    outcome: int
    is_valid: bool


class VerifySeedRequest(BaseModel):
    server_seed: str = Field(..., min_length=1)
    client_seed: str
    nonce: int = Field(..., ge=1)
    server_seed_hash: Optional[str] = None
    outcome: Optional[int] = None


class VerifySeedResponse(BaseModel):
    outcome: int
    server_seed_hash: str
    hash_matches: Optional[bool] = Field(None, description="Set when a commitment was supplied")
    is_valid: Optional[bool] = Field(None, description="Set when an outcome was supplied")


# Finance

class MobileMoneyRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    phone_number: str = Field(..., min_length=9, max_length=20)


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    type: str
    amount: Decimal
    status: str
    reference: str
    channel: str
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="meta")
    created_at: datetime


class TransactionCreatedResponse(BaseModel):
    transaction: TransactionResponse
    message: str


class TransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]


class ApproveWithdrawalRequest(BaseModel):
    remarks: Optional[str] = Field(None, max_length=140)


class PayoutResponse(BaseModel):
    message: str
    conversation_id: str
    originator_conversation_id: str
    description: Optional[str] = None


class ProviderAck(BaseModel):
    """Body returned to every M-Pesa webhook so the provider stops retrying."""
    ResultCode: int = 0
    ResultDesc: str = "Accepted"


# M-Pesa webhook payloads

class _ProviderModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CallbackItem(_ProviderModel):
    name: str = Field(alias="Name")
    value: Optional[Scalar] = Field(default=None, alias="Value")


class CallbackMetadata(_ProviderModel):
    items: List[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(_ProviderModel):
    merchant_request_id: str = Field(alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID")
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(default=None, alias="CallbackMetadata")

    def metadata_items(self) -> Dict[str, Optional[Scalar]]:
        if not self.callback_metadata:
            return {}
        return {item.name: item.value for item in self.callback_metadata.items}


class StkCallbackBody(_ProviderModel):
    stk_callback: StkCallback = Field(alias="stkCallback")


class CollectionCallback(_ProviderModel):
    """STK push result delivered to the collection webhook."""
    body: StkCallbackBody = Field(alias="Body")


class ResultParameter(_ProviderModel):
    key: str = Field(alias="Key")
    value: Optional[Scalar] = Field(default=None, alias="Value")


class ResultParameters(_ProviderModel):
    items: List[ResultParameter] = Field(default_factory=list, alias="ResultParameter")

    @field_validator("items", mode="before")
    @classmethod
    def _wrap_single(cls, value: Any) -> Any:
        # A lone parameter is sometimes sent as an object instead of a list
        if isinstance(value, dict):
            return [value]
        return value


class _ResultBody(_ProviderModel):
    conversation_id: str = Field(alias="ConversationID")
    originator_conversation_id: str = Field(alias="OriginatorConversationID")
    result_type: Optional[int] = Field(default=None, alias="ResultType")
    result_code: Optional[int] = Field(default=None, alias="ResultCode")
    result_desc: Optional[str] = Field(default=None, alias="ResultDesc")
    transaction_id: Optional[str] = Field(default=None, alias="TransactionID")
    result_parameters: Optional[ResultParameters] = Field(default=None, alias="ResultParameters")

    def parameters(self) -> Dict[str, Optional[Scalar]]:
        if not self.result_parameters:
            return {}
        return {item.key: item.value for item in self.result_parameters.items}


class DisbursementResultBody(_ResultBody):
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(alias="ResultDesc")


class DisbursementCallback(_ProviderModel):
    """B2C result delivered to the disbursement result webhook."""
    result: DisbursementResultBody = Field(alias="Result")


class DisbursementTimeoutCallback(_ProviderModel):
    """B2C request that expired in the provider's queue."""
    result: _ResultBody = Field(alias="Result")
