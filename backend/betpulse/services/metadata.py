"""Transaction metadata: deep merge and the provider-result shapes merged into it.

``Transaction.meta`` is an open JSON document. The provider sub-document lives
under ``"mpesa"``; the typed patches below describe the shapes this service
writes there, while any other keys are preserved untouched.
"""

from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict

Scalar = Union[str, int, float, None]


def deep_merge(source: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``patch`` into a copy of ``source``.

    Mappings present on both sides are merged key by key; any other patch
    value (scalars, lists) replaces the existing one outright. Neither input
    is mutated.
    """
    result: Dict[str, Any] = dict(source)
    for key, value in patch.items():
        if isinstance(value, Mapping):
            existing = result.get(key)
            base = existing if isinstance(existing, Mapping) else {}
            result[key] = deep_merge(base, value)
        else:
            result[key] = value
    return result


class MpesaPatch(BaseModel):
    """Base for typed patches of the ``mpesa`` sub-document."""

    model_config = ConfigDict(extra="allow")

    status: Optional[str] = None

    def as_patch(self) -> Dict[str, Any]:
        return {"mpesa": self.model_dump(exclude_none=True)}


class DestinationPatch(MpesaPatch):
    msisdn: Optional[str] = None
    displayPhone: Optional[str] = None


class CollectionRequested(DestinationPatch):
    merchantRequestId: Optional[str] = None
    checkoutRequestId: Optional[str] = None
    customerMessage: Optional[str] = None


class CollectionResult(MpesaPatch):
    checkoutRequestId: Optional[str] = None
    merchantRequestId: Optional[str] = None
    resultCode: Optional[int] = None
    resultDescription: Optional[str] = None
    receipt: Scalar = None
    amount: Scalar = None
    transactionDate: Scalar = None
    payerPhone: Scalar = None


class DisbursementDispatched(DestinationPatch):
    conversationId: Optional[str] = None
    originatorConversationId: Optional[str] = None
    responseDescription: Optional[str] = None
    lastError: Optional[str] = None


class DisbursementResult(MpesaPatch):
    conversationId: Optional[str] = None
    originatorConversationId: Optional[str] = None
    resultCode: Optional[int] = None
    resultDescription: Optional[str] = None
    transactionId: Optional[str] = None
    payoutAmount: Scalar = None
    receiver: Scalar = None
    completedAt: Optional[str] = None
