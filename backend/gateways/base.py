# gateways/base.py
# ============================================================================
# ORDER RECONCILIATION BACKEND — PAYMENT GATEWAY ADAPTER CONTRACT
# ============================================================================
# One adapter per processor rail. Adapters talk to the processor and nothing
# else: they never write to a store. Amounts cross this boundary as Decimal
# currency units; each adapter converts to its processor's wire format.
# ============================================================================

from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field

from schemas.orders import IntentStatus, PaymentMethod, RefundStatus


class GatewayEventKind(str, Enum):
    INTENT_SUCCEEDED = "intent_succeeded"
    INTENT_FAILED = "intent_failed"
    CHARGE_REFUNDED = "charge_refunded"
    UNKNOWN = "unknown"


class IntentHandle(BaseModel):
    intent_id: str
    client_secret: Optional[str] = None
    amount: Decimal
    status: IntentStatus


class IntentSnapshot(BaseModel):
    intent_id: str
    status: IntentStatus
    amount: Decimal
    metadata: Dict[str, str] = Field(default_factory=dict)
    error_message: Optional[str] = None
    decline_code: Optional[str] = None


class RefundResult(BaseModel):
    refund_id: str
    amount: Decimal
    status: RefundStatus


class GatewayEvent(BaseModel):
    """A verified processor notification, normalized across rails."""
    kind: GatewayEventKind
    event_id: str
    event_type: str  # raw processor event name
    intent_id: Optional[str] = None
    amount: Optional[Decimal] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    error_message: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[Decimal] = None  # this refund only
    amount_refunded: Optional[Decimal] = None  # cumulative, when the processor reports it


class PaymentGatewayAdapter(ABC):
    """Processor-facing half of the payment flow."""

    method: PaymentMethod
    name: str

    @abstractmethod
    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, Any],
    ) -> IntentHandle:
        pass

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> IntentSnapshot:
        pass

    @abstractmethod
    async def capture_intent(self, intent_id: str) -> IntentSnapshot:
        """Finalize an approved intent. Rails that capture automatically just
        return the current snapshot."""

    @abstractmethod
    async def create_refund(
        self,
        intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Refund `amount`, or the full remaining amount when None."""

    @abstractmethod
    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        """Verify the notification signature and normalize the event.

        Raises WebhookSignatureError when verification fails.
        """

    async def aclose(self) -> None:
        pass
