"""
Purchase Orchestrator - one purchase request from any channel (web, chat bot, assistant)

validate -> resolve identity -> verify attached payment (optional) ->
create order -> notify

Validation failures are raised before anything is written. Verification
failures propagate unchanged. Notification failures are logged and ignored.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from config import Config
from models import Deposit, Order, OnboardingChannel, PaymentMethod, User
from services.deposit_verification_service import DepositClaim, DepositVerificationService
from services.identity_resolver import Identifiers, IdentityResolverService, UserProfile
from services.notification_service import NotificationService
from services.order_ledger_service import OrderDraft, OrderLedgerService
from utils.decimal_precision import MonetaryDecimal
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

REQUIRED_ADDRESS_FIELDS = ("street", "city", "country")

# Request source -> onboarding channel for users created by the purchase
SOURCE_CHANNELS = {
    "telegram": OnboardingChannel.TELEGRAM.value,
    "assistant": OnboardingChannel.ASSISTANT.value,
    "webapp": OnboardingChannel.WEB.value,
}


def _amount(value: Any, name: str) -> Decimal:
    try:
        amount = MonetaryDecimal.to_decimal(value, name)
    except ValueError as e:
        raise ValidationError(str(e))
    if amount < 0:
        raise ValidationError(f"{name} cannot be negative: {amount}")
    return amount


@dataclass(frozen=True)
class LineItem:
    product_id: str
    name: str
    price: Decimal
    quantity: int = 1
    description: Optional[str] = None
    category: Optional[str] = None
    sku: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "LineItem":
        if not isinstance(payload, Mapping):
            raise ValidationError("Each item must be an object")
        product_id = str(payload.get("productId") or payload.get("product_id") or "").strip()
        name = str(payload.get("name") or "").strip()
        if not product_id or not name:
            raise ValidationError("Each item needs a productId and a name")
        quantity = payload.get("quantity", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(f"Invalid quantity for item {product_id}: {quantity!r}")
        return cls(
            product_id=product_id,
            name=name,
            price=_amount(payload.get("price"), f"price of {product_id}"),
            quantity=quantity,
            description=payload.get("description"),
            category=payload.get("category"),
            sku=payload.get("sku"),
        )

    def to_record(self) -> Dict[str, Any]:
        """JSON-safe form stored on the order"""
        record = {
            "product_id": self.product_id,
            "name": self.name,
            "price": str(self.price),
            "quantity": self.quantity,
        }
        for optional in ("description", "category", "sku"):
            if getattr(self, optional):
                record[optional] = getattr(self, optional)
        return record


@dataclass(frozen=True)
class PaymentInfo:
    method: PaymentMethod
    amount: Decimal
    currency: str
    external_tx_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PaymentInfo":
        if not isinstance(payload, Mapping):
            raise ValidationError("Payment information is required")
        try:
            method = PaymentMethod(payload.get("method"))
        except ValueError:
            allowed = ", ".join(m.value for m in PaymentMethod)
            raise ValidationError(f"Unsupported payment method {payload.get('method')!r}; expected one of {allowed}")
        external_tx_id = payload.get("externalTxId") or payload.get("transactionId") or None
        return cls(
            method=method,
            amount=_amount(payload.get("amount"), "payment amount"),
            currency=str(payload.get("currency") or Config.DEFAULT_ORDER_CURRENCY).upper(),
            external_tx_id=str(external_tx_id).strip() if external_tx_id else None,
        )


@dataclass
class PurchaseRequest:
    items: List[LineItem]
    shipping_address: Dict[str, Any]
    payment: PaymentInfo
    subtotal: Decimal
    total: Decimal
    shipping: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    wallet_address: Optional[str] = None
    chat_id: Optional[int] = None
    email: Optional[str] = None
    name: Optional[str] = None
    notes: Optional[str] = None
    source: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PurchaseRequest":
        """Build from the JSON wire shape (camelCase keys)"""
        if not isinstance(payload, Mapping):
            raise ValidationError("Purchase request must be an object")
        raw_items = payload.get("items") or []
        if not isinstance(raw_items, list):
            raise ValidationError("items must be a list")
        address = payload.get("shippingAddress")
        return cls(
            items=[LineItem.from_payload(item) for item in raw_items],
            shipping_address=dict(address) if isinstance(address, Mapping) else {},
            payment=PaymentInfo.from_payload(payload.get("payment")),
            subtotal=_amount(payload.get("subtotal"), "subtotal"),
            shipping=_amount(payload.get("shipping", 0), "shipping"),
            tax=_amount(payload.get("tax", 0), "tax"),
            discount=_amount(payload.get("discount", 0), "discount"),
            total=_amount(payload.get("total", payload.get("totalPrice")), "total"),
            wallet_address=payload.get("walletAddress"),
            chat_id=payload.get("chatId"),
            email=payload.get("email"),
            name=payload.get("name"),
            notes=payload.get("notes"),
            source=payload.get("source"),
        )

    @property
    def identifiers(self) -> Identifiers:
        return Identifiers.normalized(
            wallet_address=self.wallet_address, chat_id=self.chat_id, email=self.email
        )

    @property
    def profile(self) -> UserProfile:
        return UserProfile(display_name=self.name, onboarding_channel=SOURCE_CHANNELS.get(self.source or ""))

    def validate(self, tolerance: Optional[Decimal] = None) -> None:
        """Shape and arithmetic checks; raises ValidationError before any side effect"""
        tolerance = tolerance if tolerance is not None else Config.ORDER_TOTAL_TOLERANCE

        if not self.items:
            raise ValidationError("Items are required for purchase")
        if not self.shipping_address:
            raise ValidationError("Shipping address is required")
        missing = [name for name in REQUIRED_ADDRESS_FIELDS if not str(self.shipping_address.get(name) or "").strip()]
        if missing:
            raise ValidationError(f"Shipping address is missing: {', '.join(missing)}")
        if self.identifiers.is_empty():
            raise ValidationError("At least one of walletAddress, chatId or email is required")
        if self.source is not None and self.source not in SOURCE_CHANNELS:
            raise ValidationError(f"Unknown request source: {self.source}")

        computed = self.subtotal + self.shipping + self.tax - self.discount
        if not MonetaryDecimal.amounts_match(computed, self.total, tolerance):
            raise ValidationError(
                f"Order total {self.total} does not match subtotal + shipping + tax - discount = {computed}"
            )
        if not MonetaryDecimal.amounts_match(self.payment.amount, self.total, tolerance):
            raise ValidationError(f"Payment amount {self.payment.amount} does not match order total {self.total}")


@dataclass
class PurchaseResult:
    order: Order
    user: User
    is_new_user: bool = False
    deposit: Optional[Deposit] = None
    notifications_sent: List[str] = field(default_factory=list)


class PurchaseOrchestrator:
    """Top-level purchase use case shared by every channel"""

    def __init__(
        self,
        identity_resolver: IdentityResolverService,
        deposit_verifier: DepositVerificationService,
        order_ledger: OrderLedgerService,
        notifier: Optional[NotificationService] = None,
    ):
        self.identity_resolver = identity_resolver
        self.deposit_verifier = deposit_verifier
        self.order_ledger = order_ledger
        self.notifier = notifier or NotificationService()

    async def purchase(self, request: PurchaseRequest) -> PurchaseResult:
        request.validate()

        identifiers = request.identifiers

        deposit = None
        if request.payment.external_tx_id:
            # No user is written until the payment verifies; the verifier
            # creates or backfills the buyer only after every ledger check
            existing = await self.identity_resolver.find_user(identifiers)
            # Credit the on-ledger payment first; the order then debits it
            deposit = await self.deposit_verifier.verify(
                DepositClaim(
                    external_tx_id=request.payment.external_tx_id,
                    identifiers=identifiers,
                    expected_amount=request.payment.amount,
                    profile=request.profile,
                )
            )
            user_id = deposit.user_id
            is_new_user = existing is None
            payment_verified = True
        else:
            resolution = await self.identity_resolver.resolve_identity(identifiers, request.profile)
            user_id = resolution.user.id
            is_new_user = resolution.created
            # Paying from the internal balance needs no external proof
            payment_verified = request.payment.method == PaymentMethod.BALANCE

        order = await self.order_ledger.create_order(
            OrderDraft(
                user_id=user_id,
                items=[item.to_record() for item in request.items],
                shipping_address=request.shipping_address,
                payment_method=request.payment.method,
                payment_amount=request.payment.amount,
                payment_currency=request.payment.currency,
                payment_external_tx_id=deposit.external_tx_id if deposit else None,
                subtotal=request.subtotal,
                shipping=request.shipping,
                tax=request.tax,
                discount=request.discount,
                total=request.total,
                source=request.source,
                notes=request.notes,
            ),
            payment_verified=payment_verified,
        )
        logger.info(
            f"✅ PURCHASE_COMPLETED: order={order.order_code} user={user_id} new_user={is_new_user} "
            f"status={order.status} deposit={deposit.external_tx_id if deposit else None}"
        )

        # Balance moved since resolution
        user = await self.identity_resolver.get_user(user_id)

        notifications_sent = []
        if is_new_user and await self._notify_safely(self.notifier.notify_user_onboarded, user):
            notifications_sent.append("user_onboarded")
        if await self._notify_safely(self.notifier.notify_order_created, order, user):
            notifications_sent.append("order_created")

        return PurchaseResult(
            order=order,
            user=user,
            is_new_user=is_new_user,
            deposit=deposit,
            notifications_sent=notifications_sent,
        )

    @staticmethod
    async def _notify_safely(send, *args) -> bool:
        try:
            return bool(await send(*args))
        except Exception as e:
            logger.error(f"❌ PURCHASE_NOTIFICATION_FAILED: {getattr(send, '__name__', send)}: {e}")
            return False
