"""
Treasury API Routes
Thin FastAPI boundary over the deposit, balance, order and purchase services
"""

import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, Request

from config import Config
from models import BalanceJournalEntry, Deposit, Order, OrderStatusHistory, User
from services.deposit_verification_service import DepositClaim
from services.identity_resolver import Identifiers, UserProfile
from services.purchase_orchestrator import PurchaseRequest
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["treasury"])


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _time(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "walletAddress": user.wallet_address,
        "chatId": user.chat_id,
        "email": user.email,
        "displayName": user.display_name,
        "onboardingChannel": user.onboarding_channel,
        "isVerified": user.is_verified,
        "balance": _money(user.balance),
    }


def serialize_deposit(deposit: Deposit) -> Dict[str, Any]:
    return {
        "id": deposit.id,
        "externalTxId": deposit.external_tx_id,
        "userId": deposit.user_id,
        "amount": _money(deposit.amount),
        "tokenId": deposit.token_id,
        "senderAccount": deposit.sender_account,
        "status": deposit.status,
        "externalTimestamp": _time(deposit.external_timestamp),
        "creditedAt": _time(deposit.credited_at),
    }


def serialize_order(order: Order) -> Dict[str, Any]:
    return {
        "orderCode": order.order_code,
        "userId": order.user_id,
        "status": order.status,
        "items": order.items,
        "shippingAddress": order.shipping_address,
        "payment": {
            "method": order.payment_method,
            "status": order.payment_status,
            "amount": _money(order.payment_amount),
            "currency": order.payment_currency,
            "externalTxId": order.payment_external_tx_id,
        },
        "subtotal": _money(order.subtotal),
        "shipping": _money(order.shipping),
        "tax": _money(order.tax),
        "discount": _money(order.discount),
        "total": _money(order.total),
        "createdAt": _time(order.created_at),
        "confirmedAt": _time(order.confirmed_at),
        "cancelledAt": _time(order.cancelled_at),
    }


def serialize_history(entry: OrderStatusHistory) -> Dict[str, Any]:
    return {
        "fromStatus": entry.from_status,
        "toStatus": entry.to_status,
        "reason": entry.change_reason,
        "balanceEffect": _money(entry.balance_effect),
        "changedAt": _time(entry.changed_at),
    }


def serialize_journal(entry: BalanceJournalEntry) -> Dict[str, Any]:
    return {
        "type": entry.change_type,
        "amount": _money(entry.amount),
        "balanceAfter": _money(entry.balance_after),
        "reason": entry.reason,
        "createdAt": _time(entry.created_at),
    }


async def _json_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        raise ValidationError("Empty request body")
    try:
        payload = json.loads(raw)
    except ValueError:
        raise ValidationError("Invalid JSON format")
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _owner_id(payload: Dict[str, Any]) -> int:
    value = payload.get("userId")
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    raise ValidationError("userId of the order owner is required")


# ---------------------------------------------------------------------------
# Deposits
# ---------------------------------------------------------------------------

@router.post("/deposits/verify")
async def verify_deposit(request: Request):
    """Verify an on-ledger payment to the treasury and credit the sender's balance"""
    services = request.app.state.services
    payload = await _json_body(request)

    tx_id = payload.get("transactionId") or payload.get("externalTxId")
    if not tx_id:
        raise ValidationError("transactionId is required")

    claim = DepositClaim(
        external_tx_id=str(tx_id),
        identifiers=Identifiers.normalized(
            wallet_address=payload.get("walletAddress"),
            chat_id=payload.get("chatId"),
            email=payload.get("email"),
        ),
        expected_amount=payload.get("expectedAmount"),
        profile=UserProfile(display_name=payload.get("name")),
    )
    deposit = await services.deposit_verifier.verify(claim)
    balance = await services.balance_ledger.get_balance(deposit.user_id)

    return {
        "success": True,
        "message": f"Deposit verified! {deposit.amount} {Config.DEPOSIT_TOKEN_SYMBOL} added to your balance.",
        "data": {"deposit": serialize_deposit(deposit), "newBalance": _money(balance)},
    }


@router.get("/deposits/{user_id}")
async def deposit_history(request: Request, user_id: int, limit: int = Query(20, ge=1, le=100)):
    services = request.app.state.services
    await services.identity_resolver.get_user(user_id)
    deposits = await services.deposit_verifier.get_deposit_history(user_id, limit=limit)
    total = await services.deposit_verifier.get_total_deposits(user_id)
    return {
        "success": True,
        "data": {
            "deposits": [serialize_deposit(deposit) for deposit in deposits],
            "totalDeposited": _money(total),
        },
    }


# ---------------------------------------------------------------------------
# Purchases and orders
# ---------------------------------------------------------------------------

@router.post("/purchases", status_code=201)
async def create_purchase(request: Request):
    """Process a purchase with automatic user onboarding"""
    services = request.app.state.services
    purchase_request = PurchaseRequest.from_payload(await _json_body(request))
    result = await services.purchase_orchestrator.purchase(purchase_request)
    return {
        "success": True,
        "message": f"Order {result.order.order_code} created",
        "data": {
            "order": serialize_order(result.order),
            "user": serialize_user(result.user),
            "isNewUser": result.is_new_user,
            "deposit": serialize_deposit(result.deposit) if result.deposit else None,
        },
    }


@router.get("/orders/{order_code}")
async def get_order(request: Request, order_code: str):
    services = request.app.state.services
    order = await services.order_ledger.get_order(order_code)
    history = await services.order_ledger.get_status_history(order_code)
    data = serialize_order(order)
    data["history"] = [serialize_history(entry) for entry in history]
    return {"success": True, "data": data}


@router.get("/users/{user_id}/orders")
async def list_user_orders(
    request: Request,
    user_id: int,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
):
    services = request.app.state.services
    orders = await services.order_ledger.list_user_orders(user_id, status=status, limit=limit)
    return {"success": True, "data": [serialize_order(order) for order in orders]}


@router.post("/orders/{order_code}/status")
async def update_order_status(request: Request, order_code: str):
    services = request.app.state.services
    payload = await _json_body(request)
    new_status = payload.get("status")
    if not new_status:
        raise ValidationError("status is required")
    order = await services.order_ledger.transition(order_code, str(new_status), payload.get("reason"))
    return {"success": True, "data": serialize_order(order)}


@router.post("/orders/{order_code}/cancel")
async def cancel_order(request: Request, order_code: str):
    """Cancel an order on behalf of its owner; other users get 404"""
    services = request.app.state.services
    payload = await _json_body(request)
    order = await services.order_ledger.cancel_order(order_code, _owner_id(payload), payload.get("reason"))
    return {"success": True, "data": serialize_order(order)}


# ---------------------------------------------------------------------------
# Balance and network
# ---------------------------------------------------------------------------

@router.get("/users/{user_id}/balance")
async def get_balance(request: Request, user_id: int, journal_limit: int = Query(20, ge=0, le=200)):
    services = request.app.state.services
    balance = await services.balance_ledger.get_balance(user_id)
    journal = await services.balance_ledger.get_journal(user_id, limit=journal_limit) if journal_limit else []
    return {
        "success": True,
        "data": {
            "userId": user_id,
            "balance": _money(balance),
            "currency": Config.DEPOSIT_TOKEN_SYMBOL,
            "journal": [serialize_journal(entry) for entry in journal],
        },
    }


@router.get("/network")
async def network_info():
    return {"success": True, "data": Config.get_network_info()}
