"""
Ledger Oracle Service - read-only adapter to the ledger mirror node (indexer)

Normalizes transaction and account ids, issues bounded-timeout queries and
maps every transport failure to OracleUnavailableError. It never retries and
never caches: retry policy and freshness belong to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from config import Config
from utils.exceptions import OracleUnavailableError, ValidationError
from utils.normalizers import is_valid_account_id, parse_transaction_id

logger = logging.getLogger(__name__)

SUCCESS_RESULT = "SUCCESS"


@dataclass(frozen=True)
class LedgerTransfer:
    """One leg of a transaction: signed amount in raw units"""

    account: str
    amount: int
    token_id: Optional[str] = None

    @property
    def is_token(self) -> bool:
        return self.token_id is not None


@dataclass(frozen=True)
class ExternalTransactionRecord:
    """Oracle's view of a ledger transaction - re-fetched on every verification"""

    transaction_id: str
    result: str
    consensus_timestamp: datetime
    transfers: Tuple[LedgerTransfer, ...] = ()
    payer_account_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result == SUCCESS_RESULT

    def token_transfers(self, token_id: str) -> List[LedgerTransfer]:
        return [t for t in self.transfers if t.is_token and t.token_id == token_id]

    def find_incoming_transfer(self, account_id: str, token_id: str) -> Optional[LedgerTransfer]:
        """Positive transfer of token_id credited to account_id, if any"""
        for transfer in self.token_transfers(token_id):
            if transfer.account == account_id and transfer.amount > 0:
                return transfer
        return None

    def find_sender(self, token_id: str) -> Optional[str]:
        """Payer account, or the account whose token balance went down"""
        if self.payer_account_id:
            return self.payer_account_id
        for transfer in self.token_transfers(token_id):
            if transfer.amount < 0:
                return transfer.account
        return None


@dataclass(frozen=True)
class AccountBalance:
    account_id: str
    native_balance: int
    token_balances: Dict[str, int] = field(default_factory=dict)


def parse_consensus_timestamp(value: Any) -> datetime:
    """
    Convert "<seconds>.<nanos>" ledger timestamps to an aware UTC datetime.

    Nanoseconds are truncated to microseconds.
    """
    try:
        text = str(value).strip()
        seconds_part, _, nanos_part = text.partition(".")
        seconds = int(seconds_part)
        nanos = int((nanos_part or "0").ljust(9, "0")[:9])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid consensus timestamp: {value!r}") from e
    return datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(microseconds=nanos // 1000)


def parse_transaction_payload(payload: Dict[str, Any], canonical_id: str) -> Optional[ExternalTransactionRecord]:
    """Build a record from a /transactions/{id} response body"""
    transactions = payload.get("transactions") or []
    if not transactions:
        return None

    # Child/scheduled transactions share the id; prefer the entry that matches exactly
    entry = next((t for t in transactions if t.get("transaction_id") == canonical_id), transactions[0])

    transfers: List[LedgerTransfer] = []
    for transfer in entry.get("transfers") or []:
        transfers.append(LedgerTransfer(account=transfer["account"], amount=int(transfer["amount"])))
    for transfer in entry.get("token_transfers") or []:
        transfers.append(
            LedgerTransfer(
                account=transfer["account"],
                amount=int(transfer["amount"]),
                token_id=transfer["token_id"],
            )
        )

    timestamp = entry.get("consensus_timestamp") or entry.get("valid_start_timestamp")
    return ExternalTransactionRecord(
        transaction_id=entry.get("transaction_id") or canonical_id,
        result=entry.get("result") or "UNKNOWN",
        consensus_timestamp=parse_consensus_timestamp(timestamp),
        transfers=tuple(transfers),
        payer_account_id=entry.get("payer_account_id"),
    )


def parse_account_payload(payload: Dict[str, Any], account_id: str) -> AccountBalance:
    """Build an AccountBalance from an /accounts/{id} response body"""
    balance_info = payload.get("balance") or {}
    token_balances = {
        token["token_id"]: int(token.get("balance", 0))
        for token in balance_info.get("tokens") or []
    }
    return AccountBalance(
        account_id=payload.get("account") or account_id,
        native_balance=int(balance_info.get("balance") or 0),
        token_balances=token_balances,
    )


class LedgerOracleService:
    """Read-only queries against the ledger mirror node REST API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = (base_url or Config.MIRROR_NODE_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else Config.ORACLE_TIMEOUT_SECONDS
        self._session = session

    async def fetch_transaction(self, transaction_id: str) -> Optional[ExternalTransactionRecord]:
        """
        Fetch a transaction by id.

        Both accepted spellings (0.0.1@123.456 and 0.0.1-123-456) query the same
        canonical indexer path.

        Returns:
            The record, or None when the indexer has no such transaction

        Raises:
            ValidationError: malformed id
            OracleUnavailableError: timeout, 5xx or network failure
        """
        parsed = parse_transaction_id(transaction_id)
        if parsed is None:
            raise ValidationError(f"Invalid transaction ID format: {transaction_id}")

        logger.info(f"🔍 ORACLE_FETCH_TRANSACTION: {parsed.canonical}")
        payload = await self._get_json(f"/transactions/{parsed.canonical}")
        if payload is None:
            logger.info(f"ORACLE_TRANSACTION_NOT_FOUND: {parsed.canonical}")
            return None

        try:
            return parse_transaction_payload(payload, parsed.canonical)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"❌ ORACLE_MALFORMED_RESPONSE: transaction {parsed.canonical}: {e}")
            raise OracleUnavailableError(f"Malformed indexer response for {parsed.canonical}: {e}")

    async def fetch_account_balance(self, account_id: str) -> Optional[AccountBalance]:
        """
        Native and token balances of an account, or None if the account is unknown.

        Raises:
            ValidationError: malformed account id (checked before any network call)
            OracleUnavailableError: timeout, 5xx or network failure
        """
        if not is_valid_account_id(account_id):
            raise ValidationError(f"Invalid account ID format: {account_id}")

        account_id = account_id.strip()
        payload = await self._get_json(f"/accounts/{account_id}")
        if payload is None:
            return None

        try:
            return parse_account_payload(payload, account_id)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"❌ ORACLE_MALFORMED_RESPONSE: account {account_id}: {e}")
            raise OracleUnavailableError(f"Malformed indexer response for account {account_id}: {e}")

    async def get_transaction_status(self, transaction_id: str) -> Dict[str, Any]:
        """Lightweight existence/result check used by status commands"""
        record = await self.fetch_transaction(transaction_id)
        if record is None:
            return {"exists": False, "error": "Transaction not found"}
        return {
            "exists": True,
            "status": record.result,
            "timestamp": record.consensus_timestamp.isoformat(),
        }

    async def _get_json(self, path: str) -> Optional[Dict[str, Any]]:
        """GET base_url + path; None on 404, OracleUnavailableError on transport trouble"""
        url = f"{self.base_url}{path}"
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        try:
            if self._session is not None:
                return await self._request(self._session, url, timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                return await self._request(session, url, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ ORACLE_TIMEOUT: {url} after {self.timeout_seconds}s")
            raise OracleUnavailableError(f"Indexer request timed out after {self.timeout_seconds}s: {path}")
        except aiohttp.ClientError as e:
            logger.warning(f"⚠️ ORACLE_NETWORK_ERROR: {url}: {e}")
            raise OracleUnavailableError(f"Indexer request failed: {e}")

    async def _request(
        self, session: aiohttp.ClientSession, url: str, timeout: aiohttp.ClientTimeout
    ) -> Optional[Dict[str, Any]]:
        async with session.get(url, headers={"Accept": "application/json"}, timeout=timeout) as response:
            if response.status == 200:
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise OracleUnavailableError(f"Indexer returned invalid JSON: {e}")
            if response.status == 404:
                return None

            error_text = await response.text()
            if response.status == 400:
                logger.warning(f"ORACLE_REJECTED_REQUEST: {url}: {error_text[:200]}")
                raise ValidationError(f"Indexer rejected the request: {error_text[:200]}")

            logger.error(f"❌ ORACLE_HTTP_ERROR: {url}: HTTP {response.status}: {error_text[:200]}")
            raise OracleUnavailableError(f"Indexer returned HTTP {response.status}")
