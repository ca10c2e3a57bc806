"""
Aptos chain adapter: payload building, signing, submission and confirmation.

Signing and BCS encoding are delegated to aptos-sdk. The transaction hash is
computed locally from the signed bytes before submission, so a submission
that fails ambiguously (timeout, dropped connection) still leaves a hash the
next scheduler pass can look up instead of re-submitting.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from aptos_sdk.account import Account
from aptos_sdk.account_address import AccountAddress
from aptos_sdk.async_client import ApiError, ClientConfig, RestClient
from aptos_sdk.bcs import Serializer
from aptos_sdk.transactions import EntryFunction, TransactionArgument, TransactionPayload
from aptos_sdk.type_tag import StructTag, TypeTag

from config import Config
from services.indexer_service import IndexerService, OrderFill

logger = logging.getLogger(__name__)

# Signed transactions expire after this many seconds (aptos-sdk default);
# a hash unknown to the node after this window never landed.
TRANSACTION_EXPIRATION_SECONDS = 600

_USER_TXN_PREFIX = hashlib.sha3_256(b"APTOS::Transaction").digest()


class ChainServiceError(Exception):
    """Base class for chain adapter failures"""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        self.tx_hash = tx_hash
        super().__init__(message)


class ChainRejectedError(ChainServiceError):
    """Definitive rejection: the transaction did not and will not execute"""
    pass


class ChainUnavailableError(ChainServiceError):
    """Ambiguous node/network failure; the transaction may or may not have landed"""
    pass


@dataclass
class EntryFunctionPayload:
    """
    Chain-agnostic description of an entry function call.

    arguments are (kind, value) pairs; kind is one of address, u8, u64,
    bool, none (an empty Move Option).
    """
    function: str
    arguments: List[Tuple[str, Any]]
    type_arguments: List[str] = field(default_factory=list)
    places_order: bool = False

    def describe(self) -> Dict[str, Any]:
        return {
            "function": self.function,
            "type_arguments": list(self.type_arguments),
            "arguments": [value for _, value in self.arguments],
        }


@dataclass
class SubmitResult:
    success: bool
    hash: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ConfirmationOutcome:
    """Finalized on-chain result of a transaction"""
    success: bool
    tx_hash: str
    vm_status: Optional[str] = None
    version: Optional[str] = None
    events: List[Dict[str, Any]] = field(default_factory=list)


def _encode_none(serializer: Serializer, _value: Any) -> None:
    # Move Option is a vector of length 0 or 1
    serializer.uleb128(0)


_ENCODERS = {
    "address": lambda value: TransactionArgument(AccountAddress.from_str(value), Serializer.struct),
    "u8": lambda value: TransactionArgument(int(value), Serializer.u8),
    "u64": lambda value: TransactionArgument(int(value), Serializer.u64),
    "bool": lambda value: TransactionArgument(bool(value), Serializer.bool),
    "none": lambda value: TransactionArgument(None, _encode_none),
}


def to_transaction_payload(payload: EntryFunctionPayload) -> TransactionPayload:
    module, function = payload.function.rsplit("::", 1)
    type_args = [TypeTag(StructTag.from_str(type_arg)) for type_arg in payload.type_arguments]
    args = [_ENCODERS[kind](value) for kind, value in payload.arguments]
    return TransactionPayload(EntryFunction.natural(module, function, type_args, args))


def compute_transaction_hash(signed_transaction) -> str:
    """Hash of a signed user transaction, as the node will report it"""
    return "0x" + hashlib.sha3_256(_USER_TXN_PREFIX + b"\x00" + signed_transaction.bytes()).hexdigest()


def extract_order_id(events: List[Dict[str, Any]]) -> Optional[str]:
    """Order id from the OrderPlaced event emitted by the DEX, if any"""
    for event in events or []:
        event_type = str(event.get("type", ""))
        if "OrderPlaced" in event_type or "order_placed" in event_type:
            order_id = (event.get("data") or {}).get("order_id")
            if order_id is not None:
                return str(order_id)
    return None


def build_place_order_payload(subaccount_address: str, size: int, is_buy: bool = True) -> EntryFunctionPayload:
    """Market order (price 0) into the vault's DEX subaccount"""
    if not Config.DEX_MARKET_ADDRESS:
        raise ChainRejectedError("DEX_MARKET_ADDRESS not configured")
    return EntryFunctionPayload(
        function=f"{Config.DEX_PACKAGE_ADDRESS}::dex_accounts::place_order_to_subaccount",
        arguments=[
            ("address", subaccount_address),
            ("address", Config.DEX_MARKET_ADDRESS),
            ("u64", 0),         # price: market order
            ("u64", size),
            ("bool", is_buy),
            ("u8", 0),          # time in force: good till cancelled
            ("bool", False),    # reduce only
            ("none", None),     # client order id
            ("none", None),     # stop price
            ("none", None),     # take-profit trigger
            ("none", None),     # take-profit limit
            ("none", None),     # stop-loss trigger
            ("none", None),     # stop-loss limit
            ("none", None),     # builder address
            ("none", None),     # builder fee
        ],
        places_order=True,
    )


def build_execute_sip_payload(vault_address: str, vault_index: int, amount_in: int, min_amount_out: int) -> EntryFunctionPayload:
    """Direct swap through the custody contract's executor"""
    return EntryFunctionPayload(
        function=f"{Config.CONTRACT_ADDRESS}::executor::execute_sip",
        arguments=[
            ("address", vault_address),
            ("u64", vault_index),
            ("u64", amount_in),
            ("u64", min_amount_out),
        ],
    )


def build_deposit_for_user_payload(vault_address: str, amount: int) -> EntryFunctionPayload:
    return EntryFunctionPayload(
        function=f"{Config.CONTRACT_ADDRESS}::sip_vault::deposit_for_user",
        arguments=[("address", vault_address), ("u64", amount)],
        type_arguments=[Config.USDC_COIN_TYPE],
    )


class ChainService:
    """Aptos node adapter used by the execution engine and treasury"""

    def __init__(
        self,
        node_url: Optional[str] = None,
        indexer: Optional[IndexerService] = None,
        poll_interval: float = 1.0,
    ):
        self.node_url = node_url or Config.APTOS_FULLNODE_URL
        self.indexer = indexer or IndexerService()
        self.poll_interval = poll_interval
        self._client: Optional[RestClient] = None

    @property
    def client(self) -> RestClient:
        if self._client is None:
            self._client = RestClient(
                self.node_url,
                client_config=ClientConfig(expiration_ttl=TRANSACTION_EXPIRATION_SECONDS, api_key=Config.APTOS_API_KEY),
            )
        return self._client

    @staticmethod
    def load_signer(private_key: str) -> Account:
        return Account.load_key(private_key)

    def build_execution_payload(self, vault_address: str, vault_index: Optional[int], amount_in: int, min_amount_out: int) -> EntryFunctionPayload:
        """Place a DEX order when a market is configured, else swap through the executor"""
        if Config.DEX_MARKET_ADDRESS:
            return build_place_order_payload(vault_address, amount_in)
        return build_execute_sip_payload(vault_address, vault_index or 0, amount_in, min_amount_out)

    async def submit(self, payload: EntryFunctionPayload, signer: Account) -> SubmitResult:
        """
        Sign and submit. A definitive node rejection returns success=False;
        an ambiguous failure raises ChainUnavailableError carrying the hash.
        """
        # Encoding, sequence number fetch and signing: nothing has been sent yet
        try:
            signed = await self.client.create_bcs_signed_transaction(signer, to_transaction_payload(payload))
        except ApiError as e:
            raise ChainUnavailableError(f"Failed to build transaction: {e}") from e
        except Exception as e:
            raise ChainUnavailableError(f"Failed to build transaction: {type(e).__name__}: {e}") from e

        tx_hash = compute_transaction_hash(signed)
        logger.info(f"📤 CHAIN_SUBMIT: {payload.function} hash={tx_hash}")

        try:
            node_hash = await self.client.submit_bcs_transaction(signed)
        except ApiError as e:
            status = getattr(e, "status_code", None)
            if status is not None and 400 <= status < 500:
                logger.error(f"❌ CHAIN_SUBMIT_REJECTED: {tx_hash} status={status}")
                return SubmitResult(success=False, hash=None, error=f"Node rejected transaction (HTTP {status})")
            raise ChainUnavailableError(f"Node error on submit: HTTP {status}", tx_hash=tx_hash) from e
        except Exception as e:
            raise ChainUnavailableError(f"Network error on submit: {type(e).__name__}", tx_hash=tx_hash) from e

        if node_hash and node_hash != tx_hash:
            logger.warning(f"⚠️ CHAIN_HASH_MISMATCH: local={tx_hash} node={node_hash}")
            tx_hash = node_hash
        return SubmitResult(success=True, hash=tx_hash)

    async def lookup_transaction(self, tx_hash: str) -> Optional[ConfirmationOutcome]:
        """Finalized outcome, or None if the node does not know the hash or it is pending"""
        try:
            data = await self.client.transaction_by_hash(tx_hash)
        except ApiError as e:
            if getattr(e, "status_code", None) == 404:
                return None
            raise ChainUnavailableError(f"Node error on lookup: {e}", tx_hash=tx_hash) from e
        except Exception as e:
            raise ChainUnavailableError(f"Network error on lookup: {type(e).__name__}", tx_hash=tx_hash) from e

        if data.get("type") == "pending_transaction":
            return None
        return ConfirmationOutcome(
            success=bool(data.get("success")),
            tx_hash=tx_hash,
            vm_status=data.get("vm_status"),
            version=str(data.get("version")) if data.get("version") is not None else None,
            events=data.get("events") or [],
        )

    async def wait_for_confirmation(self, tx_hash: str, timeout: float = 60) -> ConfirmationOutcome:
        """Poll until finalized. Timeout or persistent node errors raise ChainUnavailableError."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        last_error: Optional[Exception] = None

        while loop.time() < deadline:
            try:
                outcome = await self.lookup_transaction(tx_hash)
                if outcome is not None:
                    logger.info(
                        f"{'✅' if outcome.success else '❌'} CHAIN_FINALIZED: {tx_hash} "
                        f"success={outcome.success} vm_status={outcome.vm_status}"
                    )
                    return outcome
            except ChainUnavailableError as e:
                last_error = e
                logger.warning(f"⚠️ CHAIN_LOOKUP_RETRY: {tx_hash}: {e}")
            await asyncio.sleep(self.poll_interval)

        raise ChainUnavailableError(
            f"Confirmation not observed within {timeout}s" + (f" (last error: {last_error})" if last_error else ""),
            tx_hash=tx_hash,
        )

    async def wait_for_fill(self, account: str, order_id: str, timeout: float = 30, poll_interval: float = 2) -> Optional[OrderFill]:
        """Poll the indexer for the order's fill; None when not observed in time"""
        if not self.indexer.configured:
            logger.warning(f"⚠️ FILL_TRACKING_DISABLED: no indexer configured for order {order_id}")
            return None

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            try:
                for fill in await self.indexer.query_order_fills(account):
                    if fill.order_id == order_id:
                        logger.info(f"✅ ORDER_FILLED: {order_id} amount={fill.fill_amount} price={fill.fill_price}")
                        return fill
            except Exception as e:
                logger.warning(f"⚠️ FILL_QUERY_FAILED: order {order_id}: {e}")
            await asyncio.sleep(poll_interval)

        logger.warning(f"⏱️ ORDER_FILL_TIMEOUT: {order_id} not filled within {timeout}s")
        return None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
