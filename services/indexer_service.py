"""
Chain event indexer client (GraphQL).

Used for two things:
- order fill tracking after a DEX order is placed (OrderFillEvent)
- periodic sync of vault events (SIP executions, deposits) for reconciliation
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from services.api_adapter_retry import APIAdapter, ExternalAPIError
from services.retry_service import retry_async_decorator

logger = logging.getLogger(__name__)


class IndexerError(ExternalAPIError):
    pass


@dataclass(frozen=True)
class OrderFill:
    order_id: str
    account: str
    fill_amount: int
    fill_price: int
    fees: int
    transaction_version: str


@dataclass
class ChainEvent:
    """Vault event keyed by vault address + index + transaction version"""
    stream: str
    vault_address: str
    vault_index: Optional[int]
    transaction_version: int
    transaction_hash: Optional[str] = None
    amount_in: Optional[int] = None
    amount_out: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)


ORDER_FILLS_QUERY = """
query GetOrderFills($account: String!, $limit: Int!) {
  events(
    where: { account_address: { _eq: $account }, type: { _like: "%OrderFillEvent%" } }
    order_by: { transaction_version: desc }
    limit: $limit
  ) {
    type
    data
    transaction_version
  }
}
"""

STREAM_QUERIES = {
    "sip_executed": """
query GetSIPExecutedEvents($sinceVersion: bigint, $limit: Int!) {
  sip_executed_events(
    where: { transaction_version: { _gt: $sinceVersion } }
    order_by: { transaction_version: asc }
    limit: $limit
  ) {
    vault_addr
    sip_id
    amount_in
    amount_out
    execution_count
    transaction_version
    transaction_hash
  }
}
""",
    "deposit": """
query GetDepositEvents($sinceVersion: bigint, $limit: Int!) {
  deposit_events(
    where: { transaction_version: { _gt: $sinceVersion } }
    order_by: { transaction_version: asc }
    limit: $limit
  ) {
    vault_addr
    user
    amount
    asset
    transaction_version
    transaction_hash
  }
}
""",
}

STREAM_ROOTS = {
    "sip_executed": "sip_executed_events",
    "deposit": "deposit_events",
}


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def parse_chain_event(stream: str, raw: Dict[str, Any]) -> ChainEvent:
    """Normalise an indexer row (or a pushed webhook event) into a ChainEvent"""
    return ChainEvent(
        stream=stream,
        vault_address=str(raw.get("vault_addr") or raw.get("vault_address") or ""),
        vault_index=_to_int(raw.get("sip_id", raw.get("vault_index"))),
        transaction_version=int(raw["transaction_version"]),
        transaction_hash=raw.get("transaction_hash"),
        amount_in=_to_int(raw.get("amount_in", raw.get("amount"))),
        amount_out=_to_int(raw.get("amount_out")),
        data=dict(raw),
    )


class IndexerService(APIAdapter):
    error_class = IndexerError

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, url: Optional[str] = None):
        super().__init__(service_name="indexer", timeout=15, session=session)
        self.url = url or Config.INDEXER_GRAPHQL_URL

    @property
    def configured(self) -> bool:
        return bool(self.url)

    async def _query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        if not self.url:
            raise IndexerError(self.service_name, "INDEXER_GRAPHQL_URL not configured", retryable=False)
        headers = {"Content-Type": "application/json"}
        if Config.INDEXER_API_KEY:
            headers["Authorization"] = f"Bearer {Config.INDEXER_API_KEY}"
        body = await self._make_http_request(
            "POST", self.url, headers=headers, json={"query": query, "variables": variables}
        )
        if body.get("errors"):
            raise IndexerError(self.service_name, f"GraphQL errors: {body['errors']!r:.200}", retryable=False)
        return body.get("data") or {}

    async def query_order_fills(self, account: str, limit: int = 50) -> List[OrderFill]:
        data = await self._query(ORDER_FILLS_QUERY, {"account": account, "limit": limit})
        fills = []
        for event in data.get("events", []):
            payload = event.get("data") or {}
            if "order_id" not in payload:
                continue
            fills.append(
                OrderFill(
                    order_id=str(payload["order_id"]),
                    account=account,
                    fill_amount=int(payload.get("fill_amount", 0)),
                    fill_price=int(payload.get("fill_price", 0)),
                    fees=int(payload.get("fees", 0) or 0),
                    transaction_version=str(event.get("transaction_version")),
                )
            )
        return fills

    @retry_async_decorator("indexer")
    async def fetch_events(self, stream: str, since_version: int, limit: int = 100) -> List[ChainEvent]:
        if stream not in STREAM_QUERIES:
            raise ValueError(f"Unknown indexer stream: {stream}")
        data = await self._query(STREAM_QUERIES[stream], {"sinceVersion": since_version, "limit": limit})
        return [parse_chain_event(stream, row) for row in data.get(STREAM_ROOTS[stream], [])]
