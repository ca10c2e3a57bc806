"""
Chain adapter submission tests
Failures before the send carry no hash; failures after it carry the locally computed hash
"""

from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from services.chain_service import ChainService, ChainUnavailableError, build_deposit_for_user_payload
from tests.factories import chain_hash, vault_for


@pytest.fixture
def node():
    client = Mock()
    client.create_bcs_signed_transaction = AsyncMock(return_value=Mock(name="signed"))
    client.submit_bcs_transaction = AsyncMock(return_value=chain_hash(9))
    return client


@pytest.fixture
def adapter(node):
    service = ChainService(node_url="http://node.test", indexer=Mock())
    service._client = node
    with patch("services.chain_service.to_transaction_payload", Mock(return_value="payload")), \
            patch("services.chain_service.compute_transaction_hash", Mock(return_value=chain_hash(9))):
        yield service


@pytest.fixture
def deposit_payload():
    return build_deposit_for_user_payload(vault_for(1), 1176470)


class TestSubmit:

    @pytest.mark.asyncio
    async def test_accepted(self, adapter, deposit_payload):
        result = await adapter.submit(deposit_payload, object())

        assert result.success is True
        assert result.hash == chain_hash(9)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        httpx.ConnectError("connection refused"),
        ConnectionResetError("connection reset by peer"),
        OverflowError("int too big to convert"),
    ])
    async def test_failure_before_send_has_no_hash(self, adapter, node, deposit_payload, error):
        node.create_bcs_signed_transaction.side_effect = error

        with pytest.raises(ChainUnavailableError) as excinfo:
            await adapter.submit(deposit_payload, object())

        assert excinfo.value.tx_hash is None
        node.submit_bcs_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transport_error_on_send_keeps_hash(self, adapter, node, deposit_payload):
        node.submit_bcs_transaction.side_effect = httpx.ReadTimeout("timed out")

        with pytest.raises(ChainUnavailableError) as excinfo:
            await adapter.submit(deposit_payload, object())

        assert excinfo.value.tx_hash == chain_hash(9)
