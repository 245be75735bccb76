import pytest
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TransactionNotFound

from app.core.minting.chain_client import (
    ChainClient,
    ChainConfig,
    MintRequest,
    ReceiptStatus,
    gas_limit_with_buffer,
)
from app.core.minting.errors import (
    ChainNotConfiguredError,
    ChainTransactionError,
    ContractRevertError,
    GasEstimationError,
    InsufficientFundsError,
    NoReceiptError,
    NonceError,
    classify_chain_exception,
)

# Well-known throwaway key from the eth-account docs; never funded.
_TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
_CONTRACT = "0x" + "12" * 20


def _config(**overrides) -> ChainConfig:
    values = {
        "rpc_url": "http://127.0.0.1:8545",
        "private_key": _TEST_KEY,
        "contract_address": _CONTRACT,
    }
    values.update(overrides)
    return ChainConfig(**values)


@pytest.mark.parametrize(
    "exc, stage, expected",
    [
        (ContractLogicError("execution reverted: paused"), "estimate_gas", ContractRevertError),
        (ValueError({"code": -32000, "message": "execution reverted"}), "broadcast", ContractRevertError),
        (ValueError({"code": -32000, "message": "insufficient funds for gas * price + value"}), "broadcast", InsufficientFundsError),
        (ValueError("nonce too low"), "broadcast", NonceError),
        (ValueError("replacement transaction underpriced"), "broadcast", NonceError),
        (ValueError("gas required exceeds allowance"), "estimate_gas", GasEstimationError),
        (ConnectionError("connection refused"), "broadcast", ChainTransactionError),
    ],
)
def test_classify_chain_exception(exc, stage, expected):
    classified = classify_chain_exception(exc, stage=stage)
    assert type(classified) is expected


def test_retryable_flags():
    assert ContractRevertError("x").retryable is False
    assert InsufficientFundsError("x").retryable is False
    assert NonceError("x").retryable is True
    assert GasEstimationError("x").retryable is True
    assert ChainTransactionError("x").retryable is True


def test_chain_errors_pass_through_classification():
    err = NonceError("Nonce error: stale")
    assert classify_chain_exception(err) is err


def test_gas_limit_buffer():
    assert gas_limit_with_buffer(100000, 20) == 120000
    assert gas_limit_with_buffer(21001, 20) == 25201


@pytest.mark.parametrize(
    "overrides, reason",
    [
        ({"rpc_url": ""}, "missing CHAIN_RPC_URL"),
        ({"rpc_url": "", "private_key": ""}, "missing CHAIN_RPC_URL, CHAIN_PRIVATE_KEY"),
        ({"contract_address": "not-an-address"}, "invalid contract address"),
        ({"private_key": "0x1234"}, "invalid private key"),
    ],
)
def test_unconfigured_client_reports_reason(overrides, reason):
    client = ChainClient(_config(**overrides))

    assert client.is_configured is False
    assert client.status.reason == reason
    assert client.contract_address is None


def test_configured_client_derives_signer_offline():
    client = ChainClient(_config())

    assert client.is_configured is True
    assert client.status.signer_address.startswith("0x")
    assert client.contract_address.lower() == _CONTRACT


def test_invalid_key_is_not_echoed_in_status():
    client = ChainClient(_config(private_key="0xdeadbeef"))
    assert "deadbeef" not in (client.status.reason or "")


@pytest.mark.asyncio
async def test_unconfigured_client_refuses_to_submit():
    client = ChainClient(_config(rpc_url=""))
    request = MintRequest(
        batch_id="b1",
        collector_address="0x" + "11" * 20,
        recycler_address="0x" + "22" * 20,
        weight_grams=1000,
        ipfs_hash="Qm" + "a" * 44,
    )

    with pytest.raises(ChainNotConfiguredError):
        await client.submit_mint(request)


async def _value(v):
    return v


class _FakeFunction:
    def __init__(self, eth, name, args):
        self._eth = eth
        self.name = name
        self.args = args

    async def estimate_gas(self, params):
        if isinstance(self._eth.estimate, BaseException):
            raise self._eth.estimate
        return self._eth.estimate

    async def build_transaction(self, params):
        self._eth.built.append(dict(params))
        tx = {k: v for k, v in params.items() if k != "from"}
        tx.update({"to": self._eth.contract_address, "value": 0, "data": "0x1234"})
        return tx

    async def call(self):
        return self._eth.total_minted


class _FakeFunctions:
    def __init__(self, eth):
        self._eth = eth

    def mintBatch(self, *args):
        fn = _FakeFunction(self._eth, "mintBatch", args)
        self._eth.calls.append(fn)
        return fn

    def totalMinted(self):
        return _FakeFunction(self._eth, "totalMinted", ())


class _FakeContract:
    def __init__(self, eth, address):
        self.address = address
        self.functions = _FakeFunctions(eth)


def _next(script, default):
    item = script.pop(0) if script else default
    if isinstance(item, BaseException):
        raise item
    return item


class _FakeEth:
    """Scripted replacement for ``AsyncWeb3.eth``.

    ``receipts`` and ``blocks`` are consumed one entry per poll; exceptions are
    raised, and an exhausted script repeats the default.
    """

    def __init__(self, *, base_fee=10**9, receipts=(), blocks=(), send_error=None):
        self.base_fee = base_fee
        self.receipts = list(receipts)
        self.blocks = list(blocks)
        self.send_error = send_error
        self.estimate = 100000
        self.nonce = 7
        self.total_minted = 5
        self.contract_address = None
        self.sent: list = []
        self.built: list[dict] = []
        self.calls: list[_FakeFunction] = []
        self.receipt_polls = 0
        self.block_polls = 0

    def contract(self, address, abi):
        self.contract_address = address
        return _FakeContract(self, address)

    async def get_transaction_count(self, address, block_identifier):
        return self.nonce

    @property
    def chain_id(self):
        return _value(1337)

    async def get_block(self, block_identifier):
        return {} if self.base_fee is None else {"baseFeePerGas": self.base_fee}

    @property
    def gas_price(self):
        return _value(3 * 10**9)

    @property
    def max_priority_fee(self):
        return _value(2 * 10**9)

    async def send_raw_transaction(self, raw):
        self.sent.append(raw)
        if self.send_error is not None:
            raise self.send_error
        return b"\x00" * 32

    async def get_transaction_receipt(self, tx_hash):
        self.receipt_polls += 1
        return _next(self.receipts, TransactionNotFound(f"Transaction {tx_hash} not found"))

    @property
    def block_number(self):
        self.block_polls += 1
        return self._block_number()

    async def _block_number(self):
        return _next(self.blocks, 10**6)


class _FakeWeb3:
    def __init__(self, eth):
        self.eth = eth


def _receipt(status=1, block=100, gas_used=84000):
    return {"status": status, "blockNumber": block, "gasUsed": gas_used}


def _client(eth, **overrides):
    values = {"confirmations": 2, "poll_interval_seconds": 0.001, "receipt_timeout_seconds": 1.0}
    values.update(overrides)
    return ChainClient(_config(**values), w3=_FakeWeb3(eth))


def _request():
    return MintRequest(
        batch_id="b1",
        collector_address="0x" + "11" * 20,
        recycler_address="0x" + "22" * 20,
        weight_grams=1000,
        ipfs_hash="Qm" + "a" * 44,
    )


@pytest.mark.asyncio
async def test_submit_mint_eip1559_buffers_gas_and_waits_for_confirmations():
    eth = _FakeEth(receipts=[_receipt(block=100)], blocks=[100, 101])
    client = _client(eth)

    submission = await client.submit_mint(_request())

    assert len(eth.sent) == 1
    assert submission.transaction_hash.startswith("0x")
    assert submission.block_number == 100
    assert submission.gas_used == 84000
    # One confirmation short on the first poll, satisfied on the second.
    assert eth.block_polls == 2

    built = eth.built[0]
    assert built["gas"] == 120000
    assert built["nonce"] == 7
    assert built["chainId"] == 1337
    assert built["maxPriorityFeePerGas"] == 2 * 10**9
    assert built["maxFeePerGas"] == 2 * 10**9 + 2 * 10**9
    assert "gasPrice" not in built

    collector, recycler, amount, ipfs_hash = eth.calls[0].args
    assert collector == AsyncWeb3.to_checksum_address("0x" + "11" * 20)
    assert recycler == AsyncWeb3.to_checksum_address("0x" + "22" * 20)
    assert amount == 1000 * 10**18
    assert ipfs_hash == "Qm" + "a" * 44


@pytest.mark.asyncio
async def test_submit_mint_uses_gas_price_on_legacy_chains():
    eth = _FakeEth(base_fee=None, receipts=[_receipt()])
    client = _client(eth, confirmations=1)

    await client.submit_mint(_request())

    built = eth.built[0]
    assert built["gasPrice"] == 3 * 10**9
    assert "maxFeePerGas" not in built


@pytest.mark.asyncio
async def test_rpc_error_while_confirming_repolls_same_transaction():
    eth = _FakeEth(receipts=[_receipt(block=100)], blocks=[ConnectionError("connection reset"), 101])
    client = _client(eth)
    broadcast: list[str] = []

    async def _on_broadcast(tx_hash):
        broadcast.append(tx_hash)

    submission = await client.submit_mint(_request(), on_broadcast=_on_broadcast)

    assert len(eth.sent) == 1
    assert broadcast == [submission.transaction_hash]
    assert eth.block_polls == 2


@pytest.mark.asyncio
async def test_status_zero_receipt_is_a_revert_carrying_the_hash():
    eth = _FakeEth(receipts=[_receipt(status=0, block=55)])
    client = _client(eth)

    with pytest.raises(ContractRevertError) as info:
        await client.submit_mint(_request())

    assert info.value.retryable is False
    assert info.value.tx_hash is not None
    assert "block 55" in info.value.message
    assert len(eth.sent) == 1


@pytest.mark.asyncio
async def test_missing_receipt_times_out_with_hash():
    eth = _FakeEth()
    client = _client(eth, receipt_timeout_seconds=0.02)
    broadcast: list[str] = []

    async def _on_broadcast(tx_hash):
        broadcast.append(tx_hash)

    with pytest.raises(NoReceiptError) as info:
        await client.submit_mint(_request(), on_broadcast=_on_broadcast)

    assert info.value.retryable is True
    assert info.value.tx_hash == broadcast[0]
    assert eth.receipt_polls >= 1
    assert len(eth.sent) == 1


@pytest.mark.asyncio
async def test_confirmation_timeout_carries_hash():
    eth = _FakeEth(receipts=[_receipt(block=100)], blocks=[100] * 1000)
    client = _client(eth, confirmations=5, receipt_timeout_seconds=0.02)

    with pytest.raises(ChainTransactionError) as info:
        await client.submit_mint(_request())

    assert info.value.tx_hash is not None
    assert "5 confirmations" in info.value.message


@pytest.mark.asyncio
async def test_ambiguous_send_failure_carries_hash_but_rejection_does_not():
    eth = _FakeEth(send_error=ConnectionError("read timeout"))
    with pytest.raises(ChainTransactionError) as info:
        await _client(eth).submit_mint(_request())
    assert info.value.tx_hash is not None

    eth = _FakeEth(send_error=ValueError({"code": -32000, "message": "nonce too low"}))
    with pytest.raises(NonceError) as info:
        await _client(eth).submit_mint(_request())
    assert info.value.tx_hash is None


@pytest.mark.asyncio
async def test_gas_estimation_failure_sends_nothing():
    eth = _FakeEth()
    eth.estimate = ValueError("gas required exceeds allowance")

    with pytest.raises(GasEstimationError):
        await _client(eth).submit_mint(_request())

    assert eth.sent == []


@pytest.mark.asyncio
async def test_confirm_mint_only_polls():
    eth = _FakeEth(receipts=[TransactionNotFound("pending"), _receipt(block=40, gas_used=70000)], blocks=[41])
    client = _client(eth)

    submission = await client.confirm_mint("0x" + "ab" * 32)

    assert eth.sent == []
    assert submission.transaction_hash == "0x" + "ab" * 32
    assert submission.block_number == 40
    assert submission.gas_used == 70000


@pytest.mark.asyncio
async def test_get_receipt_reports_found_and_missing():
    eth = _FakeEth(receipts=[_receipt(status=1, block=9, gas_used=50000), _receipt(status=0, block=10)])
    client = _client(eth)

    assert await client.get_receipt("0x01") == ReceiptStatus(found=True, succeeded=True, block_number=9, gas_used=50000)
    reverted = await client.get_receipt("0x02")
    assert reverted.found is True
    assert reverted.succeeded is False
    assert await client.get_receipt("0x03") == ReceiptStatus(found=False)


@pytest.mark.asyncio
async def test_chain_id_and_total_minted():
    client = _client(_FakeEth())

    assert await client.get_chain_id() == 1337
    assert await client.get_total_minted() == 5
