from unittest.mock import MagicMock

import pytest
from eth_abi import encode as abi_encode
from hexbytes import HexBytes
from web3.exceptions import ContractLogicError

from conftest import AGENT_KEY, make_log, run
from memchain.anchor import EVENT_TOPIC, AnchorContractClient, decode_update
from memchain.codec import digest_bytes
from memchain.errors import DecodeError, NotFound, TransactionFailure, Unauthorized

CONTRACT = "0x" + "cc" * 20
AGENT = "0x" + "ab" * 20


def _mock_w3():
    w3 = MagicMock()
    contract = w3.eth.contract.return_value
    contract.functions.setLastMemoryHash.return_value.build_transaction.return_value = {}
    w3.eth.estimate_gas.return_value = 50_000
    w3.eth.account.sign_transaction.return_value.raw_transaction = b"signed"
    w3.eth.send_raw_transaction.return_value = HexBytes(b"\xab" * 32)
    w3.eth.wait_for_transaction_receipt.return_value = {
        "status": 1, "blockNumber": 7, "gasUsed": 42_000, "effectiveGasPrice": 10,
    }
    return w3


def _client(w3, key=AGENT_KEY):
    return AnchorContractClient(w3, CONTRACT, private_key=key, agent_address="" if key else AGENT, chain_id=1)


# --- event decoding ---

def test_decode_indexed_layout():
    digest = digest_bytes(b"record")
    update = decode_update(make_log(AGENT, digest, block_number=9))
    assert update.agent.lower() == AGENT
    assert update.digest == digest
    assert update.block_number == 9
    assert update.tx_hash.startswith("0x")


def test_decode_data_only_layout():
    digest = digest_bytes(b"record")
    raw = {"topics": [EVENT_TOPIC], "data": abi_encode(["address", "bytes32"], [AGENT, digest])}
    update = decode_update(raw)
    assert update.agent.lower() == AGENT
    assert update.digest == digest


@pytest.mark.parametrize("raw", [
    {"topics": [HexBytes(b"\x01" * 32)], "data": b""},
    {"topics": [EVENT_TOPIC, HexBytes(b"\x00" * 32)], "data": b"\x01" * 5},
    {"topics": [EVENT_TOPIC], "data": b"\x00" * 3},
    {"data": b""},
    None,
])
def test_decode_rejects_malformed_logs(raw):
    with pytest.raises(DecodeError):
        decode_update(raw)


# --- reads ---

def test_zero_pointer_is_not_found():
    w3 = _mock_w3()
    w3.eth.contract.return_value.functions.getLastMemoryHash.return_value.call.return_value = b"\x00" * 32
    with pytest.raises(NotFound):
        run(_client(w3).get_pointer())


def test_pointer_is_returned_as_cid(codec):
    w3 = _mock_w3()
    digest = digest_bytes(b"head")
    w3.eth.contract.return_value.functions.getLastMemoryHash.return_value.call.return_value = digest
    client = _client(w3)
    assert run(client.get_pointer()) == codec.cid_from_digest(digest)
    assert run(client.get_digest(AGENT)) == digest


def test_rpc_read_failure_is_transaction_failure():
    w3 = _mock_w3()
    w3.eth.contract.return_value.functions.getLastMemoryHash.return_value.call.side_effect = OSError("down")
    with pytest.raises(TransactionFailure):
        run(_client(w3).get_digest())


# --- writes ---

def test_set_pointer_without_key_is_unauthorized():
    client = _client(_mock_w3(), key="")
    assert client.agent_address.lower() == AGENT
    with pytest.raises(Unauthorized):
        run(client.set_pointer(b"\x01" * 32))


def test_set_pointer_rejects_wrong_digest_size():
    with pytest.raises(ValueError):
        run(_client(_mock_w3()).set_pointer(b"\x01" * 20))


def test_set_pointer_success_returns_receipt():
    w3 = _mock_w3()
    client = _client(w3)
    digest = digest_bytes(b"next")
    receipt = run(client.set_pointer(digest))
    assert receipt.tx_hash == "0x" + "ab" * 32
    assert receipt.block_number == 7
    assert receipt.gas_used == 42_000
    assert receipt.digest == "0x" + digest.hex()
    w3.eth.contract.return_value.functions.setLastMemoryHash.assert_called_with(digest)
    assert client.get_status()["tx_count"] == 1


def test_gas_estimate_failure_falls_back_to_default_limit():
    w3 = _mock_w3()
    w3.eth.estimate_gas.side_effect = OSError("estimate unavailable")
    run(_client(w3).set_pointer(b"\x01" * 32))
    tx = w3.eth.account.sign_transaction.call_args[0][0]
    assert tx["gas"] == 200_000


def test_reverted_receipt_is_transaction_failure():
    w3 = _mock_w3()
    w3.eth.wait_for_transaction_receipt.return_value = {"status": 0}
    with pytest.raises(TransactionFailure) as excinfo:
        run(_client(w3).set_pointer(b"\x01" * 32))
    assert excinfo.value.tx_hash == "0x" + "ab" * 32


def test_authorization_revert_is_unauthorized():
    w3 = _mock_w3()
    w3.eth.estimate_gas.side_effect = ContractLogicError("execution reverted: Unauthorized")
    with pytest.raises(Unauthorized):
        run(_client(w3).set_pointer(b"\x01" * 32))
    w3.eth.send_raw_transaction.assert_not_called()


def test_other_revert_is_transaction_failure():
    w3 = _mock_w3()
    w3.eth.estimate_gas.side_effect = ContractLogicError("execution reverted: paused")
    with pytest.raises(TransactionFailure):
        run(_client(w3).set_pointer(b"\x01" * 32))


@pytest.mark.parametrize("digest", [32, None, "0xnothex", "0x" + "01" * 31, [1] * 32])
def test_set_pointer_rejects_malformed_digests(digest):
    w3 = _mock_w3()
    with pytest.raises(ValueError):
        run(_client(w3).set_pointer(digest))
    w3.eth.send_raw_transaction.assert_not_called()


def test_set_pointer_accepts_hex_digest():
    w3 = _mock_w3()
    digest = digest_bytes(b"hex")
    receipt = run(_client(w3).set_pointer("0x" + digest.hex()))
    assert receipt.digest == "0x" + digest.hex()
