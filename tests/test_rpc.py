"""
Tests for the JSON-RPC client against a mocked HTTP transport.
"""
import asyncio

import httpx
import pytest
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature

from stake_o_matic.errors import RPCError
from stake_o_matic.rpc import MAX_GET_BLOCKS_RANGE, MAX_SIGNATURE_STATUS_BATCH, SolanaRPCClient
from tests.common import RecordingNode


def _call(node, coroutine_factory, **kwargs):
    async def _run():
        async with SolanaRPCClient("http://rpc.test", transport=httpx.MockTransport(node), **kwargs) as client:
            return await coroutine_factory(client)

    return asyncio.run(_run())


def test_requires_endpoint():
    with pytest.raises(RPCError):
        SolanaRPCClient("  ")


def test_epoch_info():
    node = RecordingNode(
        {"getEpochInfo": lambda params: {"result": {"epoch": 10, "absoluteSlot": 1_000_000, "slotIndex": 5, "slotsInEpoch": 432_000}}}
    )

    info = _call(node, lambda client: client.get_epoch_info())

    assert (info.epoch, info.absolute_slot, info.slot_index, info.slots_in_epoch) == (10, 1_000_000, 5, 432_000)


def test_rpc_error_is_raised_without_retry():
    node = RecordingNode({"getEpochInfo": lambda params: {"error": {"code": -32005, "message": "Node is behind"}}})

    with pytest.raises(RPCError, match="Node is behind"):
        _call(node, lambda client: client.get_epoch_info())
    assert len(node.calls) == 1


def test_http_error_is_retried_up_to_max_attempts(monkeypatch):
    monkeypatch.setattr(SolanaRPCClient, "_compute_retry_delay", lambda self, attempt, status_code: 0.0)
    node = RecordingNode({"getBalance": lambda params: httpx.Response(503)})

    with pytest.raises(RPCError, match="HTTP error"):
        _call(node, lambda client: client.get_balance(Pubkey.new_unique()), max_attempts=3)
    assert len(node.calls) == 3


def test_get_blocks_is_chunked():
    def blocks(params):
        start, end = params
        return {"result": [start, end]}

    node = RecordingNode({"getBlocks": blocks})
    end_slot = 2 * MAX_GET_BLOCKS_RANGE + 10

    result = _call(node, lambda client: client.get_blocks(0, end_slot))

    assert [params for _, params in node.calls] == [
        [0, MAX_GET_BLOCKS_RANGE - 1],
        [MAX_GET_BLOCKS_RANGE, 2 * MAX_GET_BLOCKS_RANGE - 1],
        [2 * MAX_GET_BLOCKS_RANGE, end_slot],
    ]
    assert result[-1] == end_slot


def test_vote_accounts_include_delinquent():
    current, delinquent = Pubkey.new_unique(), Pubkey.new_unique()
    node = RecordingNode(
        {
            "getVoteAccounts": lambda params: {
                "result": {
                    "current": [{"nodePubkey": str(current), "votePubkey": str(Pubkey.new_unique()), "rootSlot": 99}],
                    "delinquent": [
                        {"nodePubkey": str(delinquent), "votePubkey": str(Pubkey.new_unique()), "rootSlot": 7},
                        {"nodePubkey": "garbage", "votePubkey": "garbage"},
                    ],
                }
            }
        }
    )

    records = _call(node, lambda client: client.get_vote_accounts())

    assert [(record.identity, record.root_slot, record.delinquent) for record in records] == [
        (current, 99, False),
        (delinquent, 7, True),
    ]


def test_account_info():
    address, owner = Pubkey.new_unique(), Pubkey.new_unique()
    node = RecordingNode(
        {
            "getAccountInfo": lambda params: {
                "result": {
                    "value": {
                        "lamports": 42,
                        "owner": str(owner),
                        "data": {"parsed": {"type": "initialized"}, "program": "stake"},
                    }
                }
            }
        }
    )

    info = _call(node, lambda client: client.get_account_info(address))

    assert (info.address, info.lamports, info.owner, info.state) == (address, 42, owner, "initialized")
    assert node.calls[0][1] == [str(address), {"encoding": "jsonParsed"}]


def test_missing_account():
    node = RecordingNode({"getAccountInfo": lambda params: {"result": {"value": None}}})
    assert _call(node, lambda client: client.get_account_info(Pubkey.new_unique())) is None


def test_recent_blockhash_reads_fee_per_signature():
    blockhash = Hash(bytes([3] * 32))
    node = RecordingNode(
        {
            "getLatestBlockhash": lambda params: {
                "result": {"value": {"blockhash": str(blockhash), "lastValidBlockHeight": 321}}
            },
            "getFeeForMessage": lambda params: {"result": {"value": 5000}},
        }
    )

    recent = _call(node, lambda client: client.get_recent_blockhash(Pubkey.new_unique()))

    assert (recent.blockhash, recent.last_valid_block_height, recent.lamports_per_signature) == (blockhash, 321, 5000)


def test_signature_statuses_are_chunked():
    signatures = [Signature.new_unique() for _ in range(MAX_SIGNATURE_STATUS_BATCH + 1)]

    def statuses(params):
        (chunk,) = params
        return {
            "result": {
                "value": [
                    {"slot": 5, "confirmations": None, "err": None, "confirmationStatus": "finalized"} for _ in chunk
                ]
            }
        }

    node = RecordingNode({"getSignatureStatuses": statuses})

    result = _call(node, lambda client: client.get_signature_statuses(signatures))

    assert [len(params[0]) for _, params in node.calls] == [MAX_SIGNATURE_STATUS_BATCH, 1]
    assert len(result) == len(signatures)
    assert all(status.finalized for status in result)


def test_blockhash_validity():
    node = RecordingNode({"isBlockhashValid": lambda params: {"result": {"value": False}}})
    assert not _call(node, lambda client: client.is_blockhash_valid(Hash.default()))


def test_non_json_body_is_an_rpc_error():
    node = RecordingNode({"getEpochInfo": lambda params: httpx.Response(200, text="<html>upstream hiccup</html>")})

    with pytest.raises(RPCError, match="Invalid JSON response on method getEpochInfo"):
        _call(node, lambda client: client.get_epoch_info())
    assert len(node.calls) == 1


def test_non_object_body_is_an_rpc_error():
    node = RecordingNode({"getBalance": lambda params: httpx.Response(200, json=[1, 2, 3])})

    with pytest.raises(RPCError, match="Invalid JSON response"):
        _call(node, lambda client: client.get_balance(Pubkey.new_unique()))


def test_non_json_body_is_retried(monkeypatch):
    monkeypatch.setattr(SolanaRPCClient, "_compute_retry_delay", lambda self, attempt, status_code: 0.0)
    responses = [httpx.Response(200, text="<html>upstream hiccup</html>"), {"result": {"value": 7}}]
    node = RecordingNode({"getBalance": lambda params: responses.pop(0)})

    assert _call(node, lambda client: client.get_balance(Pubkey.new_unique()), max_attempts=2) == 7
    assert len(node.calls) == 2
