"""Solana JSON-RPC client used for every chain read and write of a run."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx
from solders.hash import Hash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from stake_o_matic.classifier import EpochSchedule
from stake_o_matic.errors import RPCError


RATE_LIMIT_STATUS_CODES = {429}
RETRY_BACKOFF_SECONDS = 1.0
MAX_RETRY_BACKOFF_SECONDS = 12.0
RETRY_BACKOFF_JITTER = 0.25
MAX_SIGNATURE_STATUS_BATCH = 256
MAX_GET_BLOCKS_RANGE = 500_000


def safe_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def summarize_payload(payload: Any, limit: int = 800) -> str:
    try:
        serialized = json.dumps(payload, default=str)
    except TypeError:
        serialized = str(payload)
    if len(serialized) > limit:
        return serialized[: limit - 3] + "..."
    return serialized


@dataclass(frozen=True)
class EpochInfo:
    epoch: int
    absolute_slot: int
    slot_index: int
    slots_in_epoch: int


@dataclass(frozen=True)
class ValidatorRecord:
    identity: Pubkey
    vote_key: Pubkey
    root_slot: int
    delinquent: bool = False


@dataclass(frozen=True)
class AccountInfo:
    address: Pubkey
    lamports: int
    owner: Pubkey
    state: Optional[str]


@dataclass(frozen=True)
class RecentBlockhash:
    blockhash: Hash
    last_valid_block_height: int
    lamports_per_signature: int


@dataclass(frozen=True)
class SignatureStatus:
    slot: Optional[int]
    confirmations: Optional[int]
    err: Any
    confirmation_status: Optional[str]

    @property
    def finalized(self) -> bool:
        return self.confirmations is None or self.confirmation_status == "finalized"


class SolanaRPCClient:
    def __init__(
        self,
        endpoint: str,
        concurrency_limit: int = 4,
        timeout: float = 30.0,
        max_attempts: int = 1,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not endpoint or not endpoint.strip():
            raise RPCError("An RPC endpoint must be provided")
        self.endpoint = endpoint.strip()
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._semaphore = asyncio.Semaphore(max(1, concurrency_limit))
        self._request_id = 0
        self.logger = logging.getLogger(self.__class__.__name__)

    async def __aenter__(self) -> "SolanaRPCClient":
        self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        if self._client is None:
            raise RuntimeError("RPC client not initialized; use async context manager")

        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": method,
            "params": params or [],
        }
        payload_summary = summarize_payload(payload)

        attempt = 0
        while True:
            attempt += 1
            async with self._semaphore:
                status_code: Optional[int] = None
                try:
                    self.logger.debug("RPC Request -> method=%s attempt=%d payload=%s", method, attempt, payload_summary)
                    response = await self._client.post(self.endpoint, json=payload)
                    response.raise_for_status()
                    data = response.json()
                    if not isinstance(data, dict):
                        raise ValueError(f"expected a JSON object, got {summarize_payload(data, limit=80)}")
                    self.logger.debug(
                        "RPC Response <- method=%s attempt=%d status=%s body=%s",
                        method,
                        attempt,
                        response.status_code,
                        summarize_payload(data, limit=400),
                    )
                except httpx.HTTPStatusError as exc:
                    status_code = exc.response.status_code if exc.response is not None else None
                    self.logger.warning("HTTP error on %s attempt %d via %s: %s", method, attempt, self.endpoint, exc)
                    if attempt >= self._max_attempts:
                        raise RPCError(f"HTTP error on method {method}: {exc}") from exc
                except httpx.RequestError as exc:
                    self.logger.warning("Request error on %s attempt %d via %s: %s", method, attempt, self.endpoint, exc)
                    if attempt >= self._max_attempts:
                        raise RPCError(f"Request error on method {method}: {exc}") from exc
                except ValueError as exc:
                    self.logger.warning("Invalid JSON response on %s attempt %d via %s: %s", method, attempt, self.endpoint, exc)
                    if attempt >= self._max_attempts:
                        raise RPCError(f"Invalid JSON response on method {method}: {exc}") from exc
                else:
                    if "error" in data:
                        message = data["error"].get("message", "Unknown RPC error")
                        self.logger.warning("RPC error on %s attempt %d: %s", method, attempt, message)
                        if attempt >= self._max_attempts:
                            raise RPCError(f"RPC error on method {method}: {message}")
                    else:
                        return data.get("result")

            await asyncio.sleep(self._compute_retry_delay(attempt, status_code))

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    def _compute_retry_delay(self, attempt: int, status_code: Optional[int]) -> float:
        base = RETRY_BACKOFF_SECONDS
        if status_code in RATE_LIMIT_STATUS_CODES:
            backoff = base * (2 ** (attempt - 1))
        else:
            backoff = base * attempt
        delay = min(backoff, MAX_RETRY_BACKOFF_SECONDS)
        jitter = random.uniform(0.0, RETRY_BACKOFF_JITTER)
        return delay + jitter

    async def get_epoch_info(self) -> EpochInfo:
        result = await self.request("getEpochInfo")
        if not result:
            raise RPCError("Failed to retrieve epoch info")
        return EpochInfo(
            epoch=int(result["epoch"]),
            absolute_slot=int(result["absoluteSlot"]),
            slot_index=safe_int(result.get("slotIndex")) or 0,
            slots_in_epoch=safe_int(result.get("slotsInEpoch")) or 0,
        )

    async def get_epoch_schedule(self) -> EpochSchedule:
        result = await self.request("getEpochSchedule")
        if not result:
            raise RPCError("Failed to retrieve epoch schedule")
        return EpochSchedule(
            slots_per_epoch=int(result["slotsPerEpoch"]),
            first_normal_epoch=safe_int(result.get("firstNormalEpoch")) or 0,
            first_normal_slot=safe_int(result.get("firstNormalSlot")) or 0,
            warmup=bool(result.get("warmup", False)),
        )

    async def get_minimum_ledger_slot(self) -> int:
        result = await self.request("minimumLedgerSlot")
        slot = safe_int(result)
        if slot is None:
            raise RPCError(f"Unexpected minimumLedgerSlot result: {summarize_payload(result)}")
        return slot

    async def get_blocks(self, start_slot: int, end_slot: int) -> List[int]:
        blocks: List[int] = []
        chunk_start = start_slot
        while chunk_start <= end_slot:
            chunk_end = min(end_slot, chunk_start + MAX_GET_BLOCKS_RANGE - 1)
            result = await self.request("getBlocks", [chunk_start, chunk_end])
            blocks.extend(int(slot) for slot in result or [])
            chunk_start = chunk_end + 1
        return blocks

    async def get_leader_schedule(self, slot: int) -> Dict[str, List[int]]:
        result = await self.request("getLeaderSchedule", [slot])
        if result is None:
            raise RPCError(f"No leader schedule available for slot {slot}")
        return {identity: [int(offset) for offset in offsets] for identity, offsets in result.items()}

    async def get_vote_accounts(self) -> List[ValidatorRecord]:
        result = await self.request("getVoteAccounts") or {}
        records: List[ValidatorRecord] = []
        for category, delinquent in (("current", False), ("delinquent", True)):
            for entry in result.get(category, []) or []:
                try:
                    identity = Pubkey.from_string(entry["nodePubkey"])
                    vote_key = Pubkey.from_string(entry["votePubkey"])
                except (KeyError, ValueError) as exc:
                    self.logger.warning("Skipping malformed vote account entry %s: %s", summarize_payload(entry), exc)
                    continue
                records.append(
                    ValidatorRecord(
                        identity=identity,
                        vote_key=vote_key,
                        root_slot=safe_int(entry.get("rootSlot")) or 0,
                        delinquent=delinquent,
                    )
                )
        return records

    async def get_account_info(self, address: Pubkey) -> Optional[AccountInfo]:
        result = await self.request("getAccountInfo", [str(address), {"encoding": "jsonParsed"}])
        value = (result or {}).get("value")
        if value is None:
            return None
        data = value.get("data")
        parsed = data.get("parsed") if isinstance(data, dict) else None
        state = parsed.get("type") if isinstance(parsed, dict) else None
        return AccountInfo(
            address=address,
            lamports=int(value.get("lamports", 0)),
            owner=Pubkey.from_string(value["owner"]),
            state=state,
        )

    async def get_balance(self, address: Pubkey) -> int:
        result = await self.request("getBalance", [str(address)])
        return int((result or {}).get("value", 0))

    async def get_recent_blockhash(self, payer: Pubkey) -> RecentBlockhash:
        result = await self.request("getLatestBlockhash")
        value = (result or {}).get("value")
        if not value:
            raise RPCError("Failed to retrieve latest blockhash")
        blockhash = Hash.from_string(value["blockhash"])

        # A message without instructions requires only the payer's signature.
        probe = Message.new_with_blockhash([], payer, blockhash)
        fee_result = await self.request("getFeeForMessage", [base64.b64encode(bytes(probe)).decode()])
        lamports_per_signature = safe_int((fee_result or {}).get("value"))
        if lamports_per_signature is None:
            raise RPCError(f"Blockhash {blockhash} expired before its fee could be determined")
        return RecentBlockhash(
            blockhash=blockhash,
            last_valid_block_height=safe_int(value.get("lastValidBlockHeight")) or 0,
            lamports_per_signature=lamports_per_signature,
        )

    async def send_transaction(self, transaction: Transaction) -> Signature:
        encoded = base64.b64encode(bytes(transaction)).decode()
        result = await self.request("sendTransaction", [encoded, {"encoding": "base64"}])
        return Signature.from_string(str(result))

    async def get_signature_statuses(self, signatures: Sequence[Signature]) -> List[Optional[SignatureStatus]]:
        statuses: List[Optional[SignatureStatus]] = []
        for start in range(0, len(signatures), MAX_SIGNATURE_STATUS_BATCH):
            chunk = [str(signature) for signature in signatures[start : start + MAX_SIGNATURE_STATUS_BATCH]]
            result = await self.request("getSignatureStatuses", [chunk])
            for entry in (result or {}).get("value") or [None] * len(chunk):
                if entry is None:
                    statuses.append(None)
                    continue
                statuses.append(
                    SignatureStatus(
                        slot=safe_int(entry.get("slot")),
                        confirmations=safe_int(entry.get("confirmations")),
                        err=entry.get("err"),
                        confirmation_status=entry.get("confirmationStatus"),
                    )
                )
        return statuses

    async def is_blockhash_valid(self, blockhash: Hash) -> bool:
        result = await self.request("isBlockhashValid", [str(blockhash), {"commitment": "processed"}])
        return bool((result or {}).get("value"))
