"""
Ledger client adapter.

``LedgerClient`` is the swappable interface the object store talks to.
``Web3LedgerClient`` implements it against an EVM JSON-RPC endpoint (for example
a Hedera JSON-RPC relay) and a registry contract that mints one single-unit
token per object and keeps the envelope bytes as that token's record.

Every write follows submit -> poll receipt -> return. Polling is driven by
``ReceiptPoller`` so timeout behaviour can be tested without a ledger.
"""

from __future__ import annotations

import abc
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from aws_lambda_powertools import Logger
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from ledgerdrive.config import Settings
from ledgerdrive.credentials import CredentialsProvider, credentials_provider
from ledgerdrive.errors import BadRequestError, ConfigurationError, LedgerRejected, LedgerTimeout, ObjectNotFound

logger = Logger(service="ledgerdrive", child=True)

RPC_TIMEOUT_SECONDS = 20
TOKEN_ID_PATTERN = re.compile(r"^\d{1,78}$")

REGISTRY_ABI = [
    {
        "inputs": [
            {"internalType": "string", "name": "name", "type": "string"},
            {"internalType": "string", "name": "symbol", "type": "string"},
            {"internalType": "bytes", "name": "record", "type": "bytes"},
        ],
        "name": "mint",
        "outputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "uint256", "name": "tokenId", "type": "uint256"},
            {"internalType": "bytes", "name": "record", "type": "bytes"},
        ],
        "name": "updateRecord",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}],
        "name": "burn",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}],
        "name": "recordInfo",
        "outputs": [
            {"internalType": "bytes", "name": "record", "type": "bytes"},
            {"internalType": "bool", "name": "deleted", "type": "bool"},
            {"internalType": "address", "name": "treasury", "type": "address"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "tokenId", "type": "uint256"},
            {"indexed": True, "internalType": "address", "name": "treasury", "type": "address"},
        ],
        "name": "RecordMinted",
        "type": "event",
    },
]


@dataclass(frozen=True)
class TokenParams:
    name: str
    symbol: str


@dataclass(frozen=True)
class LedgerWriteResult:
    object_id: str
    transaction_id: str


@dataclass(frozen=True)
class LedgerRecord:
    object_id: str
    envelope: bytes
    deleted: bool = False
    treasury: str | None = None


class LedgerClient(abc.ABC):
    """Interface to the distributed ledger used as the authoritative record store."""

    network: str = "unknown"

    @abc.abstractmethod
    def submit_create(self, envelope: bytes, token_params: TokenParams) -> LedgerWriteResult:
        """Mint a single-unit token carrying ``envelope``; block until consensus."""

    @abc.abstractmethod
    def submit_update(self, object_id: str, envelope: bytes) -> str:
        """Replace the token record; returns the transaction id."""

    @abc.abstractmethod
    def submit_delete(self, object_id: str) -> str:
        """Burn the token; returns the transaction id."""

    @abc.abstractmethod
    def query_record(self, object_id: str) -> LedgerRecord:
        """Read the token record. Raises ``ObjectNotFound`` for unknown ids."""


@dataclass(frozen=True)
class BackoffPolicy:
    max_polls: int = 10
    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 4.0
    timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            max_polls=settings.receipt_max_polls,
            initial_delay=settings.receipt_initial_delay_ms / 1000.0,
            max_delay=settings.receipt_max_delay_ms / 1000.0,
            timeout=float(settings.receipt_timeout_seconds),
        )


POLL_PENDING = "pending"
POLL_CONFIRMED = "confirmed"
POLL_TIMED_OUT = "timed_out"


@dataclass
class ReceiptPoller:
    """Bounded exponential-backoff poll for a transaction receipt.

    States: ``pending`` -> ``confirmed`` | ``timed_out``. The poll budget and the
    wall-clock deadline are both hard limits.
    """

    fetch: Callable[[], Any]
    policy: BackoffPolicy = field(default_factory=BackoffPolicy)
    transaction_id: str | None = None
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    state: str = POLL_PENDING
    polls: int = 0
    delays: list[float] = field(default_factory=list)
    receipt: Any = None
    _started_at: float | None = None
    _next_delay: float | None = None

    def _elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self.clock() - self._started_at

    def step(self) -> str:
        if self.state != POLL_PENDING:
            return self.state
        if self._started_at is None:
            self._started_at = self.clock()
            self._next_delay = self.policy.initial_delay

        self.polls += 1
        receipt = self.fetch()
        if receipt is not None:
            self.receipt = receipt
            self.state = POLL_CONFIRMED
            return self.state

        remaining = self.policy.timeout - self._elapsed()
        if self.polls >= self.policy.max_polls or remaining <= 0:
            self.state = POLL_TIMED_OUT
            return self.state

        delay = min(self._next_delay or 0.0, self.policy.max_delay, remaining)
        self.delays.append(delay)
        self.sleep(delay)
        self._next_delay = min((self._next_delay or 0.0) * self.policy.multiplier, self.policy.max_delay)
        return self.state

    def run(self) -> Any:
        while self.step() == POLL_PENDING:
            pass
        if self.state == POLL_TIMED_OUT:
            raise LedgerTimeout(self.transaction_id, self.polls, self._elapsed())
        return self.receipt


def wait_for_receipt(
    fetch: Callable[[], Any],
    policy: BackoffPolicy,
    transaction_id: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Any:
    return ReceiptPoller(fetch=fetch, policy=policy, transaction_id=transaction_id, sleep=sleep, clock=clock).run()


def parse_token_id(object_id: str) -> int:
    candidate = str(object_id or "").strip()
    if not TOKEN_ID_PATTERN.fullmatch(candidate):
        raise BadRequestError("object id must be a ledger token id")
    return int(candidate)


def _hex_id(value: Any) -> str:
    raw = value.hex() if hasattr(value, "hex") else str(value)
    return raw if raw.startswith("0x") else f"0x{raw}"


def _rpc_reason(exc: Exception) -> str:
    args = getattr(exc, "args", ())
    if args and isinstance(args[0], dict):
        return str(args[0].get("message") or args[0])
    return str(exc) or exc.__class__.__name__


class Web3LedgerClient(LedgerClient):
    def __init__(
        self,
        web3: Any,
        contract_address: str,
        chain_id: int,
        credentials: CredentialsProvider,
        gas_limit: int,
        backoff: BackoffPolicy | None = None,
        network: str = "testnet",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._web3 = web3
        self._contract = web3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=REGISTRY_ABI)
        self._chain_id = chain_id
        self._credentials = credentials
        self._gas_limit = gas_limit
        self._backoff = backoff or BackoffPolicy()
        self._sleep = sleep
        self._clock = clock
        self.network = network

    @classmethod
    def from_settings(cls, settings: Settings, credentials: CredentialsProvider | None = None) -> "Web3LedgerClient":
        if not settings.ledger_rpc_url:
            raise ConfigurationError("LEDGER_RPC_URL is required")
        if not settings.ledger_registry_contract:
            raise ConfigurationError("LEDGER_REGISTRY_CONTRACT is required")
        web3 = Web3(Web3.HTTPProvider(settings.ledger_rpc_url, request_kwargs={"timeout": RPC_TIMEOUT_SECONDS}))
        return cls(
            web3=web3,
            contract_address=settings.ledger_registry_contract,
            chain_id=settings.ledger_chain_id,
            credentials=credentials or credentials_provider(settings),
            gas_limit=settings.gas_limit,
            backoff=BackoffPolicy.from_settings(settings),
            network=settings.ledger_network,
        )

    def _fetch_receipt(self, tx_hash: Any) -> Any:
        try:
            return self._web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    def _submit(self, contract_call: Any, action: str) -> tuple[str, Any]:
        with self._credentials() as operator:
            account = Account.from_key(operator.private_key)
            if operator.account_id and account.address.lower() != operator.account_id:
                raise ConfigurationError("operator key does not match OPERATOR_ACCOUNT_ID")
            try:
                transaction = contract_call.build_transaction(
                    {
                        "from": account.address,
                        "chainId": self._chain_id,
                        "nonce": self._web3.eth.get_transaction_count(account.address, "pending"),
                        "gas": self._gas_limit,
                        "gasPrice": self._web3.eth.gas_price,
                    }
                )
                signed = self._web3.eth.account.sign_transaction(transaction, private_key=operator.private_key)
                tx_hash = self._web3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as exc:
                raise LedgerRejected(_rpc_reason(exc)) from exc
            except (Web3Exception, ValueError) as exc:
                raise LedgerRejected(_rpc_reason(exc)) from exc

        transaction_id = _hex_id(tx_hash)
        logger.info("Ledger transaction submitted", extra={"action": action, "transaction_id": transaction_id})

        receipt = wait_for_receipt(
            lambda: self._fetch_receipt(tx_hash),
            self._backoff,
            transaction_id=transaction_id,
            sleep=self._sleep,
            clock=self._clock,
        )
        if receipt.get("status") != 1:
            raise LedgerRejected("transaction reverted", transaction_id=transaction_id)

        logger.info("Ledger transaction confirmed", extra={"action": action, "transaction_id": transaction_id})
        return transaction_id, receipt

    def submit_create(self, envelope: bytes, token_params: TokenParams) -> LedgerWriteResult:
        call = self._contract.functions.mint(token_params.name, token_params.symbol, envelope)
        transaction_id, receipt = self._submit(call, "mint")
        events = self._contract.events.RecordMinted().process_receipt(receipt, errors=DISCARD)
        if not events:
            raise LedgerRejected("receipt carries no RecordMinted event", transaction_id=transaction_id)
        return LedgerWriteResult(object_id=str(events[0]["args"]["tokenId"]), transaction_id=transaction_id)

    def submit_update(self, object_id: str, envelope: bytes) -> str:
        call = self._contract.functions.updateRecord(parse_token_id(object_id), envelope)
        transaction_id, _ = self._submit(call, "updateRecord")
        return transaction_id

    def submit_delete(self, object_id: str) -> str:
        call = self._contract.functions.burn(parse_token_id(object_id))
        transaction_id, _ = self._submit(call, "burn")
        return transaction_id

    def query_record(self, object_id: str) -> LedgerRecord:
        token_id = parse_token_id(object_id)
        try:
            record, deleted, treasury = self._contract.functions.recordInfo(token_id).call()
        except ContractLogicError as exc:
            raise ObjectNotFound(f"Ledger token not found: {object_id}") from exc
        except (Web3Exception, ValueError) as exc:
            raise LedgerRejected(f"record query failed: {_rpc_reason(exc)}") from exc
        return LedgerRecord(object_id=str(token_id), envelope=bytes(record), deleted=bool(deleted), treasury=treasury)
