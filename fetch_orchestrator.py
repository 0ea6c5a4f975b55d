# fetch_orchestrator.py
# Sequential per-address fetch sessions on top of EtherscanClient.
# - Two calls per address (txlist, then tokentx) with a fixed pause between them
# - Fixed pause between addresses, none after the last
# - No parallel requests: Etherscan free keys are rate limited
# - One address failing never stops the session; failures are kept for retry
# - Progress is reported through a callback before each address

import time
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Tuple, Union

from address_book import ParsedAddress, parse_address_token
from explorer_client import EtherscanClient, ExplorerError, NativeTransfer, TokenTransfer
from sanitize import normalize_address

# ---------------- Configuration ----------------
INTER_CALL_DELAY_S = 0.3
INTER_ADDRESS_DELAY_S = 0.5

LOG = logging.getLogger("fetch_orchestrator")


class SessionState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass(frozen=True)
class AddressDataset:
    address: str
    nickname: Optional[str]
    native_transfers: Tuple[NativeTransfer, ...] = ()
    token_transfers: Tuple[TokenTransfer, ...] = ()

    @property
    def label(self) -> str:
        return self.nickname or self.address


@dataclass(frozen=True)
class FailureRecord:
    address: str
    nickname: Optional[str]
    error: str

    @property
    def label(self) -> str:
        return self.nickname or self.address


@dataclass(frozen=True)
class FetchProgress:
    index: int      # 1-based position of the address being fetched
    total: int
    address: str
    nickname: Optional[str] = None

    @property
    def label(self) -> str:
        return self.nickname or self.address


@dataclass(frozen=True)
class FetchResult:
    datasets: Tuple[AddressDataset, ...]
    failures: Tuple[FailureRecord, ...]


@dataclass(frozen=True)
class TransactionStats:
    total_addresses: int
    native_transfers: int
    token_transfers: int
    failed_addresses: int


Outcome = Union[AddressDataset, FailureRecord]
ProgressCallback = Callable[[FetchProgress], None]


def _as_parsed(item: Union[str, ParsedAddress]) -> ParsedAddress:
    if isinstance(item, ParsedAddress):
        return ParsedAddress(normalize_address(item.address), item.nickname)
    return parse_address_token(item)


class FetchOrchestrator:
    """
    Owns the datasets and failures of one fetch session.

    Callers get immutable snapshots; the aggregate is only mutated under a lock,
    so a front-end may read it from another thread while a session runs.
    Retries are explicit: one address, one attempt per call.
    """

    def __init__(
        self,
        client: Optional[EtherscanClient] = None,
        inter_call_delay: float = INTER_CALL_DELAY_S,
        inter_address_delay: float = INTER_ADDRESS_DELAY_S,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client or EtherscanClient()
        self.inter_call_delay = inter_call_delay
        self.inter_address_delay = inter_address_delay
        self._sleep = sleep

        self._lock = threading.Lock()
        self._state = SessionState.IDLE
        self._busy = False
        self._cancel_requested = False
        self._datasets: Dict[str, AddressDataset] = {}
        self._failures: Dict[str, FailureRecord] = {}

    # ---- State ----
    @property
    def state(self) -> SessionState:
        return self._state

    def snapshot(self) -> FetchResult:
        with self._lock:
            return FetchResult(tuple(self._datasets.values()), tuple(self._failures.values()))

    @property
    def datasets(self) -> Tuple[AddressDataset, ...]:
        return self.snapshot().datasets

    @property
    def failures(self) -> Tuple[FailureRecord, ...]:
        return self.snapshot().failures

    def stats(self) -> TransactionStats:
        snap = self.snapshot()
        return TransactionStats(
            total_addresses=len(snap.datasets),
            native_transfers=sum(len(d.native_transfers) for d in snap.datasets),
            token_transfers=sum(len(d.token_transfers) for d in snap.datasets),
            failed_addresses=len(snap.failures),
        )

    def cancel(self) -> None:
        """Stop a running session before its next address."""
        with self._lock:
            self._cancel_requested = True

    def reset(self) -> None:
        with self._lock:
            if self._state is SessionState.RUNNING or self._busy:
                raise RuntimeError("Cannot reset while a fetch is in progress")
            self._datasets = {}
            self._failures = {}
            self._cancel_requested = False
            self._state = SessionState.IDLE

    # ---- Fetching ----
    def _fetch_one(self, parsed: ParsedAddress, api_key: Optional[str]) -> Outcome:
        try:
            native = self.client.get_native_transfers(parsed.address, api_key=api_key)
            self._sleep(self.inter_call_delay)
            tokens = self.client.get_token_transfers(parsed.address, api_key=api_key)
        except ExplorerError as e:
            LOG.error("Fetch failed for %s: %s", parsed.label, e)
            return FailureRecord(parsed.address, parsed.nickname, str(e))

        LOG.info("Fetched %s: %d native, %d token transfers",
                 parsed.label, len(native), len(tokens))
        return AddressDataset(parsed.address, parsed.nickname, tuple(native), tuple(tokens))

    def _record(self, outcome: Outcome) -> None:
        # An address lives in exactly one of the two collections
        with self._lock:
            if isinstance(outcome, AddressDataset):
                self._failures.pop(outcome.address, None)
                self._datasets[outcome.address] = outcome
            else:
                self._datasets.pop(outcome.address, None)
                self._failures[outcome.address] = outcome

    def fetch_all(
        self,
        addresses: Iterable[Union[str, ParsedAddress]],
        api_key: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> FetchResult:
        """Run a full session over `addresses`, replacing any previous results."""
        targets = [_as_parsed(a) for a in addresses]
        with self._lock:
            if self._state is SessionState.RUNNING or self._busy:
                raise RuntimeError("A fetch is already in progress")
            self._state = SessionState.RUNNING
            self._cancel_requested = False
            self._datasets = {}
            self._failures = {}

        total = len(targets)
        finished = False
        LOG.info("Fetch session started for %d addresses", total)
        try:
            for i, parsed in enumerate(targets):
                if self._cancel_requested:
                    LOG.info("Fetch session cancelled after %d of %d addresses", i, total)
                    break
                if on_progress:
                    on_progress(FetchProgress(i + 1, total, parsed.address, parsed.nickname))
                self._record(self._fetch_one(parsed, api_key))
                if i < total - 1:
                    self._sleep(self.inter_address_delay)
            else:
                finished = True
        finally:
            with self._lock:
                self._state = SessionState.COMPLETED if finished else SessionState.IDLE
                self._cancel_requested = False

        result = self.snapshot()
        LOG.info("Fetch session finished: %d ok, %d failed",
                 len(result.datasets), len(result.failures))
        return result

    def retry(
        self,
        address: Union[str, ParsedAddress],
        api_key: Optional[str] = None,
        nickname: Optional[str] = None,
    ) -> Outcome:
        """Fetch one address again and fold the outcome into the aggregate."""
        parsed = _as_parsed(address)
        with self._lock:
            if self._state is SessionState.RUNNING or self._busy:
                raise RuntimeError("A fetch is already in progress")
            self._busy = True
            if nickname is None:
                nickname = parsed.nickname
            if nickname is None:
                known = self._failures.get(parsed.address) or self._datasets.get(parsed.address)
                nickname = known.nickname if known else None

        try:
            LOG.info("Retrying %s", nickname or parsed.address)
            outcome = self._fetch_one(ParsedAddress(parsed.address, nickname), api_key)
            self._record(outcome)
            return outcome
        finally:
            with self._lock:
                self._busy = False


# ---------------- Module-level helpers ----------------
def fetch_all(
    addresses: Iterable[Union[str, ParsedAddress]],
    api_key: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
    client: Optional[EtherscanClient] = None,
) -> FetchResult:
    return FetchOrchestrator(client=client).fetch_all(addresses, api_key, on_progress)


def retry_one(
    address: Union[str, ParsedAddress],
    api_key: Optional[str] = None,
    nickname: Optional[str] = None,
    client: Optional[EtherscanClient] = None,
) -> Outcome:
    return FetchOrchestrator(client=client).retry(address, api_key, nickname)
