# explorer_client.py
# Etherscan (v2 multichain API) client for an address's transfer history.
# - txlist: native ETH transfers, tokentx: ERC-20 token transfers
# - Transport failures and non-2xx responses retry with exponential backoff
# - "No transactions found" is an empty result, not an error
# - NOTOK responses are terminal and keep the explorer's own message
# - Records are validated one by one; a bad record is dropped, not the batch
#
# API key: explicit argument > env ETHERSCAN_API_KEY > keys.json {"etherscan_api_key": ...} > public default

import os
import json
import re
import time
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from sanitize import is_valid_address, normalize_address

# ---------------- Configuration ----------------
ETHERSCAN_API_URL = os.getenv("ETHERSCAN_API_URL", "https://api.etherscan.io/v2/api")
CHAIN_ID = os.getenv("ETHERSCAN_CHAIN_ID", "1")  # Ethereum mainnet
DEFAULT_API_KEY = "YourEtherscanAPIKeyToken"
KEYS_PATH = "keys.json"

START_BLOCK = 0
END_BLOCK = 99999999
MAX_ATTEMPTS = 3
RETRY_BASE_DELAY_S = 1.0
REQUEST_TIMEOUT_S = 20
MAX_TOKEN_DECIMALS = 255  # ERC-20 decimals() is a uint8

ACTION_NATIVE = "txlist"
ACTION_TOKEN = "tokentx"
NO_TRANSACTIONS_MESSAGE = "No transactions found"

LOG = logging.getLogger("explorer_client")

_TX_HASH_RE = re.compile(r"0x[0-9a-fA-F]{64}")


# ---------------- Errors ----------------
class ExplorerError(RuntimeError):
    """Any failure fetching one sub-resource for one address."""


class TransportError(ExplorerError):
    """Network failure, non-2xx status or unreadable body, after all retries."""


class ApiError(ExplorerError):
    """The explorer answered with status 0 and an error message."""


class RecordValidationError(ValueError):
    """A single transfer record is missing or has malformed required fields."""


# ---------------- Helpers ----------------
def _load_keys(path: str = KEYS_PATH) -> Dict[str, str]:
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def resolve_api_key(api_key: Optional[str] = None, keys_path: str = KEYS_PATH) -> str:
    key = (api_key or "").strip()
    if key:
        return key
    key = os.getenv("ETHERSCAN_API_KEY", "").strip()
    if key:
        return key
    key = str(_load_keys(keys_path).get("etherscan_api_key") or "").strip()
    return key or DEFAULT_API_KEY


def _build_params(action: str, address: str, api_key: str, chain_id: str = CHAIN_ID) -> Dict[str, str]:
    return {
        "chainid": str(chain_id),
        "module": "account",
        "action": action,
        "address": address,
        "startblock": str(START_BLOCK),
        "endblock": str(END_BLOCK),
        "sort": "asc",
        "apikey": api_key,
    }


def _build_url(base_url: str, params: Dict[str, str]) -> str:
    return requests.Request("GET", base_url, params=params).prepare().url


def build_native_transfers_url(address: str, api_key: Optional[str] = None) -> str:
    return _build_url(ETHERSCAN_API_URL, _build_params(ACTION_NATIVE, address, resolve_api_key(api_key)))


def build_token_transfers_url(address: str, api_key: Optional[str] = None) -> str:
    return _build_url(ETHERSCAN_API_URL, _build_params(ACTION_TOKEN, address, resolve_api_key(api_key)))


def _masked(params: Dict[str, str]) -> Dict[str, str]:
    return {k: ("***" if k == "apikey" else v) for k, v in params.items()}


# ---------------- Records ----------------
def _field(record: Dict[str, Any], *names: str) -> str:
    for name in names:
        value = record.get(name)
        if value is not None:
            return str(value).strip()
    raise RecordValidationError(f"missing field {names[0]!r}")


def _uint_str(value: str, name: str) -> str:
    try:
        n = int(value)
    except ValueError:
        raise RecordValidationError(f"field {name!r} is not an integer: {value!r}") from None
    if n < 0:
        raise RecordValidationError(f"field {name!r} is negative: {value!r}")
    return str(n)


def _timestamp(value: str) -> str:
    ts = _uint_str(value, "timeStamp")
    # Must render as a ledger date later on
    try:
        datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise RecordValidationError(f"field 'timeStamp' out of range: {value!r}") from None
    return ts


def _address(value: str, name: str) -> str:
    if not is_valid_address(value):
        raise RecordValidationError(f"field {name!r} is not an address: {value!r}")
    return normalize_address(value)


def _tx_hash(value: str) -> str:
    if not _TX_HASH_RE.fullmatch(value):
        raise RecordValidationError(f"field 'hash' is not a transaction hash: {value!r}")
    return value.lower()


def _counterparty(record: Dict[str, Any]) -> str:
    # Contract creations carry an empty "to" and the new contract in "contractAddress"
    to = _field(record, "to")
    if not to:
        to = str(record.get("contractAddress") or "").strip()
    return _address(to, "to")


def _require_mapping(record: Any) -> Dict[str, Any]:
    if not isinstance(record, dict):
        raise RecordValidationError(f"record is not an object: {type(record).__name__}")
    return record


@dataclass(frozen=True)
class NativeTransfer:
    hash: str
    block_number: str
    timestamp: str      # unix seconds
    from_address: str
    to_address: str
    value: str          # wei
    gas_used: str
    gas_price: str      # wei per gas
    is_error: str       # "0" | "1"

    @classmethod
    def from_api(cls, record: Any) -> "NativeTransfer":
        record = _require_mapping(record)
        is_error = _field(record, "isError")
        if is_error not in ("0", "1"):
            raise RecordValidationError(f"field 'isError' must be '0' or '1': {is_error!r}")
        return cls(
            hash=_tx_hash(_field(record, "hash")),
            block_number=_uint_str(_field(record, "blockNumber"), "blockNumber"),
            timestamp=_timestamp(_field(record, "timeStamp", "timestamp")),
            from_address=_address(_field(record, "from"), "from"),
            to_address=_counterparty(record),
            value=_uint_str(_field(record, "value"), "value"),
            gas_used=_uint_str(_field(record, "gasUsed"), "gasUsed"),
            gas_price=_uint_str(_field(record, "gasPrice"), "gasPrice"),
            is_error=is_error,
        )

    @property
    def failed(self) -> bool:
        return self.is_error == "1"


@dataclass(frozen=True)
class TokenTransfer:
    hash: str
    block_number: str
    timestamp: str
    from_address: str
    to_address: str
    value: str          # raw integer amount, scaled by token_decimal
    contract_address: str
    token_name: str     # untrusted
    token_symbol: str   # untrusted
    token_decimal: str

    @classmethod
    def from_api(cls, record: Any) -> "TokenTransfer":
        record = _require_mapping(record)
        decimals = _uint_str(_field(record, "tokenDecimal") or "0", "tokenDecimal")
        if int(decimals) > MAX_TOKEN_DECIMALS:
            raise RecordValidationError(f"field 'tokenDecimal' out of range: {decimals}")
        return cls(
            hash=_tx_hash(_field(record, "hash")),
            block_number=_uint_str(_field(record, "blockNumber"), "blockNumber"),
            timestamp=_timestamp(_field(record, "timeStamp", "timestamp")),
            from_address=_address(_field(record, "from"), "from"),
            to_address=_address(_field(record, "to"), "to"),
            value=_uint_str(_field(record, "value"), "value"),
            contract_address=_address(_field(record, "contractAddress"), "contractAddress"),
            token_name=_field(record, "tokenName"),
            token_symbol=_field(record, "tokenSymbol"),
            token_decimal=decimals,
        )


# ---------------- Etherscan Client ----------------
class EtherscanClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = ETHERSCAN_API_URL,
        chain_id: str = CHAIN_ID,
        session: Optional[requests.Session] = None,
        max_attempts: int = MAX_ATTEMPTS,
        retry_base_delay: float = RETRY_BASE_DELAY_S,
        timeout: float = REQUEST_TIMEOUT_S,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = resolve_api_key(api_key)
        self.base_url = base_url
        self.chain_id = str(chain_id)
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "eth-beancount/1.0"})
        self.max_attempts = max(1, int(max_attempts))
        self.retry_base_delay = float(retry_base_delay)
        self.timeout = timeout
        self._sleep = sleep

    def build_params(self, action: str, address: str, api_key: Optional[str] = None) -> Dict[str, str]:
        key = (api_key or "").strip() or self.api_key
        return _build_params(action, address, key, self.chain_id)

    def build_url(self, action: str, address: str, api_key: Optional[str] = None) -> str:
        return _build_url(self.base_url, self.build_params(action, address, api_key))

    def _get(self, params: Dict[str, str]) -> Dict[str, Any]:
        last_err: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                r = self.session.get(self.base_url, params=params, timeout=self.timeout)
                if not r.ok:
                    raise TransportError(f"HTTP {r.status_code}: {r.reason}")
                data = r.json()
                if not isinstance(data, dict):
                    raise TransportError(f"Unexpected response body: {type(data).__name__}")
                return data
            except (requests.RequestException, ValueError, TransportError) as e:
                last_err = e
                LOG.warning("Attempt %d/%d failed for %s: %s",
                            attempt, self.max_attempts, _masked(params), e)
                if attempt < self.max_attempts:
                    self._sleep(self.retry_base_delay * (2 ** (attempt - 1)))

        LOG.error("Giving up on %s after %d attempts", _masked(params), self.max_attempts)
        raise TransportError(str(last_err)) from last_err

    @staticmethod
    def _parse_response(data: Dict[str, Any]) -> List[Any]:
        status = str(data.get("status", ""))
        message = str(data.get("message") or "")
        result = data.get("result")
        if status == "1":
            return result if isinstance(result, list) else []
        # Etherscan reports an empty history as status 0
        if message == NO_TRANSACTIONS_MESSAGE or result == NO_TRANSACTIONS_MESSAGE:
            return []
        if isinstance(result, str) and result.strip():
            raise ApiError(result.strip())
        raise ApiError(message or "API request failed")

    def _fetch_records(self, action: str, address: str, parser: Callable[[Any], Any],
                       api_key: Optional[str]) -> List[Any]:
        params = self.build_params(action, address, api_key)
        LOG.debug("GET %s %s", self.base_url, _masked(params))
        try:
            raw = self._parse_response(self._get(params))
        except ApiError as e:
            LOG.error("Etherscan %s error for %s: %s", action, address, e)
            raise

        records = []
        for item in raw:
            try:
                records.append(parser(item))
            except RecordValidationError as e:
                LOG.warning("Dropping %s record for %s: %s", action, address, e)
        return records

    # ---- Endpoints ----
    def get_native_transfers(self, address: str, api_key: Optional[str] = None) -> List[NativeTransfer]:
        return self._fetch_records(ACTION_NATIVE, address, NativeTransfer.from_api, api_key)

    def get_token_transfers(self, address: str, api_key: Optional[str] = None) -> List[TokenTransfer]:
        return self._fetch_records(ACTION_TOKEN, address, TokenTransfer.from_api, api_key)
