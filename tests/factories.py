"""Shared builders for Etherscan-shaped records and datasets used across the tests."""

import json
from typing import Optional

import requests

from explorer_client import NativeTransfer, TokenTransfer
from fetch_orchestrator import AddressDataset

USER_A = "0x" + "a" * 34 + "abcdef"
USER_B = "0x" + "b" * 34 + "123456"
EXTERNAL = "0x" + "c" * 34 + "fedcba"
CONTRACT_USDC = "0x" + "d" * 40
CONTRACT_DAI = "0x" + "e" * 40

ONE_ETH = "1000000000000000000"
GWEI_50 = "50000000000"


def tx_hash(n: int) -> str:
    return "0x%064x" % n


def native_record(n: int = 1, frm: str = EXTERNAL, to: str = USER_A, value: str = ONE_ETH,
                  timestamp: str = "1609459200", gas_used: str = "21000",
                  gas_price: str = GWEI_50, is_error: str = "0", **extra) -> dict:
    record = {
        "blockNumber": str(11565019 + n),
        "timeStamp": timestamp,
        "hash": tx_hash(n),
        "from": frm,
        "to": to,
        "value": value,
        "gas": "21000",
        "gasPrice": gas_price,
        "isError": is_error,
        "txreceipt_status": "1",
        "contractAddress": "",
        "gasUsed": gas_used,
        "confirmations": "100",
    }
    record.update(extra)
    return record


def token_record(n: int = 1, frm: str = EXTERNAL, to: str = USER_A, value: str = "1500000",
                 timestamp: str = "1609459200", contract: str = CONTRACT_USDC,
                 name: str = "USD Coin", symbol: str = "USDC", decimals: str = "6", **extra) -> dict:
    record = {
        "blockNumber": str(11565019 + n),
        "timeStamp": timestamp,
        "hash": tx_hash(n),
        "from": frm,
        "to": to,
        "value": value,
        "contractAddress": contract,
        "tokenName": name,
        "tokenSymbol": symbol,
        "tokenDecimal": decimals,
        "gasUsed": "65000",
        "gasPrice": GWEI_50,
    }
    record.update(extra)
    return record


def native(**kwargs) -> NativeTransfer:
    return NativeTransfer.from_api(native_record(**kwargs))


def token(**kwargs) -> TokenTransfer:
    return TokenTransfer.from_api(token_record(**kwargs))


def dataset(address: str, nickname: Optional[str] = None, natives=(), tokens=()) -> AddressDataset:
    return AddressDataset(address, nickname, tuple(natives), tuple(tokens))


def make_response(payload=None, status_code: int = 200, reason: str = "OK",
                  body: Optional[bytes] = None) -> requests.Response:
    r = requests.Response()
    r.status_code = status_code
    r.reason = reason
    r._content = body if body is not None else json.dumps(payload).encode()
    r.encoding = "utf-8"
    return r


def ok_payload(records) -> dict:
    return {"status": "1", "message": "OK", "result": list(records)}


EMPTY_PAYLOAD = {"status": "0", "message": "No transactions found", "result": []}
