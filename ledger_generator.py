# ledger_generator.py
# Renders fetched address datasets as a Beancount ledger.
# - Commodity declarations for ETH and every token seen (sanitized symbols)
# - Account declarations: user ETH accounts, user token accounts, external
#   counterparties, gas/network fee expenses
# - One entry per transfer, oldest first, classified by which side is a user address:
#     internal (both), outgoing (sender only), incoming (recipient only)
# - Failed native transactions post only the gas the sender paid
# - Amounts use integer arithmetic end to end (wei never touches a float)
#
# Amount convention: trailing fractional zeros are trimmed, integers have no
# decimal point ("1", "1.5", "0.000021").

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from web3 import Web3

from explorer_client import NativeTransfer, TokenTransfer
from fetch_orchestrator import AddressDataset, FetchResult
from sanitize import (
    SYMBOL_MARKER,
    get_account_suffix,
    is_valid_address,
    normalize_address,
    sanitize_account_name,
    sanitize_symbol,
    sanitize_text,
)

# ---------------- Configuration ----------------
NATIVE_SYMBOL = "ETH"
NATIVE_NAME = "Ethereum"
NATIVE_DECIMALS = 18
DECLARATION_DATE = "1970-01-01"

USER_ROOT = "Assets:Crypto:Ethereum"
TOKEN_ROOT = "Assets:Crypto:Tokens"
EXTERNAL_ROOT = "Assets:Crypto:External"
GAS_FEES_ACCOUNT = "Expenses:Crypto:GasFees"
NETWORK_FEES_ACCOUNT = "Expenses:Crypto:NetworkFees"

FLAG_CLEARED = "*"
FLAG_FAILED = "!"

LEDGER_TITLE = "Ethereum Beancount Export"
EXPLORER_ADDRESS_URL = "https://etherscan.io/address/{}"

LOG = logging.getLogger("ledger_generator")

Transfer = Union[NativeTransfer, TokenTransfer]
DatasetsInput = Union[FetchResult, Mapping[str, AddressDataset], Iterable[AddressDataset]]


# ---------------- Amounts & dates ----------------
def _to_int(value) -> int:
    return int(str(value).strip() or "0")


def format_units(raw, decimals: int) -> str:
    """Scale an integer amount down by 10**decimals without floating point."""
    amount = _to_int(raw)
    decimals = int(decimals)
    sign = "-" if amount < 0 else ""
    amount = abs(amount)
    if decimals <= 0:
        return f"{sign}{amount}"
    whole, frac = divmod(amount, 10 ** decimals)
    if frac == 0:
        return f"{sign}{whole}"
    frac_str = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{frac_str}"


def wei_to_native(wei) -> str:
    return format_units(wei, NATIVE_DECIMALS)


def token_to_decimal(value, decimals) -> str:
    return format_units(value, _to_int(decimals))


def gas_cost_wei(gas_used, gas_price) -> int:
    return _to_int(gas_used) * _to_int(gas_price)


def format_date(timestamp) -> str:
    return datetime.fromtimestamp(_to_int(timestamp), tz=timezone.utc).strftime("%Y-%m-%d")


# ---------------- Account naming ----------------
def commodity_symbol(raw_symbol: Optional[str]) -> str:
    """Sanitized token symbol; a token can never claim the native symbol."""
    symbol = sanitize_symbol(raw_symbol)
    if symbol == NATIVE_SYMBOL:
        symbol = SYMBOL_MARKER + symbol
    return symbol


def _with_owner(root: str, address: str, nicknames: Mapping[str, str]) -> str:
    nickname = nicknames.get(normalize_address(address))
    suffix = get_account_suffix(address)
    if nickname:
        return f"{root}:{sanitize_account_name(nickname)}:{suffix}"
    return f"{root}:{suffix}"


def user_account_name(address: str, nicknames: Mapping[str, str]) -> str:
    return _with_owner(USER_ROOT, address, nicknames)


def token_account_name(address: str, raw_symbol: str, nicknames: Mapping[str, str]) -> str:
    return _with_owner(f"{TOKEN_ROOT}:{commodity_symbol(raw_symbol)}", address, nicknames)


def external_account_name(address: str) -> str:
    # Nicknames only ever name the user's own addresses
    return f"{EXTERNAL_ROOT}:{get_account_suffix(address)}"


# ---------------- Model ----------------
@dataclass(frozen=True)
class Commodity:
    symbol: str
    name: str
    original_symbol: Optional[str]
    contract_address: str


@dataclass(frozen=True)
class LedgerDocument:
    header: str
    commodities: str
    accounts: str
    transactions: str

    def render(self) -> str:
        sections = [self.header, self.commodities, self.accounts, self.transactions]
        return "\n\n".join(s for s in sections if s) + "\n"

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class _Context:
    users: Set[str]
    nicknames: Dict[str, str]

    def is_user(self, address: str) -> bool:
        return normalize_address(address) in self.users


def _as_datasets(datasets: DatasetsInput) -> List[AddressDataset]:
    if isinstance(datasets, FetchResult):
        return list(datasets.datasets)
    if isinstance(datasets, Mapping):
        return list(datasets.values())
    return list(datasets)


def _build_context(datasets: List[AddressDataset]) -> _Context:
    users: Set[str] = set()
    nicknames: Dict[str, str] = {}
    for ds in datasets:
        addr = normalize_address(ds.address)
        users.add(addr)
        if ds.nickname and addr not in nicknames:
            nicknames[addr] = ds.nickname
    return _Context(users, nicknames)


# ---------------- Sections ----------------
def collect_commodities(datasets: DatasetsInput) -> List[Commodity]:
    """Distinct token commodities by sanitized symbol; first occurrence names it."""
    found: Dict[str, Commodity] = {}
    for ds in _as_datasets(datasets):
        for tx in ds.token_transfers:
            symbol = commodity_symbol(tx.token_symbol)
            if symbol in found:
                continue
            original = sanitize_text(tx.token_symbol) if tx.token_symbol != symbol else ""
            found[symbol] = Commodity(
                symbol=symbol,
                name=sanitize_text(tx.token_name) or symbol,
                original_symbol=original or None,
                contract_address=tx.contract_address,
            )
    return list(found.values())


def _display_address(address: str) -> str:
    return Web3.to_checksum_address(address) if is_valid_address(address) else address


def generate_header(datasets: List[AddressDataset], generated_at: datetime) -> str:
    lines = [
        f"; {LEDGER_TITLE}",
        f"; Generated: {generated_at.isoformat(timespec='seconds')}",
        ";",
        "; Addresses:",
    ]
    for ds in datasets:
        shown = _display_address(ds.address)
        nickname = sanitize_text(ds.nickname)
        lines.append(f"; - {nickname} ({shown})" if nickname else f"; - {shown}")
        lines.append(f";   {EXPLORER_ADDRESS_URL.format(shown)}")
    return "\n".join(lines)


def generate_commodity_declarations(commodities: List[Commodity]) -> str:
    blocks = [f'{DECLARATION_DATE} commodity {NATIVE_SYMBOL}\n  name: "{NATIVE_NAME}"']
    for c in commodities:
        lines = [f"{DECLARATION_DATE} commodity {c.symbol}", f'  name: "{c.name}"']
        if c.original_symbol:
            lines.append(f'  original_symbol: "{c.original_symbol}"')
        lines.append(f'  contract: "{c.contract_address}"')
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def _posted_externals(tx: Transfer, ctx: _Context) -> List[str]:
    """Counterparties that get a principal leg in the entry for `tx`."""
    if not (ctx.is_user(tx.from_address) or ctx.is_user(tx.to_address)):
        return []
    if isinstance(tx, NativeTransfer) and tx.failed:
        return []
    if _to_int(tx.value) <= 0:
        return []
    return [p for p in (tx.from_address, tx.to_address) if not ctx.is_user(p)]


def generate_account_declarations(datasets: List[AddressDataset], ctx: _Context) -> str:
    declared: Dict[str, str] = {}  # account -> declaration line

    def _open(account: str, currency: Optional[str] = None) -> None:
        if account not in declared:
            tail = f" {currency}" if currency else ""
            declared[account] = f"{DECLARATION_DATE} open {account}{tail}"

    for ds in datasets:
        _open(user_account_name(ds.address, ctx.nicknames), NATIVE_SYMBOL)

    for ds in datasets:
        for tx in ds.token_transfers:
            for party in (tx.from_address, tx.to_address):
                if ctx.is_user(party):
                    _open(token_account_name(party, tx.token_symbol, ctx.nicknames),
                          commodity_symbol(tx.token_symbol))

    for ds in datasets:
        for tx in list(ds.native_transfers) + list(ds.token_transfers):
            for party in _posted_externals(tx, ctx):
                _open(external_account_name(party))

    _open(GAS_FEES_ACCOUNT)
    _open(NETWORK_FEES_ACCOUNT)
    return "\n".join(declared.values())


def merge_transfers(datasets: DatasetsInput) -> List[Transfer]:
    """
    All transfers across datasets, oldest first.
    Native transfers dedupe by hash; token transfers by hash + contract + value
    since one transaction can move several tokens. Ties keep discovery order.
    """
    seen: Set[Tuple[str, ...]] = set()
    merged: List[Transfer] = []
    for ds in _as_datasets(datasets):
        for tx in ds.native_transfers:
            key = ("native", tx.hash)
            if key not in seen:
                seen.add(key)
                merged.append(tx)
        for tx in ds.token_transfers:
            key = ("token", tx.hash, tx.contract_address, tx.value)
            if key not in seen:
                seen.add(key)
                merged.append(tx)
    merged.sort(key=lambda t: _to_int(t.timestamp))
    return merged


def _posting(account: str, amount: int, decimals: int, symbol: str) -> str:
    return f"  {account}  {format_units(amount, decimals)} {symbol}"


def _native_entry(tx: NativeTransfer, ctx: _Context) -> Optional[str]:
    from_user = ctx.is_user(tx.from_address)
    to_user = ctx.is_user(tx.to_address)
    if not from_user and not to_user:
        return None
    # A failed transaction costs the recipient nothing
    if tx.failed and not from_user:
        return None

    value = _to_int(tx.value)
    gas = gas_cost_wei(tx.gas_used, tx.gas_price)
    postings: List[str] = []

    if not tx.failed and value > 0:
        src = user_account_name(tx.from_address, ctx.nicknames) if from_user else external_account_name(tx.from_address)
        dst = user_account_name(tx.to_address, ctx.nicknames) if to_user else external_account_name(tx.to_address)
        postings.append(_posting(src, -value, NATIVE_DECIMALS, NATIVE_SYMBOL))
        postings.append(_posting(dst, value, NATIVE_DECIMALS, NATIVE_SYMBOL))

    # Gas is paid by the sender only
    if from_user and gas > 0:
        payer = user_account_name(tx.from_address, ctx.nicknames)
        postings.append(_posting(payer, -gas, NATIVE_DECIMALS, NATIVE_SYMBOL))
        postings.append(_posting(GAS_FEES_ACCOUNT, gas, NATIVE_DECIMALS, NATIVE_SYMBOL))

    if not postings:
        return None

    flag = FLAG_FAILED if tx.failed else FLAG_CLEARED
    description = "Failed ETH Transfer" if tx.failed else "ETH Transfer"
    lines = [
        f'{format_date(tx.timestamp)} {flag} "{description}"',
        f'  txid: "{tx.hash}"',
    ]
    return "\n".join(lines + postings)


def _token_entry(tx: TokenTransfer, ctx: _Context) -> Optional[str]:
    from_user = ctx.is_user(tx.from_address)
    to_user = ctx.is_user(tx.to_address)
    value = _to_int(tx.value)
    if not (from_user or to_user) or value <= 0:
        return None

    symbol = commodity_symbol(tx.token_symbol)
    decimals = _to_int(tx.token_decimal)
    src = token_account_name(tx.from_address, tx.token_symbol, ctx.nicknames) if from_user else external_account_name(tx.from_address)
    dst = token_account_name(tx.to_address, tx.token_symbol, ctx.nicknames) if to_user else external_account_name(tx.to_address)

    name = sanitize_text(tx.token_name) or symbol
    lines = [
        f'{format_date(tx.timestamp)} {FLAG_CLEARED} "{name} Transfer"',
        f'  txid: "{tx.hash}"',
        f'  token: "{tx.contract_address}"',
        _posting(src, -value, decimals, symbol),
        _posting(dst, value, decimals, symbol),
    ]
    return "\n".join(lines)


def generate_transaction_entries(datasets: List[AddressDataset], ctx: _Context) -> str:
    entries = []
    for tx in merge_transfers(datasets):
        if isinstance(tx, NativeTransfer):
            entry = _native_entry(tx, ctx)
        else:
            entry = _token_entry(tx, ctx)
        if entry:
            entries.append(entry)
    return "\n\n".join(entries)


# ---------------- Public API ----------------
def generate(
    datasets: DatasetsInput,
    failures: Optional[Iterable] = None,
    generated_at: Optional[datetime] = None,
) -> LedgerDocument:
    """
    Build the ledger for whatever was fetched successfully.
    `failures` is accepted for call-site symmetry and ignored: failed addresses
    contribute nothing.
    """
    items = _as_datasets(datasets)
    ctx = _build_context(items)
    when = generated_at or datetime.now(timezone.utc)
    if failures:
        LOG.info("Generating ledger without %d failed addresses", len(list(failures)))

    return LedgerDocument(
        header=generate_header(items, when),
        commodities=generate_commodity_declarations(collect_commodities(items)),
        accounts=generate_account_declarations(items, ctx),
        transactions=generate_transaction_entries(items, ctx),
    )


def generate_ledger(datasets: DatasetsInput, generated_at: Optional[datetime] = None) -> str:
    return generate(datasets, generated_at=generated_at).render()
