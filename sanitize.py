# sanitize.py
# Neutralizes untrusted free text before it reaches the ledger output.
# - Token names and symbols come from on-chain metadata anyone can set, so they
#   routinely carry phishing links ("Claim at evil.xyz") and junk characters.
# - Every function here is pure, never raises, and is idempotent.

import re
from typing import Optional

# ---------------- Configuration ----------------
COMMON_TLDS = [
    "com", "org", "net", "io", "co", "xyz", "info", "biz", "app",
    "dev", "ai", "finance", "money", "exchange", "trade", "token",
    "eth", "crypto", "defi", "nft", "dao", "web3",
]

SYMBOL_MARKER = "X"          # prepended when a symbol does not start with a letter
SYMBOL_MIN_LEN = 2
SYMBOL_MAX_LEN = 24
UNKNOWN_SYMBOL = "UNKNOWN"
UNKNOWN_ACCOUNT = "Unknown"
ACCOUNT_SUFFIX_LEN = 6

_SCHEME_URL_RE = re.compile(r"[a-z][a-z0-9+.\-]*://\S*", re.IGNORECASE)
_WWW_RE = re.compile(r"www\.\S*", re.IGNORECASE)
# "evil.xyz" as well as the spaced "evil . xyz" / "evil .xyz" variants.
# "_" counts as a separator; "Ether. Finance" is a sentence, not a domain.
_BARE_DOMAIN_RE = re.compile(
    r"(?<![A-Za-z0-9-])[a-z0-9\-]+(?:\s+\.\s*|\.)(?:%s)(?![A-Za-z0-9-])" % "|".join(COMMON_TLDS),
    re.IGNORECASE,
)
_WHITESPACE_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")
# C0/C1 controls plus zero-width and bidi override characters
_CONTROL_RE = re.compile("[\x00-\x1f\x7f-\x9f\u200b-\u200f\u202a-\u202e\u2066-\u2069]")
_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")


def _strip_urls_once(text: str) -> str:
    out = _SCHEME_URL_RE.sub(" ", text)
    out = _WWW_RE.sub(" ", out)
    out = _BARE_DOMAIN_RE.sub(" ", out)
    return _WHITESPACE_RE.sub(" ", out).strip()


def sanitize_urls(text: Optional[str]) -> str:
    """
    Remove URLs and bare domains from text and collapse the whitespace left behind.

    Removal can join fragments into a new match ("evil.c" + "om"), so the pass
    repeats until the text stops changing. Each pass that changes anything
    shortens the string, which bounds the loop.
    """
    if not text:
        return ""
    current = str(text)
    while True:
        cleaned = _strip_urls_once(current)
        if cleaned == current:
            return cleaned
        current = cleaned


def sanitize_text(text: Optional[str]) -> str:
    """
    Make free text safe inside a double-quoted ledger string.
    Control characters become spaces, double quotes become single quotes and
    backslashes are dropped, then URLs are stripped.
    """
    if not text:
        return ""
    out = _CONTROL_RE.sub(" ", str(text))
    out = out.replace('"', "'").replace("\\", "")
    return sanitize_urls(out)


def sanitize_symbol(raw: Optional[str]) -> str:
    """Turn a token symbol into a commodity name: ^[A-Z][A-Z0-9]{1,23}$ or UNKNOWN."""
    if not raw:
        return UNKNOWN_SYMBOL
    clean = _NON_ALNUM_RE.sub("", sanitize_urls(raw)).upper()
    if not clean:
        return UNKNOWN_SYMBOL
    if not ("A" <= clean[0] <= "Z"):
        clean = SYMBOL_MARKER + clean
    if len(clean) < SYMBOL_MIN_LEN:
        clean = clean.ljust(SYMBOL_MIN_LEN, SYMBOL_MARKER)
    return clean[:SYMBOL_MAX_LEN]


def sanitize_account_name(raw: Optional[str]) -> str:
    """Turn a nickname into a single account-name component."""
    if not raw:
        return UNKNOWN_ACCOUNT
    clean = _NON_ALNUM_RE.sub("", sanitize_urls(raw))
    if not clean:
        return UNKNOWN_ACCOUNT
    return clean[0].upper() + clean[1:]


def get_account_suffix(address: str) -> str:
    """Last six hex digits of an address, uppercased."""
    return (address or "")[-ACCOUNT_SUFFIX_LEN:].upper()


def is_valid_address(address: Optional[str]) -> bool:
    return bool(address) and _ADDRESS_RE.fullmatch(address) is not None


def normalize_address(address: Optional[str]) -> str:
    return (address or "").strip().lower()
