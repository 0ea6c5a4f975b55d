# address_book.py
# Parses the free-form address list a user pastes in.
# - One entry per line or comma separated
# - "0xADDRESS:Nickname" attaches a nickname to the address
# - Invalid entries are skipped, duplicates collapse onto the first occurrence
#   (first nickname wins)

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from sanitize import is_valid_address, normalize_address

LOG = logging.getLogger("address_book")

_SPLIT_RE = re.compile(r"[\n,]")


class AddressValidationError(ValueError):
    """Raised for a token that is not a usable address entry."""


@dataclass(frozen=True)
class ParsedAddress:
    address: str                    # canonical lowercase 0x + 40 hex
    nickname: Optional[str] = None  # raw user text, sanitized only when rendered

    @property
    def label(self) -> str:
        return self.nickname or self.address


def parse_address_token(token: str) -> ParsedAddress:
    """
    Parse one trimmed entry. Raises AddressValidationError when the entry is
    not an address (with or without a nickname).
    """
    token = (token or "").strip()
    candidate, nickname = token, None

    if ":" in token:
        head, tail = token.split(":", 1)
        head = head.strip()
        if is_valid_address(head):
            candidate = head
            nickname = tail.strip() or None

    if not is_valid_address(candidate):
        raise AddressValidationError(f"Invalid Ethereum address: {token!r}")
    return ParsedAddress(address=normalize_address(candidate), nickname=nickname)


def parse_addresses(raw_text: Optional[str]) -> List[ParsedAddress]:
    """Parse raw input into unique addresses, in first-occurrence order."""
    if not raw_text or not raw_text.strip():
        return []

    by_address = {}
    for token in _SPLIT_RE.split(raw_text):
        token = token.strip()
        if not token:
            continue
        try:
            parsed = parse_address_token(token)
        except AddressValidationError as e:
            LOG.debug("Skipping entry: %s", e)
            continue
        if parsed.address not in by_address:
            by_address[parsed.address] = parsed

    return list(by_address.values())


def format_addresses(addresses: Iterable[ParsedAddress]) -> str:
    """Inverse of parse_addresses, one 'address[:nickname]' per line."""
    return "\n".join(
        f"{a.address}:{a.nickname}" if a.nickname else a.address
        for a in addresses
    )


def validate_address(address: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Single-field check for input widgets: (ok, error message)."""
    if not address or not address.strip():
        return False, "Address is required"
    if not is_valid_address(address.strip()):
        return False, "Invalid Ethereum address format"
    return True, None
