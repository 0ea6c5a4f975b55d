# export_ledger.py
# Command-line export: fetch addresses from Etherscan and write a Beancount file.
#
#   python export_ledger.py 0xabc...:Main 0xdef... -o ledger.beancount
#   python export_ledger.py --file addresses.txt --api-key KEY
#
# Address entries may carry a nickname ("0x...:Savings"); files may hold one
# entry per line or comma separated entries.

import sys
import logging
import argparse
from typing import List, Optional

from tqdm import tqdm

from address_book import parse_addresses
from explorer_client import KEYS_PATH, EtherscanClient, resolve_api_key
from fetch_orchestrator import FetchOrchestrator, FetchProgress
from ledger_generator import generate_ledger

LOG = logging.getLogger("export_ledger")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Export Ethereum transfers as a Beancount ledger.")
    parser.add_argument("addresses", nargs="*", help="0x addresses, optionally suffixed with :Nickname")
    parser.add_argument("-f", "--file", help="Read address entries from a text file")
    parser.add_argument("-o", "--output", help="Write the ledger here instead of stdout")
    parser.add_argument("--api-key", default="", help="Etherscan API key (else env ETHERSCAN_API_KEY or keys.json)")
    parser.add_argument("--keys", default=KEYS_PATH, help="Path of keys.json")
    parser.add_argument("-q", "--quiet", action="store_true", help="No progress bar, warnings only")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def _read_address_text(args: argparse.Namespace) -> str:
    chunks: List[str] = list(args.addresses or [])
    if args.file:
        with open(args.file, "r", encoding="utf-8") as f:
            chunks.append(f.read())
    return "\n".join(chunks)


def main(argv: Optional[List[str]] = None, orchestrator: Optional[FetchOrchestrator] = None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else (logging.WARNING if args.quiet else logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")

    addresses = parse_addresses(_read_address_text(args))
    if not addresses:
        LOG.error("No valid addresses given")
        return 2

    api_key = resolve_api_key(args.api_key, keys_path=args.keys)
    orch = orchestrator or FetchOrchestrator(EtherscanClient(api_key=api_key))

    with tqdm(total=len(addresses), unit="addr", disable=args.quiet) as bar:
        def on_progress(p: FetchProgress) -> None:
            bar.set_description(p.label[:24])
            bar.update(p.index - 1 - bar.n)

        result = orch.fetch_all(addresses, api_key=api_key, on_progress=on_progress)
        bar.update(len(addresses) - bar.n)

    for failure in result.failures:
        LOG.error("Failed %s: %s", failure.label, failure.error)

    ledger = generate_ledger(result.datasets)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(ledger)
        LOG.info("Wrote ledger for %d addresses to %s", len(result.datasets), args.output)
    else:
        sys.stdout.write(ledger)

    return 0 if result.datasets else 1


if __name__ == "__main__":
    sys.exit(main())
