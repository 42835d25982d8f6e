"""Offline provisioning tool: add or reactivate a key in the keys file."""

import argparse
import asyncio
import getpass
import logging
import sys
from typing import List, Optional

from openrouter_proxy.config import load_config
from openrouter_proxy.key_pool import CredentialPool
from openrouter_proxy.store import JsonFileCredentialStore

logger = logging.getLogger(__name__)


async def add_api_key(keys_file: str, api_key: str) -> str:
    store = JsonFileCredentialStore(keys_file)
    existing = await store.get_by_secret(api_key.strip())
    credential = await CredentialPool(store).add_credential(api_key)
    if existing is not None:
        return f"Existing API key {credential.id} reactivated"
    return f"New API key {credential.id} added"


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Add an OpenRouter API key to the proxy's keys file."
    )
    parser.add_argument("api_key", nargs="?", help="key to add (prompted if omitted)")
    parser.add_argument(
        "--keys-file", help="path to the keys file (defaults to KEYS_FILE)"
    )
    args = parser.parse_args(argv)

    config = load_config()
    logging.basicConfig(level=getattr(logging, config.log_level.upper()))

    keys_file = args.keys_file or config.keys_file
    if not keys_file:
        print("KEYS_FILE must be set (or pass --keys-file)", file=sys.stderr)
        return 2

    api_key = args.api_key or getpass.getpass("Please enter your OpenRouter API key: ")
    if not api_key.strip():
        print("API key is required", file=sys.stderr)
        return 1

    try:
        message = asyncio.run(add_api_key(keys_file, api_key))
    except (OSError, ValueError) as exc:
        logger.error("Error adding API key: %s", exc)
        return 1

    print(message)
    return 0


if __name__ == "__main__":
    sys.exit(main())
