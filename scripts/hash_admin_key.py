#!/usr/bin/env python3
"""Create an approver key and the bcrypt hash the service checks it against.

Usage::

    python scripts/hash_admin_key.py                 # new random key + hash
    python scripts/hash_admin_key.py --key <key>     # hash an existing key

Give the key to the dashboard; store only the hash as ``ADMIN_KEY_HASH``.
"""

from __future__ import annotations

import argparse
import getpass
import pathlib
import secrets
import sys

# Ensure project root is on PYTHONPATH so `import tempadmin.*` works when the
# script is executed directly (e.g. `python scripts/hash_admin_key.py`).
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tempadmin.utils.auth import hash_admin_key  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Hash an approver key for ADMIN_KEY_HASH")
    parser.add_argument("--key", help="Existing key to hash (omit to generate one)")
    parser.add_argument("--prompt", action="store_true", help="Read the key from a hidden prompt")
    args = parser.parse_args()

    if args.prompt:
        key = getpass.getpass("Approver key: ")
    else:
        key = args.key or secrets.token_urlsafe(32)
        if not args.key:
            print(f"Approver key (give to the dashboard): {key}")

    print(f"ADMIN_KEY_HASH={hash_admin_key(key)}")


if __name__ == "__main__":
    main()
