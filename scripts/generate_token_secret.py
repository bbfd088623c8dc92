#!/usr/bin/env python3
"""Generate a signing secret for approval tokens.

Usage::

    python scripts/generate_token_secret.py          # prints secret to stdout
    python scripts/generate_token_secret.py -o .env  # appends `TOKEN_SECRET=<secret>` to .env

The service refuses secrets shorter than 32 characters. Rotating the secret
invalidates every approval link that is still outstanding.
"""

from __future__ import annotations

import argparse
import base64
import os
from pathlib import Path


def _generate_secret(num_bytes: int = 48) -> str:
    """Return a base-64url-encoded random secret (no padding)."""
    return base64.urlsafe_b64encode(os.urandom(num_bytes)).decode().rstrip("=")


def main() -> None:  # noqa: D401
    parser = argparse.ArgumentParser(description="Generate TOKEN_SECRET for approval links")
    parser.add_argument("-o", "--output", type=Path, help="Append secret to given file in .env format")
    parser.add_argument("-n", "--bytes", type=int, default=48, help="Random bytes before encoding (min 24)")
    args = parser.parse_args()

    if args.bytes < 24:
        parser.error("--bytes must be at least 24 (32 encoded characters)")

    secret = _generate_secret(args.bytes)

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        with args.output.open("a", encoding="utf-8") as fp:
            fp.write(f"TOKEN_SECRET={secret}\n")
        print(f"Secret appended to {args.output}")
    else:
        print(secret)


if __name__ == "__main__":
    main()
