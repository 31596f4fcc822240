#!/usr/bin/env python3
"""
Generate an admin API key and, optionally, write it to a .env file.

Usage:
    python scripts/generate_admin_key.py            # print a key
    python scripts/generate_admin_key.py --env .env # also set ADMIN_API_KEY in .env
"""

import argparse
import sys
from pathlib import Path

from market_exporter.core.auth import generate_token


def write_env_key(env_path: Path, key: str) -> bool:
    """
    Set ADMIN_API_KEY in an env file.

    Returns:
        True if an existing value was replaced
    """
    lines = env_path.read_text(encoding="utf-8").splitlines() if env_path.exists() else []
    replaced = False
    for i, line in enumerate(lines):
        if line.split("=", 1)[0].strip().upper() == "ADMIN_API_KEY":
            lines[i] = f"ADMIN_API_KEY={key}"
            replaced = True
    if not replaced:
        lines.append(f"ADMIN_API_KEY={key}")
    env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return replaced


def main():
    parser = argparse.ArgumentParser(description="Generate an admin API key")
    parser.add_argument("--env", type=Path, help="env file to store ADMIN_API_KEY in")
    args = parser.parse_args()

    key = generate_token()
    print(f"Generated admin API key: {key}")

    if args.env:
        try:
            replaced = write_env_key(args.env, key)
        except OSError as e:
            print(f"Error: {str(e)}", file=sys.stderr)
            sys.exit(1)
        action = "Replaced" if replaced else "Added"
        print(f"{action} ADMIN_API_KEY in {args.env}")


if __name__ == "__main__":
    main()
