#!/usr/bin/env python3
"""Generate an RSA key pair for signing session credentials.

Usage:
    # Print env lines to paste into .env:
    python scripts/generate_signing_keys.py

    # Or write PEM files:
    python scripts/generate_signing_keys.py --out-dir ./keys --bits 4096

The env output escapes newlines as \\n, which the settings loader restores.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from invitely.service.credentials import MIN_RSA_KEY_BITS, generate_rsa_key_pair  # noqa: E402


def _env_line(name: str, pem: str) -> str:
    return f'{name}="{pem.strip()}"'.replace("\n", "\\n")


def write_key_files(out_dir: Path, private_pem: str, public_pem: str) -> tuple[Path, Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    private_path = out_dir / "signing_private.pem"
    public_path = out_dir / "signing_public.pem"
    private_path.write_text(private_pem)
    os.chmod(private_path, 0o600)
    public_path.write_text(public_pem)
    return private_path, public_path


def main():
    parser = argparse.ArgumentParser(
        description="Generate a signing key pair for Invitely session credentials",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--bits",
        type=int,
        default=MIN_RSA_KEY_BITS,
        help=f"RSA modulus size (minimum {MIN_RSA_KEY_BITS})",
    )
    parser.add_argument(
        "--out-dir",
        type=Path,
        default=None,
        help="Write PEM files here instead of printing env lines",
    )
    args = parser.parse_args()

    if args.bits < MIN_RSA_KEY_BITS:
        print(f"Error: --bits must be at least {MIN_RSA_KEY_BITS}")
        sys.exit(1)

    private_pem, public_pem = generate_rsa_key_pair(args.bits)

    if args.out_dir is not None:
        private_path, public_path = write_key_files(args.out_dir, private_pem, public_pem)
        print(f"Private key: {private_path}")
        print(f"Public key:  {public_path}")
        return

    print(_env_line("SIGNING_PRIVATE_KEY", private_pem))
    print(_env_line("SIGNING_PUBLIC_KEY", public_pem))


if __name__ == "__main__":
    main()
