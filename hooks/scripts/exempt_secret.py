#!/usr/bin/env python3
"""Exemption CLI: grant session-scoped access to secret files.

Usage:
    exempt-secret <pattern> [<pattern> ...]

Each pattern is a basename (".env"), a path ("/project/.env") or a glob
("*.pem"). Entries are appended to <cache>/secret-overrides, which
secret_guardian.py consults before the deny list. Grants live only as long
as the cache directory (a tmp dir by default, cleared on reboot).

Exit codes:
    0 = all arguments processed (including already-exempted entries)
    1 = no arguments given, or the exemption file cannot be read or written
"""

import sys
from pathlib import Path

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _secret_utils import (
        EXEMPT_COMMAND_NAME,
        FileSecretStore,
        SecretStore,
        get_cache_dir,
        log_secret_guard,
    )
except ImportError as e:
    print(f"[exempt-secret] ERROR: secret hook utilities unavailable: {e}", file=sys.stderr)
    sys.exit(1)


USAGE = f"Usage: {EXEMPT_COMMAND_NAME} <pattern> [<pattern> ...]"

SESSION_DISCLAIMER = (
    "Note: these exemptions apply to the current session only "
    "and are lost when the security cache is cleared (e.g. on reboot)."
)


def grant_exemptions(entries: list[str], store: SecretStore) -> list[str]:
    """Add entries to the session exemption set.

    Args:
        entries: Basenames, paths or globs to exempt.
        store: Exemption storage.

    Returns:
        One status line per entry.
    """
    lines = []
    for entry in entries:
        # The override file is newline-delimited
        if not entry or "\n" in entry or "\r" in entry:
            lines.append(f"Skipped invalid entry: {entry!r}")
            continue

        if store.append_exemption(entry):
            log_secret_guard("INFO", f"Session exemption granted: {entry}")
            lines.append(f"Granted session access to: {entry}")
        else:
            lines.append(f"Already exempted: {entry}")
    return lines


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = sys.argv[1:] if argv is None else argv
    if not args:
        print(USAGE, file=sys.stderr)
        print("Grants the current session access to files blocked by the secret guard.", file=sys.stderr)
        return 1

    try:
        store = FileSecretStore(get_cache_dir())
        lines = grant_exemptions(args, store)
    except (OSError, ValueError) as e:
        log_secret_guard("ERROR", f"Cannot update session exemptions: {e}")
        print(f"[exempt-secret] ERROR: cannot update session exemptions: {e}", file=sys.stderr)
        return 1

    for line in lines:
        print(line)
    print(SESSION_DISCLAIMER)
    return 0


if __name__ == "__main__":
    sys.exit(main())
