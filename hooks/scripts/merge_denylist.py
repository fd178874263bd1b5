#!/usr/bin/env python3
"""Denylist Merge Hook (SessionStart).

Merges deny/allow glob lists from three tiers into the pattern cache read by
secret_guardian.py.

Tiers (all unioned, earlier entries keep their position):
  1. Plugin defaults:  $CLAUDE_PLUGIN_ROOT/hooks/config/default-denylist.json (required)
  2. Global user:      ~/.claude/security/denylist.json (optional)
  3. Per-project:      $CLAUDE_PROJECT_DIR/.claude/security/denylist.json (optional)

Each tier is either {"deny": [...], "allow": [...]} or a bare array
(all-deny, kept for older configs).

Outputs (atomic temp-file + rename):
  <cache>/deny-patterns.json
  <cache>/allow-patterns.json

Exit codes:
  0 = cache written
  1 = plugin defaults missing or unreadable
"""

import json
import sys
from pathlib import Path
from typing import Any

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _secret_utils import (
        FileSecretStore,
        SecretStore,
        get_cache_dir,
        get_plugin_root,
        get_project_dir,
        log_secret_guard,
    )
except ImportError as e:
    print(f"[merge-denylist] ERROR: secret hook utilities unavailable: {e}", file=sys.stderr)
    sys.exit(1)


DEFAULT_DENYLIST_RELPATH = Path("hooks") / "config" / "default-denylist.json"
USER_DENYLIST_RELPATH = Path(".claude") / "security" / "denylist.json"


class DefaultsUnavailableError(Exception):
    """The required plugin defaults tier could not be loaded."""

    pass


# ============================================================
# Tier Loading
# ============================================================


def validate_tier_config(config: Any) -> list[str]:
    """Validate the structure of a parsed tier config.

    Args:
        config: Parsed JSON from a denylist file.

    Returns:
        List of validation messages (empty if valid).
    """
    errors = []

    if isinstance(config, list):
        sections = {"deny": config}
    elif isinstance(config, dict):
        sections = {}
        for key in ("deny", "allow"):
            if key not in config:
                continue
            if not isinstance(config[key], list):
                errors.append(f"'{key}' must be a list, got {type(config[key]).__name__}")
                continue
            sections[key] = config[key]
        unknown = sorted(set(config) - {"deny", "allow"})
        if unknown:
            errors.append(f"Unknown keys ignored: {', '.join(unknown)}")
    else:
        return [f"Expected an object or array, got {type(config).__name__}"]

    for key, entries in sections.items():
        for i, entry in enumerate(entries):
            if not isinstance(entry, str):
                errors.append(f"{key}[{i}]: pattern must be a string, got {type(entry).__name__}")
            elif not entry:
                errors.append(f"{key}[{i}]: empty pattern")

    return errors


def normalize_tier(config: Any) -> dict[str, list[str]]:
    """Normalize a parsed tier to {"deny": [...], "allow": [...]}.

    A bare array is treated as all-deny. Non-list sections become empty and
    non-string or empty entries are dropped.
    """
    if isinstance(config, list):
        deny, allow = config, []
    elif isinstance(config, dict):
        deny = config.get("deny", [])
        allow = config.get("allow", [])
    else:
        deny, allow = [], []

    return {
        "deny": [p for p in deny if isinstance(p, str) and p] if isinstance(deny, list) else [],
        "allow": [p for p in allow if isinstance(p, str) and p] if isinstance(allow, list) else [],
    }


def _read_tier(path: Path) -> dict[str, list[str]]:
    with open(path, encoding="utf-8") as f:
        config = json.load(f)

    for problem in validate_tier_config(config):
        log_secret_guard("WARN", f"Denylist validation ({path}): {problem}")

    return normalize_tier(config)


def load_required_tier(path: Path) -> dict[str, list[str]]:
    """Load the plugin defaults tier.

    Raises:
        DefaultsUnavailableError: If the file is missing, unreadable or not JSON.
    """
    try:
        return _read_tier(path)
    except (OSError, ValueError) as e:
        raise DefaultsUnavailableError(f"Default denylist not found or invalid: {path} ({e})")


def load_optional_tier(path: Path) -> dict[str, list[str]] | None:
    """Load an optional tier (global user or project).

    Absence is not an error, and a malformed file is treated like absence.

    Returns:
        Normalized tier, or None if the file is missing or unusable.
    """
    try:
        if not path.exists():
            return None
        tier = _read_tier(path)
        log_secret_guard("INFO", f"Loaded denylist tier from {path}")
        return tier
    except ValueError as e:
        log_secret_guard("ERROR", f"Invalid JSON in {path}, tier skipped: {e}")
    except OSError as e:
        log_secret_guard("ERROR", f"Failed to read {path}, tier skipped: {e}")
    return None


# ============================================================
# Merge
# ============================================================


def merge_tiers(tiers: list[dict[str, list[str]]]) -> tuple[list[str], list[str]]:
    """Union deny and allow lists across tiers.

    Deduplicates by exact string equality, keeping first-seen order.

    Returns:
        (deny, allow) tuple of pattern lists.
    """
    # dict preserves insertion order
    deny: dict[str, None] = {}
    allow: dict[str, None] = {}
    for tier in tiers:
        deny.update(dict.fromkeys(tier["deny"]))
        allow.update(dict.fromkeys(tier["allow"]))
    return list(deny), list(allow)


def merge(
    project_dir: Path,
    plugin_root: Path,
    store: SecretStore,
    home_dir: Path | None = None,
) -> tuple[list[str], list[str]]:
    """Merge all tiers and write the result to the store.

    Args:
        project_dir: Project root holding .claude/security/denylist.json.
        plugin_root: Plugin root holding hooks/config/default-denylist.json.
        store: Destination for the merged patterns.
        home_dir: Home directory for the global tier (default: Path.home()).

    Returns:
        (deny, allow) tuple that was written.

    Raises:
        DefaultsUnavailableError: If the plugin defaults cannot be loaded.
    """
    tiers = [load_required_tier(Path(plugin_root) / DEFAULT_DENYLIST_RELPATH)]

    optional_paths = [Path(project_dir) / USER_DENYLIST_RELPATH]
    try:
        home = home_dir if home_dir is not None else Path.home()
        optional_paths.insert(0, home / USER_DENYLIST_RELPATH)
    except RuntimeError as e:
        log_secret_guard("WARN", f"Home directory unavailable, global tier skipped: {e}")

    for path in optional_paths:
        tier = load_optional_tier(path)
        if tier is not None:
            tiers.append(tier)

    deny, allow = merge_tiers(tiers)
    store.write_patterns(deny, allow)
    log_secret_guard(
        "INFO",
        f"Merged {len(tiers)} denylist tier(s): {len(deny)} deny, {len(allow)} allow",
    )
    return deny, allow


def main() -> int:
    """Main hook entry point."""
    store = FileSecretStore(get_cache_dir())
    try:
        deny, allow = merge(get_project_dir(), get_plugin_root(), store)
    except DefaultsUnavailableError as e:
        log_secret_guard("ERROR", str(e))
        print(f"[merge-denylist] ERROR: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        log_secret_guard("ERROR", f"Failed to write pattern cache: {e}")
        print(f"[merge-denylist] ERROR: cannot write pattern cache: {e}", file=sys.stderr)
        return 1

    print(json.dumps({"deny": deny, "allow": allow}, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
