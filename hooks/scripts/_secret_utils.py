#!/usr/bin/env python3
"""Shared utilities for the secret-file protection hooks.

This module provides shared utilities for all secret hooks:
- Cache/state directory resolution
- Glob matching for deny/allow/exemption patterns
- Pattern and exemption storage (SecretStore)
- Atomic JSON writes
- Dry-run mode support
- Logging

# Cache layout ($CLAUDE_SECURITY_CACHE_DIR or <tmp>/claude-security-<uid>/):
#   deny-patterns.json    merged deny globs (written by merge_denylist.py)
#   allow-patterns.json   merged allow globs (written by merge_denylist.py)
#   secret-overrides      session exemptions (written by exempt_secret.py)
#   secret-guard.log      hook log

Usage:
    from _secret_utils import (
        FileSecretStore,
        get_cache_dir,
        matches_glob,
        log_secret_guard,
    )

Note on log_secret_guard():
    - Silent fail on directory or file write errors
    - This is intentional to avoid breaking hooks on logging issues

Design Principles:
    1. Security-First: Fail-close on errors in the guard decision path
       (malformed input, missing pattern cache)
       Fail-open on optional inputs (user/project tiers, logging)
    2. Stateless hooks: every invocation reads the store fresh
"""

import functools
import json
import os
import sys
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

import regex

# ============================================================
# Constants
# ============================================================

CACHE_DIR_ENV = "CLAUDE_SECURITY_CACHE_DIR"
"""Environment variable overriding the cache/state directory."""

PLUGIN_ROOT_ENV = "CLAUDE_PLUGIN_ROOT"
"""Environment variable pointing at the installed plugin root."""

PROJECT_DIR_ENV = "CLAUDE_PROJECT_DIR"
"""Environment variable pointing at the current project root."""

DRY_RUN_ENV = "CLAUDE_HOOK_DRY_RUN"
"""Environment variable to enable dry-run mode.
Set to "1", "true", or "yes" to enable."""

DENY_PATTERNS_FILE = "deny-patterns.json"
ALLOW_PATTERNS_FILE = "allow-patterns.json"
OVERRIDES_FILE = "secret-overrides"
LOG_FILE = "secret-guard.log"

EXEMPT_COMMAND_NAME = "exempt-secret"
"""Name of the Exemption CLI binary shipped in <plugin_root>/hooks/bin/."""

MAX_COMMAND_LENGTH = 100_000
"""Maximum Bash command length before blocking.
Commands exceeding this are denied (fail-closed)."""

MAX_PATH_PREVIEW_LENGTH = 60
"""Maximum path length for log display. Paths longer than this are truncated."""

MAX_COMMAND_PREVIEW_LENGTH = 80
"""Maximum command length for log display. Commands longer than this are truncated."""

MAX_LOG_SIZE_BYTES = 1_000_000
"""Maximum log file size before rotation (1 MB)."""

REGEX_TIMEOUT_SECONDS = 0.5
"""Timeout for a single glob match, bounding pathological patterns."""


# ============================================================
# Errors
# ============================================================


class SecretGuardError(Exception):
    """Base error for the secret protection hooks."""

    pass


class PatternsUnavailableError(SecretGuardError):
    """Merged deny/allow patterns could not be loaded from the cache."""

    pass


class HookInputError(SecretGuardError):
    """Hook stdin is not a usable tool invocation record."""

    pass


# ============================================================
# Environment
# ============================================================


def get_cache_dir() -> Path:
    """Get the cache/state directory, creating it if needed.

    Uses $CLAUDE_SECURITY_CACHE_DIR verbatim when set. Otherwise falls back
    to <tmp>/claude-security-<uid> so users sharing a host do not collide.

    Returns:
        Path of the (existing) cache directory.
    """
    override = os.environ.get(CACHE_DIR_ENV, "")
    if override:
        cache_dir = Path(override)
    else:
        cache_dir = Path(tempfile.gettempdir()) / f"claude-security-{_user_id()}"

    cache_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
    return cache_dir


def _user_id() -> str:
    if hasattr(os, "getuid"):
        return str(os.getuid())
    # Windows has no uid; the login name is the closest per-user key
    try:
        import getpass

        return getpass.getuser()
    except Exception:
        return "default"


def get_plugin_root() -> Path:
    """Get the plugin root directory.

    Returns:
        $CLAUDE_PLUGIN_ROOT if set, else the directory containing hooks/.
    """
    plugin_root = os.environ.get(PLUGIN_ROOT_ENV, "")
    if plugin_root:
        return Path(plugin_root)
    # hooks/scripts/_secret_utils.py -> plugin root
    return Path(__file__).resolve().parent.parent.parent


def get_project_dir() -> Path:
    """Get the project directory ($CLAUDE_PROJECT_DIR, else the working dir)."""
    project_dir = os.environ.get(PROJECT_DIR_ENV, "")
    if project_dir and os.path.isdir(project_dir):
        return Path(project_dir)
    return Path.cwd()


def get_exempt_command_path() -> Path:
    """Get the path of the exempt-secret binary shown in block messages."""
    return get_plugin_root() / "hooks" / "bin" / EXEMPT_COMMAND_NAME


def is_dry_run() -> bool:
    """Check if running in dry-run (simulation) mode.

    In dry-run mode, the guard logs what it WOULD block but allows the call.

    Enable by setting environment variable:
        CLAUDE_HOOK_DRY_RUN=1

    Returns:
        True if dry-run mode is enabled.
    """
    value = os.environ.get(DRY_RUN_ENV, "").lower()
    return value in ("1", "true", "yes")


# ============================================================
# Glob Matching
# ============================================================


@functools.lru_cache(maxsize=512)
def _compile_glob(pattern: str) -> "regex.Pattern":
    """Translate a glob into an anchored regular expression.

    * -> any run of characters (crosses "/"), ? -> one character,
    everything else literal.
    """
    parts = []
    for c in pattern:
        if c == "*":
            parts.append(".*")
        elif c == "?":
            parts.append(".")
        else:
            parts.append(regex.escape(c))
    return regex.compile("".join(parts), regex.DOTALL)


def matches_glob(candidate: str, pattern: str, on_timeout: bool = False) -> bool:
    """Match a whole candidate string against a glob pattern.

    Matching is case-sensitive and anchored at both ends. Never raises.

    Args:
        candidate: Basename or full path to check.
        pattern: Glob pattern (e.g., ".env.*", "*.pem", "id_rsa*").
        on_timeout: Result to report if the match exceeds
            REGEX_TIMEOUT_SECONDS. Deny checks pass True (fail-closed).

    Returns:
        True if the whole candidate matches the pattern.
    """
    try:
        compiled = _compile_glob(pattern)
        return compiled.fullmatch(candidate, timeout=REGEX_TIMEOUT_SECONDS) is not None
    except TimeoutError:
        log_secret_guard("WARN", f"Glob match timed out for pattern: {pattern[:50]}")
        return on_timeout
    except Exception as e:
        log_secret_guard("WARN", f"Glob match error for pattern '{pattern[:50]}': {e}")
        return on_timeout


def match_any(candidates: list[str], patterns, on_timeout: bool = False) -> str | None:
    """Return the first pattern matching any candidate, or None."""
    for pattern in patterns:
        for candidate in candidates:
            if matches_glob(candidate, pattern, on_timeout=on_timeout):
                return pattern
    return None


# ============================================================
# Atomic Writes
# ============================================================


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to path via a temp file in the same directory + rename.

    Readers never observe a partially written file.

    Raises:
        OSError: If the temp file cannot be written or renamed.
    """
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(data))
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


# ============================================================
# Pattern / Exemption Store
# ============================================================


class SecretStore:
    """Storage for merged patterns and session exemptions.

    The hooks never touch cache files directly; they go through a store so
    the decision logic can run against an in-memory store in tests.
    """

    def load_patterns(self) -> tuple[list[str], list[str]]:
        """Return (deny, allow). Raises PatternsUnavailableError."""
        raise NotImplementedError

    def write_patterns(self, deny: list[str], allow: list[str]) -> None:
        raise NotImplementedError

    def load_exemptions(self) -> set[str]:
        raise NotImplementedError

    def append_exemption(self, entry: str) -> bool:
        """Add entry to the exemption set. Returns False if already present."""
        raise NotImplementedError


class FileSecretStore(SecretStore):
    """SecretStore backed by files in the cache directory."""

    def __init__(self, cache_dir: Path):
        self.cache_dir = Path(cache_dir)
        self.deny_file = self.cache_dir / DENY_PATTERNS_FILE
        self.allow_file = self.cache_dir / ALLOW_PATTERNS_FILE
        self.overrides_file = self.cache_dir / OVERRIDES_FILE

    def load_patterns(self) -> tuple[list[str], list[str]]:
        return _read_pattern_file(self.deny_file), _read_pattern_file(self.allow_file)

    def write_patterns(self, deny: list[str], allow: list[str]) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        write_json_atomic(self.deny_file, deny)
        write_json_atomic(self.allow_file, allow)

    def load_exemptions(self) -> set[str]:
        try:
            content = self.overrides_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return set()
        return {line for line in content.split("\n") if line}

    def append_exemption(self, entry: str) -> bool:
        if entry in self.load_exemptions():
            return False
        self.cache_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        with open(self.overrides_file, "a", encoding="utf-8") as f:
            f.write(entry + "\n")
        return True


def _read_pattern_file(path: Path) -> list[str]:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise PatternsUnavailableError(f"{path.name} not found in {path.parent}")
    except (OSError, ValueError) as e:
        raise PatternsUnavailableError(f"Cannot read {path.name}: {e}")

    if not isinstance(data, list) or not all(isinstance(p, str) for p in data):
        raise PatternsUnavailableError(f"{path.name} is not a list of glob strings")
    return data


# ============================================================
# Logging with Rotation
# ============================================================


def _rotate_log_if_needed(log_file: Path) -> None:
    """Rotate log file if it exceeds MAX_LOG_SIZE_BYTES.

    Keeps exactly one backup (.log.1). Silent fail on any error.
    """
    try:
        if not log_file.exists():
            return
        if log_file.stat().st_size < MAX_LOG_SIZE_BYTES:
            return

        backup_file = log_file.with_suffix(".log.1")
        if backup_file.exists():
            backup_file.unlink()
        log_file.rename(backup_file)
    except Exception:
        # Silent fail - rotation is non-critical
        pass


def log_secret_guard(level: str, message: str) -> None:
    """Log a hook event to secret-guard.log in the cache directory.

    Log format:
        TIMESTAMP [LEVEL] [DRY-RUN] MESSAGE

    Args:
        level: Log level (INFO, WARN, ERROR, BLOCK, ALLOW, DRY-RUN)
        message: Message to log.
    """
    try:
        log_file = get_cache_dir() / LOG_FILE
        timestamp = datetime.now().isoformat(timespec="seconds")
        mode = "[DRY-RUN] " if is_dry_run() else ""
        line = f"{timestamp} [{level}] {mode}{message}\n"

        _rotate_log_if_needed(log_file)

        with open(log_file, "a", encoding="utf-8") as f:
            f.write(line)
    except Exception:
        # Silent fail - don't break hook on log error
        pass


def warn(message: str) -> None:
    """Write one message to stderr (surfaced to the agent by the host)."""
    print(message, file=sys.stderr)


def truncate_path(path: str, max_length: int = MAX_PATH_PREVIEW_LENGTH) -> str:
    """Truncate path for display in logs, keeping the end of the path."""
    if len(path) <= max_length:
        return path
    return f"...{path[-(max_length - 3) :]}"


def truncate_command(command: str, max_length: int = MAX_COMMAND_PREVIEW_LENGTH) -> str:
    """Truncate command for display in logs, keeping the start of the command."""
    if len(command) <= max_length:
        return command
    return f"{command[: max_length - 3]}..."


# ============================================================
# Module Self-Test (when run directly)
# ============================================================


if __name__ == "__main__":
    print("_secret_utils.py - Module loaded successfully")
    print(f"Cache dir: {get_cache_dir()}")
    print(f"Plugin root: {get_plugin_root()}")
    print(f"Dry-run mode: {is_dry_run()}")
