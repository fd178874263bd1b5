#!/usr/bin/env python3
"""Secret Guardian Hook (PreToolUse).

Blocks agent access to secret files (.env, SSH keys, PEM files, keystores,
.npmrc, vault files, ...) by:
1. Parsing the tool call into a ToolCall (Read/Write/Edit, Grep/Glob, Bash, other)
2. Extracting every path the call could touch
3. Checking each path against session exemptions, then allow, then deny patterns

Patterns come from the cache written by merge_denylist.py; exemptions from
the file written by exempt-secret.

Exit codes:
    0 = allow the tool call
    2 = block the tool call (stderr = one-line reason shown to Claude)

Design Principles:
- Fail-Close: malformed input, missing pattern cache or any unexpected error blocks
- Stateless: patterns and exemptions are re-read on every invocation
- Unknown tools are allowed explicitly (ToolCall kind "other")
"""

import json
import os
import re
import shlex
import sys
from pathlib import Path
from typing import Any, NamedTuple

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _secret_utils import (
        EXEMPT_COMMAND_NAME,
        MAX_COMMAND_LENGTH,
        FileSecretStore,
        HookInputError,
        PatternsUnavailableError,
        SecretStore,
        get_cache_dir,
        get_exempt_command_path,
        is_dry_run,
        log_secret_guard,
        match_any,
        truncate_command,
        truncate_path,
        warn,
    )
except ImportError as e:
    # Fail-close: guard utilities unavailable = block all
    print(f"Secret file access blocked: secret guard unavailable ({e})", file=sys.stderr)
    sys.exit(2)


EXIT_ALLOW = 0
EXIT_BLOCK = 2

BLOCK_PREFIX = "Secret file access blocked"

FILE_TOOLS = ("Read", "Write", "Edit")
SEARCH_TOOLS = ("Grep", "Glob")
SHELL_TOOLS = ("Bash",)

KIND_FILE = "file"
KIND_SEARCH = "search"
KIND_SHELL = "shell"
KIND_OTHER = "other"

_TOOL_FIELDS = {KIND_FILE: "file_path", KIND_SEARCH: "path", KIND_SHELL: "command"}

# exempt-secret with plain arguments only (no quoting, expansion or chaining).
# Blanks are spaces and tabs: a newline starts another command.
_EXEMPT_COMMAND_RE = re.compile(
    r"[ \t]*(?P<program>(?:[\w./~-]*/)?" + re.escape(EXEMPT_COMMAND_NAME) + r")(?:[ \t]+[^\s;|&$()`<>'\"\\]+)*[ \t]*\Z"
)

# Control characters that would break the one-line block message
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")

# Characters that separate file names inside a shell token
_TOKEN_SEPARATORS_RE = re.compile(r"[\s<>()`=;|&{},]+")
_PATH_SEPARATORS_RE = re.compile(r"[<>()`=;|&{},]+")


# ============================================================
# Tool Invocation Record
# ============================================================


class ToolCall(NamedTuple):
    """A parsed tool invocation.

    kind is one of KIND_FILE (file_path), KIND_SEARCH (path),
    KIND_SHELL (command) or KIND_OTHER (target is always "").
    """

    tool_name: str
    kind: str
    target: str


class Decision(NamedTuple):
    blocked: bool
    name: str = ""
    path: str = ""
    pattern: str = ""


ALLOW = Decision(False)


def tool_kind(tool_name: str) -> str:
    if tool_name in FILE_TOOLS:
        return KIND_FILE
    if tool_name in SEARCH_TOOLS:
        return KIND_SEARCH
    if tool_name in SHELL_TOOLS:
        return KIND_SHELL
    return KIND_OTHER


def parse_tool_call(input_data: Any) -> ToolCall:
    """Convert hook input JSON into a ToolCall.

    Args:
        input_data: Parsed stdin JSON.

    Returns:
        ToolCall for the invocation.

    Raises:
        HookInputError: If the record cannot be interpreted safely.
    """
    if not isinstance(input_data, dict):
        raise HookInputError(f"expected a JSON object, got {type(input_data).__name__}")

    tool_name = input_data.get("tool_name")
    if not isinstance(tool_name, str) or not tool_name:
        raise HookInputError("missing tool_name")

    kind = tool_kind(tool_name)
    if kind == KIND_OTHER:
        return ToolCall(tool_name, KIND_OTHER, "")

    tool_input = input_data.get("tool_input", {})
    if not isinstance(tool_input, dict):
        raise HookInputError(f"invalid tool_input type: {type(tool_input).__name__}")

    field = _TOOL_FIELDS[kind]
    target = tool_input.get(field)
    if target is None:
        target = ""
    if not isinstance(target, str):
        raise HookInputError(f"invalid {field} type: {type(target).__name__}")
    if "\x00" in target:
        raise HookInputError(f"{field} contains a null byte")

    return ToolCall(tool_name, kind, target)


# ============================================================
# Path Extraction
# ============================================================


def split_commands(command: str) -> list[str]:
    """Split compound command into sub-commands.

    Handles delimiters: ;  &&  ||  |  &  newline

    Does NOT split inside single/double quotes, backticks, $(...), or after
    a backslash. Redirections such as &> and 2>&1 are kept intact.

    Args:
        command: The compound bash command to split.

    Returns:
        List of individual sub-commands (stripped of whitespace).
    """
    sub_commands: list[str] = []
    current: list[str] = []
    depth = 0
    in_single_quote = False
    in_double_quote = False
    in_backtick = False
    i = 0

    def flush():
        sub_commands.append("".join(current).strip())
        current.clear()

    while i < len(command):
        c = command[i]
        nxt = command[i + 1] if i + 1 < len(command) else ""

        if c == "\\" and not in_single_quote:
            current.append(c + nxt)
            i += 2
            continue
        if c == "'" and not in_double_quote and not in_backtick:
            in_single_quote = not in_single_quote
        elif c == '"' and not in_single_quote and not in_backtick:
            in_double_quote = not in_double_quote
        elif in_single_quote or in_double_quote:
            pass
        elif c == "`":
            in_backtick = not in_backtick
        elif in_backtick:
            pass
        elif c == "(" and (depth > 0 or (i > 0 and command[i - 1] in "$<>")):
            depth += 1
        elif c == ")" and depth > 0:
            depth -= 1
        elif depth == 0 and c in ";\n":
            flush()
            i += 1
            continue
        elif depth == 0 and c in "&|" and nxt == c:
            flush()
            i += 2
            continue
        elif depth == 0 and c == "|":
            flush()
            i += 1
            continue
        elif depth == 0 and c == "&":
            prev = command[i - 1] if i > 0 else ""
            # &>, >&, <& and 2>&1 are redirections, not separators
            if nxt != ">" and prev not in ("<", ">"):
                flush()
                i += 1
                continue

        current.append(c)
        i += 1

    flush()
    return [cmd for cmd in sub_commands if cmd]


def _tokenize(sub_command: str) -> list[str]:
    try:
        return shlex.split(sub_command)
    except ValueError as e:
        log_secret_guard("INFO", f"shlex.split failed ({e}), falling back to simple split")
        return sub_command.split()


def _is_path_candidate(s: str) -> bool:
    """Check if a string is a plausible filesystem path."""
    if not s or len(s) > 4096:
        return False
    return all(len(component) <= 255 for component in s.split("/"))


def basename_of(path: str) -> str:
    """Last path component, ignoring trailing separators."""
    stripped = path.rstrip("/\\") or path
    return re.split(r"[/\\]", stripped)[-1] or stripped


def _token_pieces(token: str) -> list[str]:
    pieces = _TOKEN_SEPARATORS_RE.split(token)
    if re.search(r"\s", token):
        # Quoted token: either a path with spaces or a nested command
        pieces = _PATH_SEPARATORS_RE.split(token) + pieces
    return pieces


def extract_bash_paths(command: str, deny_patterns: list[str]) -> list[str]:
    """Extract path-like strings from a Bash command (best-effort).

    Every token of every sub-command is split on redirection and grouping
    characters and on "=" (dd if=..., --env-file=...). A piece is kept if it
    contains "/" or its basename matches a deny pattern.

    Args:
        command: The raw bash command.
        deny_patterns: Merged deny globs.

    Returns:
        Candidate paths in command order, without duplicates.
    """
    candidates: dict[str, None] = {}
    for sub_command in split_commands(command):
        for token in _tokenize(sub_command):
            for piece in _token_pieces(token):
                piece = piece.strip("'\"")
                if piece.startswith("-"):
                    # -f.env style: short flag with the value attached
                    if piece.startswith("--") or len(piece) <= 2:
                        continue
                    piece = piece[2:]

                try:
                    piece = os.path.expanduser(os.path.expandvars(piece))
                except (KeyError, RuntimeError):
                    pass

                if not _is_path_candidate(piece):
                    continue
                if "/" in piece or match_any([basename_of(piece)], deny_patterns, on_timeout=True):
                    candidates[piece] = None
    return list(candidates)


def is_exempt_secret_command(command: str) -> bool:
    """Check if a Bash command only runs exempt-secret with plain arguments.

    The program must be the bare installed command or the plugin's own
    hooks/bin/exempt-secret, not any script that happens to share the name.
    """
    match = _EXEMPT_COMMAND_RE.match(command)
    if not match:
        return False
    program = match.group("program")
    if program == EXEMPT_COMMAND_NAME:
        return True
    try:
        return Path(program).expanduser().resolve() == get_exempt_command_path().resolve()
    except (OSError, RuntimeError):
        return False


# ============================================================
# Decision
# ============================================================


def is_exempted(names: list[str], exemptions: set[str]) -> bool:
    """Check names (basename, full path) against session exemptions."""
    if any(name in exemptions for name in names):
        return True
    return match_any(names, sorted(exemptions)) is not None


def check_path(
    path: str,
    deny: list[str],
    allow: list[str],
    exemptions: set[str],
) -> Decision:
    """Check one candidate path.

    Precedence: session exemption > allow pattern > deny pattern.
    Both the basename and the full path are matched.
    """
    if not path:
        return ALLOW

    name = basename_of(path)
    full = path.rstrip("/\\") or path
    names = [name] if full == name else [name, full]

    if is_exempted(names, exemptions):
        log_secret_guard("ALLOW", f"Session exemption: {truncate_path(path)}")
        return ALLOW
    if match_any(names, allow) is not None:
        return ALLOW

    pattern = match_any(names, deny, on_timeout=True)
    if pattern is not None:
        return Decision(True, name=name, path=path, pattern=pattern)
    return ALLOW


def candidate_paths(call: ToolCall, deny: list[str]) -> list[str]:
    """All paths a tool call could touch."""
    if call.kind in (KIND_FILE, KIND_SEARCH):
        return [call.target] if call.target else []
    if call.kind == KIND_SHELL:
        return extract_bash_paths(call.target, deny)
    # KIND_OTHER: nothing to police
    return []


def load_exemptions(store: SecretStore) -> set[str]:
    try:
        return store.load_exemptions()
    except (OSError, ValueError) as e:
        # Unreadable exemptions only make the guard stricter
        log_secret_guard("WARN", f"Could not read session exemptions: {e}")
        return set()


def evaluate_tool_call(call: ToolCall, store: SecretStore) -> Decision:
    """Decide whether a tool call touches a protected file.

    Args:
        call: Parsed tool call.
        store: Source of merged patterns and session exemptions.

    Returns:
        Decision; blocked=True for the first denied path.

    Raises:
        PatternsUnavailableError: If the pattern cache cannot be loaded.
    """
    if call.kind == KIND_OTHER:
        return ALLOW

    if call.kind == KIND_SHELL:
        if is_exempt_secret_command(call.target):
            log_secret_guard("ALLOW", f"exempt-secret command: {truncate_command(call.target)}")
            return ALLOW
        if len(call.target) > MAX_COMMAND_LENGTH:
            log_secret_guard(
                "BLOCK",
                f"Command exceeds size limit ({len(call.target)} > {MAX_COMMAND_LENGTH} bytes)",
            )
            return Decision(True, name=f"command too large ({len(call.target)} bytes)")

    deny, allow = store.load_patterns()
    exemptions = load_exemptions(store)

    for path in candidate_paths(call, deny):
        decision = check_path(path, deny, allow, exemptions)
        if decision.blocked:
            return decision
    return ALLOW


def _escape_control_chars(s: str) -> str:
    return _CONTROL_CHARS_RE.sub(lambda m: f"\\x{ord(m.group()):02x}", s)


def block_message(decision: Decision) -> str:
    """Build the one-line message shown to Claude."""
    name = _escape_control_chars(decision.name)
    if not decision.path:
        return f"{BLOCK_PREFIX}: {name}"
    path = _escape_control_chars(decision.path)
    pattern = _escape_control_chars(decision.pattern)
    exempt_cmd = f"{get_exempt_command_path()} {shlex.quote(path)}"
    return (
        f"{BLOCK_PREFIX}: {name} (matches secret pattern '{pattern}'). "
        f"To grant access for this session, ask the user for permission, then run: {exempt_cmd}"
    )


# ============================================================
# Main Hook Logic
# ============================================================


def main() -> int:
    """Main hook entry point. Returns the process exit code."""
    # Parse input - FAIL-CLOSE on invalid JSON
    try:
        input_data = json.load(sys.stdin)
    except ValueError as e:
        log_secret_guard("ERROR", f"Malformed JSON input: {e}")
        warn(f"{BLOCK_PREFIX}: invalid hook input (malformed JSON)")
        return EXIT_BLOCK

    try:
        call = parse_tool_call(input_data)
    except HookInputError as e:
        log_secret_guard("ERROR", f"Invalid hook input: {e}")
        warn(f"{BLOCK_PREFIX}: invalid hook input ({e})")
        return EXIT_BLOCK

    if call.kind == KIND_OTHER:
        return EXIT_ALLOW

    store = FileSecretStore(get_cache_dir())
    try:
        decision = evaluate_tool_call(call, store)
    except PatternsUnavailableError as e:
        # Fail-close: no patterns = cannot tell secrets apart
        log_secret_guard("ERROR", f"Pattern cache unavailable ({call.tool_name}): {e}")
        warn(
            f"{BLOCK_PREFIX}: configuration unavailable, blocking file access as a "
            "safety measure (run merge_denylist.py to rebuild the pattern cache)"
        )
        return EXIT_BLOCK

    if not decision.blocked:
        return EXIT_ALLOW

    log_secret_guard(
        "BLOCK",
        f"{call.tool_name}: {truncate_path(decision.path or call.target)} ({decision.pattern or decision.name})",
    )
    if is_dry_run():
        log_secret_guard("DRY-RUN", f"Would BLOCK {call.tool_name}")
        return EXIT_ALLOW

    warn(block_message(decision))
    return EXIT_BLOCK


def run() -> int:
    """Run main() with fail-close semantics for unexpected errors."""
    try:
        return main()
    except Exception as e:
        # Fail-close: on unexpected errors, block for safety
        log_secret_guard("ERROR", f"Secret guardian error: {type(e).__name__}: {e}")
        print(f"{BLOCK_PREFIX}: secret guard error ({type(e).__name__})", file=sys.stderr)
        return EXIT_BLOCK


if __name__ == "__main__":
    sys.exit(run())
