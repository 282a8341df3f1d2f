"""Interactive-command detection for shell tool calls.

Hooks run with no terminal attached, so editors, pagers and interactive git
modes hang until the host kills them. Bash commands are scanned for those
programs and a warning is attached; the command itself is never blocked.
"""

from __future__ import annotations

import os
import re
import shlex

# Environment that keeps git and package managers from prompting
NON_INTERACTIVE_ENV: tuple[tuple[str, str], ...] = (
    ("CI", "true"),
    ("DEBIAN_FRONTEND", "noninteractive"),
    ("GIT_TERMINAL_PROMPT", "0"),
    ("GCM_INTERACTIVE", "never"),
    ("HOMEBREW_NO_AUTO_UPDATE", "1"),
    ("GIT_EDITOR", ":"),
    ("EDITOR", ":"),
    ("VISUAL", ""),
    ("GIT_SEQUENCE_EDITOR", ":"),
    ("GIT_MERGE_AUTOEDIT", "no"),
    ("GIT_PAGER", "cat"),
    ("PAGER", "cat"),
    ("npm_config_yes", "true"),
    ("PIP_NO_INPUT", "1"),
    ("YARN_ENABLE_IMMUTABLE_INSTALLS", "false"),
)

NON_INTERACTIVE_FLAGS = {
    "CI": ("true", "1"),
    "CLAUDE_CODE_NON_INTERACTIVE": ("true",),
    "GITHUB_ACTIONS": ("true",),
}

# Entries with a parenthesised note describe a usage rather than a literal
# command and have no matcher.
BANNED_COMMANDS: tuple[str, ...] = (
    "vim",
    "nano",
    "vi",
    "emacs",
    "less",
    "more",
    "man",
    "python (REPL)",
    "node (REPL)",
    "git add -p",
    "git rebase -i",
)

# (entry, matcher) pairs, so the reported entry is always the one that matched
BANNED_COMMAND_MATCHERS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (cmd, re.compile(rf"\b{re.escape(cmd)}\b"))
    for cmd in BANNED_COMMANDS
    if "(" not in cmd
)


def is_non_interactive(environ: dict[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return any(env.get(name) in values for name, values in NON_INTERACTIVE_FLAGS.items())


def build_env_prefix(env: tuple[tuple[str, str], ...] = NON_INTERACTIVE_ENV) -> str:
    exports = " ".join(f"{key}={shlex.quote(value)}" for key, value in env)
    return f"export {exports};"


def detect_banned_command(command: str) -> str | None:
    """Return the banned entry matched by ``command``, if any."""
    for entry, matcher in BANNED_COMMAND_MATCHERS:
        if matcher.search(command):
            return entry
    return None


def banned_command_warning(command: str) -> str | None:
    banned = detect_banned_command(command)
    if banned is None:
        return None
    return (
        f"Warning: '{banned}' is an interactive command that may hang in "
        "non-interactive environments."
    )


def session_start_notice(environ: dict[str, str] | None = None) -> str | None:
    if not is_non_interactive(environ):
        return None
    return (
        "Non-interactive environment detected. Prefix git commands with: "
        f"{build_env_prefix()}"
    )
