"""Command safety gate for Parley's `!command` shell passthrough.

Every shell command typed by the operator passes through classify() before
anything is spawned. Two ordered rule sets:
  - BLOCKING: catastrophic commands. Refused outright, never executed.
  - WARNING:  risky but legitimate commands. Executed only after the
              operator confirms.

Blocking rules are always checked first, so a catastrophic command can never
be downgraded to a mere warning by a broader warning rule.

This is a best-effort heuristic over the raw command text, not a sandbox.
Substring/regex matching will flag some harmless commands (rm -rf ./build/)
and miss destructive ones phrased indirectly (scripts, package managers).
"""

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class CommandVerdict:
    """Result of classifying one command."""
    dangerous: bool            # Blocked, must not run
    needs_confirmation: bool   # Ask the operator before running
    reason: str | None = None  # Human-readable explanation for the match
    rule: str | None = None    # Name of the rule that decided the verdict


@dataclass(frozen=True)
class SafetyRule:
    """One pattern in a rule set."""
    name: str
    pattern: re.Pattern
    reason: str


def _rule(name: str, pattern: str, reason: str, flags: int = 0) -> SafetyRule:
    return SafetyRule(name=name, pattern=re.compile(pattern, flags), reason=reason)


# ============================================================
# BLOCKING: catastrophic, refused outright
# ============================================================

BLOCKING_RULES: list[SafetyRule] = [
    _rule(
        "root_recursive_delete",
        r'\brm\s+(?:-{1,2}[\w-]+\s+)*-\w*[rR]\w*\s+(?:-{1,2}[\w-]+\s+)*/(?:\*|\s|$)',
        "Recursive delete of the root filesystem.",
    ),
    _rule(
        "root_recursive_delete_long",
        r'\brm\s+.*--recursive\b.*\s/(?:\*|\s|$)',
        "Recursive delete of the root filesystem.",
    ),
    _rule(
        "fork_bomb",
        r':\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;?\s*:?',
        "Fork bomb: spawns processes until the system stalls.",
    ),
    _rule(
        "block_device_write",
        r'>\s*/dev/(?:sd|hd|vd|xvd|nvme|mmcblk|disk)\w*',
        "Raw write to a block device destroys its filesystem.",
    ),
    _rule(
        "mkfs",
        r'\bmkfs(?:\.\w+)?\b',
        "Creating a filesystem erases the target device.",
    ),
    _rule(
        "dd_to_device",
        r'\bdd\b[^|;&]*\bof=/dev/(?!null\b|zero\b|stdout\b|stderr\b)',
        "dd writing directly to a device file.",
    ),
    _rule(
        "windows_format",
        r'\bformat\s+[a-z]:',
        "Formatting a Windows drive.",
        re.IGNORECASE,
    ),
]

# ============================================================
# WARNING: allowed after explicit confirmation
# ============================================================

WARNING_RULES: list[SafetyRule] = [
    _rule(
        "recursive_delete",
        r'\brm\s+(?:-{1,2}[\w-]+\s+)*(?:-\w*[rR]\w*|--recursive)\b',
        "Recursive delete.",
    ),
    _rule(
        "wildcard_delete",
        r'\brm\s+.*\*',
        "Delete with a wildcard.",
    ),
    _rule(
        "privilege_escalation",
        r'(?:^|[\s;&|(])(?:sudo|doas)\b',
        "Runs with elevated privileges.",
    ),
    _rule(
        "global_npm_install",
        r'\bnpm\s+(?:install|i|add)\b.*\s(?:-g|--global)\b',
        "Global package install.",
    ),
    _rule(
        "global_yarn_pnpm_install",
        r'\b(?:yarn\s+global\s+add|pnpm\s+(?:add|install)\b.*\s(?:-g|--global)\b)',
        "Global package install.",
    ),
    _rule(
        "windows_recursive_delete",
        r'\b(?:del|erase)\b.*\s/[sqSQ]\b',
        "Windows delete with recursive/quiet flags.",
        re.IGNORECASE,
    ),
    _rule(
        "windows_rmdir_recursive",
        r'\b(?:rmdir|rd)\b.*\s/[sS]\b',
        "Windows recursive directory removal.",
        re.IGNORECASE,
    ),
    _rule(
        "powershell_recursive_remove",
        r'\bRemove-Item\b.*-Recurse\b',
        "PowerShell recursive removal.",
        re.IGNORECASE,
    ),
]


def _first_match(command: str, rules: list[SafetyRule]) -> SafetyRule | None:
    for rule in rules:
        if rule.pattern.search(command):
            return rule
    return None


def classify(command: str) -> CommandVerdict:
    """Classify a shell command as safe, needs-confirmation, or blocked.

    Pure and synchronous. Blocking rules take precedence over warning rules.
    """
    rule = _first_match(command, BLOCKING_RULES)
    if rule is not None:
        return CommandVerdict(dangerous=True, needs_confirmation=True, reason=rule.reason, rule=rule.name)

    rule = _first_match(command, WARNING_RULES)
    if rule is not None:
        return CommandVerdict(dangerous=False, needs_confirmation=True, reason=rule.reason, rule=rule.name)

    return CommandVerdict(dangerous=False, needs_confirmation=False)
