"""Input classification for the Parley REPL.

A completed line is one of:
  - slash:     "/help", "/save name"  resolved by the orchestrator
  - shell:     "!ls -la"              run through the command safety gate
  - file_ref:  "@a.py @b.py explain"  files loaded into context, residue sent
  - message:   anything else           sent to the model as-is

Precedence is fixed: slash > shell > file_ref > message. Classification is
purely syntactic; an email address ("me@host.com") is treated as a file
reference token exactly like "@README.md".
"""

import re
from dataclasses import dataclass, field

SLASH = "slash"
SHELL = "shell"
FILE_REF = "file_ref"
MESSAGE = "message"

# @"quoted path with spaces" or @token (maximal run of non-whitespace)
_FILE_REF_RE = re.compile(r'@"([^"]*)"|@(\S+)')
# A reference standing on its own, with the blanks that follow it
_REF_GAP_RE = re.compile(r'(?<!\S)(?:@"[^"]*"|@\S+)[ \t]*')


@dataclass
class ParsedInput:
    """A classified input line."""
    kind: str                                       # SLASH, SHELL, FILE_REF or MESSAGE
    payload: str                                    # Cleaned text for the chosen kind
    original: str = ""
    files: list[str] = field(default_factory=list)  # FILE_REF only, first-appearance order
    command: str | None = None                      # SHELL only


def parse_file_references(text: str) -> tuple[list[str], str]:
    """Extract @file tokens from text.

    Returns (files, cleaned) where cleaned is the text with every @token
    removed and the residue trimmed. Whitespace elsewhere in the
    text is left as typed. Duplicates are kept.
    """
    files = []
    for match in _FILE_REF_RE.finditer(text):
        token = match.group(1) if match.group(1) is not None else match.group(2)
        files.append(token)
    cleaned = _FILE_REF_RE.sub("", _REF_GAP_RE.sub("", text)).strip()
    return files, cleaned


def classify(line: str) -> ParsedInput:
    """Classify a raw input line into a ParsedInput."""
    stripped = line.strip()

    if stripped.startswith("/"):
        return ParsedInput(kind=SLASH, payload=stripped, original=line)

    if stripped.startswith("!"):
        command = stripped[1:].strip()
        return ParsedInput(kind=SHELL, payload=command, original=line, command=command)

    files, cleaned = parse_file_references(line)
    if files:
        return ParsedInput(kind=FILE_REF, payload=cleaned, original=line, files=files)

    return ParsedInput(kind=MESSAGE, payload=line, original=line)


def split_slash_command(line: str) -> tuple[str, str]:
    """Split "/name rest of args" into ("name", "rest of args"). Name is lowercased."""
    parts = line.strip()[1:].split(None, 1)
    if not parts:
        return "", ""
    name = parts[0].lower()
    args = parts[1].strip() if len(parts) > 1 else ""
    return name, args
