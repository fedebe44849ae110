"""System prompt assembly.

Final prompt = base (default, --system-prompt, or --system-prompt-file)
             + --append-system-prompt
             + environment (platform, working directory, date)
             + PARLEY.md project notes, if one is found
The context block is appended later, per request, by the orchestrator.
"""

import os
import platform
import sys
from datetime import datetime
from pathlib import Path


PROJECT_FILE = "PARLEY.md"

DEFAULT_SYSTEM_PROMPT = """You are Parley, a helpful assistant running in the user's terminal.

- Answer concisely. Prefer short paragraphs and code blocks over long prose.
- Files the user references with @path and the output of commands they run
  with !command appear below under "Context". Treat them as the current state
  of the user's project.
- You cannot run commands or edit files yourself. When a change is needed,
  show the exact command or code so the user can apply it.
- If the context does not contain what you need, say so instead of guessing."""


def find_project_file(start: str = ".") -> Path | None:
    """Walk from start up to the filesystem root; return the first PARLEY.md found."""
    current = Path(start).resolve()
    for directory in (current, *current.parents):
        candidate = directory / PROJECT_FILE
        if candidate.is_file():
            return candidate
    return None


def load_project_notes(start: str = ".") -> tuple[Path, str] | None:
    path = find_project_file(start)
    if path is None:
        return None
    try:
        return path, path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        print(f"Warning: could not read {path}: {e}", file=sys.stderr)
        return None


def build_system_prompt(config: dict, cwd: str = ".") -> str:
    """Assemble the system prompt from configuration.

    A system_prompt_file that cannot be read produces a warning on stderr and
    falls back to the inline system_prompt or the default.
    """
    base = None
    prompt_file = config.get("system_prompt_file")
    if prompt_file:
        try:
            base = Path(prompt_file).expanduser().read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            print(f"Warning: could not read system prompt file {prompt_file}: {e}", file=sys.stderr)
    if base is None:
        base = config.get("system_prompt") or DEFAULT_SYSTEM_PROMPT

    sections = [base]
    append = config.get("append_system_prompt")
    if append:
        sections.append(append)

    sections.append(
        "## Environment\n"
        f"- Platform: {platform.system()} {platform.release()}\n"
        f"- Working directory: {os.path.realpath(cwd)}\n"
        f"- Date: {datetime.now().strftime('%Y-%m-%d')}"
    )

    notes = load_project_notes(cwd)
    if notes is not None:
        path, text = notes
        sections.append(f"## Project notes ({path.name})\n\n{text.strip()}")

    return "\n\n".join(sections)


def with_context(system_prompt: str, context_block: str) -> str:
    """Append the rendered context block to the system prompt."""
    if not context_block:
        return system_prompt
    return f"{system_prompt}\n\n## Context\n\n{context_block}"
