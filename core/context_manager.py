"""Context manager for Parley: named text blobs injected into the prompt.

Holds file contents (from @file references) and shell command output
(from !command) keyed by path or label. Entries render in insertion order
as fenced blocks that the orchestrator appends to the system prompt.

Keys are unique: adding an existing key overwrites its content and moves
nothing (insertion position is kept). The manager never touches the
filesystem; callers read files and hand over the text.
"""

import time
from dataclasses import dataclass


# Default render ceiling in characters
DEFAULT_MAX_CHARS = 50_000

TRUNCATION_MARKER = "\n\n... (context truncated)"


@dataclass
class ContextItem:
    """One named blob of context."""
    key: str        # File path or label such as "[Command: ls]"
    content: str
    size: int       # len(content)
    added_at: float  # time.time() of the last add


class ContextManager:
    """Bounded collection of context items with O(1) size bookkeeping."""

    def __init__(self, max_chars: int = DEFAULT_MAX_CHARS):
        """Initialize context manager.

        Args:
            max_chars: Ceiling for render() output, marker included.
        """
        self.max_chars = max_chars
        self._items: dict[str, ContextItem] = {}
        self._total_size = 0

    def add(self, key: str, content: str) -> ContextItem:
        """Insert or overwrite an entry (last write wins)."""
        previous = self._items.get(key)
        if previous is not None:
            self._total_size -= previous.size
        item = ContextItem(key=key, content=content, size=len(content), added_at=time.time())
        self._items[key] = item
        self._total_size += item.size
        return item

    def remove(self, key: str) -> bool:
        """Remove an entry. Returns True if it existed."""
        item = self._items.pop(key, None)
        if item is None:
            return False
        self._total_size -= item.size
        return True

    def clear(self) -> None:
        """Remove all entries."""
        self._items.clear()
        self._total_size = 0

    def has(self, key: str) -> bool:
        return key in self._items

    def get(self, key: str) -> ContextItem | None:
        return self._items.get(key)

    def items(self) -> list[ContextItem]:
        """Entries in insertion order."""
        return list(self._items.values())

    def total_size(self) -> int:
        return self._total_size

    def count(self) -> int:
        return len(self._items)

    def render(self) -> str:
        """Render all entries as one prompt-injectable block.

        Each entry becomes "### {key}\\n```\\n{content}\\n```\\n". If the result
        exceeds max_chars it is cut so that the output, including the
        truncation marker, is exactly within the ceiling.
        """
        if not self._items:
            return ""

        blocks = [f"### {item.key}\n```\n{item.content}\n```\n" for item in self._items.values()]
        text = "".join(blocks)

        if len(text) <= self.max_chars:
            return text

        keep = max(0, self.max_chars - len(TRUNCATION_MARKER))
        return text[:keep] + TRUNCATION_MARKER[:self.max_chars - keep]
