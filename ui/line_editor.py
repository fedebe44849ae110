"""Line editor with slash-command and @file autocomplete.

The editor is a pure state machine: feed() takes one KeyEvent and returns
an EditorResult telling the caller whether to redraw, submit a line, or
exit. It never reads the keyboard or writes to the terminal itself, so it
can be driven directly in tests. render_frame() produces the escape
sequence text for one redraw.

States:
    editing     no panel; Enter submits the buffer
    suggesting  panel open; Up/Down select, Tab/Enter accept, Escape closes

Triggers:
    "/" typed into an empty buffer   command mode, anchor 0
    "@" typed anywhere               file mode, anchor just past the "@"
"""

import re
import shutil
import unicodedata
from dataclasses import dataclass, field

from tools.file_read import list_dir
from ui.terminal import (
    BACKSPACE, CHAR, CTRL_C, CTRL_D, DOWN, ENTER, ESCAPE, TAB, UP, KeyEvent,
)


EDITING = "editing"
SUGGESTING = "suggesting"

NONE = "none"
COMMAND = "command"
FILE = "file"

# Result actions
REDRAW = "redraw"
REDRAW_PANEL = "redraw_panel"
SUBMIT = "submit"
EXIT = "exit"
INTERRUPT = "interrupt"
IGNORE = "ignore"

MAX_PANEL_ROWS = 5

_CYAN = "\033[36m"
_DIM = "\033[2m"
_RESET = "\033[0m"

_ANSI_RE = re.compile(r"\033\[[0-9;]*[A-Za-z]")


def display_width(text: str) -> int:
    """Terminal columns taken by text: escape codes are free, wide characters count twice."""
    width = 0
    for ch in _ANSI_RE.sub("", text):
        if unicodedata.combining(ch):
            continue
        width += 2 if unicodedata.east_asian_width(ch) in ("W", "F") else 1
    return width


@dataclass
class Candidate:
    label: str
    value: str
    description: str = ""


@dataclass
class AutocompleteState:
    active: bool = False
    mode: str = NONE
    candidates: list[Candidate] = field(default_factory=list)
    selected_index: int = 0
    query_anchor: int = 0

    def reset(self) -> None:
        self.active = False
        self.mode = NONE
        self.candidates = []
        self.selected_index = 0
        self.query_anchor = 0


@dataclass
class EditorResult:
    action: str
    line: str | None = None


class LineEditor:
    """Keypress-driven input line with an autocomplete panel.

    Args:
        commands: (name, description) pairs; names include the leading "/".
        list_files: Callable(directory) -> entry names, used for @ completion.
        prompt: Text shown before the buffer.
    """

    def __init__(self, commands: list[tuple[str, str]], list_files=list_dir, prompt: str = "> "):
        self.commands = list(commands)
        self.list_files = list_files
        self.prompt = prompt
        self.buffer = ""
        self.ac = AutocompleteState()
        self._cursor_row = 0  # Row of the input line the cursor sits on

    @property
    def state(self) -> str:
        return SUGGESTING if self.ac.active else EDITING

    def reset(self) -> None:
        self.buffer = ""
        self.ac.reset()

    # ------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------

    def feed(self, key: KeyEvent) -> EditorResult:
        if key.kind == CTRL_C:
            return EditorResult(INTERRUPT)

        if key.kind == CTRL_D:
            if not self.buffer:
                return EditorResult(EXIT)
            return EditorResult(IGNORE)

        if self.ac.active and self.ac.candidates:
            if key.kind == UP:
                self.ac.selected_index = max(0, self.ac.selected_index - 1)
                return EditorResult(REDRAW_PANEL)
            if key.kind == DOWN:
                self.ac.selected_index = min(len(self.ac.candidates) - 1, self.ac.selected_index + 1)
                return EditorResult(REDRAW_PANEL)
            if key.kind in (TAB, ENTER):
                self._accept()
                return EditorResult(REDRAW)

        if key.kind == ESCAPE:
            if self.ac.active:
                self.ac.reset()
                return EditorResult(REDRAW)
            return EditorResult(IGNORE)

        if key.kind == ENTER:
            line = self.buffer
            self.reset()
            return EditorResult(SUBMIT, line=line)

        if key.kind == BACKSPACE:
            if not self.buffer:
                return EditorResult(IGNORE)
            self.buffer = self.buffer[:-1]
            if self.ac.active:
                if len(self.buffer) <= self._trigger_position():
                    self.ac.reset()
                else:
                    self._refresh()
            return EditorResult(REDRAW)

        if key.kind == CHAR:
            self._insert(key.char)
            return EditorResult(REDRAW)

        # Tab with nothing to accept, arrows while editing, unknown keys
        return EditorResult(IGNORE)

    def _insert(self, ch: str) -> None:
        if ch == "/" and not self.buffer:
            self.buffer = "/"
            self._open(COMMAND, anchor=0)
            return
        if ch == "@":
            self.buffer += "@"
            self._open(FILE, anchor=len(self.buffer))
            return
        self.buffer += ch
        if self.ac.active:
            self._refresh()

    def _open(self, mode: str, anchor: int) -> None:
        self.ac.active = True
        self.ac.mode = mode
        self.ac.query_anchor = anchor
        self.ac.selected_index = 0
        self._refresh()

    def _trigger_position(self) -> int:
        # Index of the "/" or "@" that opened the panel
        if self.ac.mode == COMMAND:
            return self.ac.query_anchor
        return self.ac.query_anchor - 1

    def _accept(self) -> None:
        selected = self.ac.candidates[self.ac.selected_index]
        head = self.buffer[:self.ac.query_anchor]
        if self.ac.mode == COMMAND:
            self.buffer = head + selected.value
        else:
            self.buffer = head + selected.value + " "
        self.ac.reset()

    def query(self) -> str:
        return self.buffer[self.ac.query_anchor:] if self.ac.active else ""

    def _refresh(self) -> None:
        query = self.query()
        if self.ac.mode == COMMAND:
            self.ac.candidates = [
                Candidate(label=name, value=name, description=desc)
                for name, desc in self.commands
                if query in name
            ]
        elif self.ac.mode == FILE:
            self.ac.candidates = self._file_candidates(query)
        else:
            self.ac.candidates = []
        if self.ac.selected_index >= len(self.ac.candidates):
            self.ac.selected_index = 0

    def _file_candidates(self, query: str) -> list[Candidate]:
        # "src/ma" lists src/ and filters on "ma"
        directory, _, needle = query.rpartition("/")
        prefix = directory + "/" if directory else ""
        names = self.list_files(directory or ".")
        needle = needle.lower()
        return [
            Candidate(label=name, value=prefix + name)
            for name in names
            if needle in name.lower()
        ]

    # ------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------

    def panel_window(self) -> tuple[int, int]:
        """[start, end) slice of candidates visible in the panel."""
        total = len(self.ac.candidates)
        start = max(0, min(self.ac.selected_index - 2, total - MAX_PANEL_ROWS))
        end = min(start + MAX_PANEL_ROWS, total)
        return start, end

    def panel_lines(self) -> list[str]:
        """Panel rows as plain text, selection marked with "> "."""
        if not self.ac.active or not self.ac.candidates:
            return []
        start, end = self.panel_window()
        lines = []
        for i in range(start, end):
            item = self.ac.candidates[i]
            marker = "> " if i == self.ac.selected_index else "  "
            desc = f" - {item.description}" if item.description else ""
            lines.append(f"{marker}{item.label}{desc}")
        remaining = len(self.ac.candidates) - end
        if remaining > 0:
            lines.append(f"  ... ({remaining} more)")
        return lines

    def render_frame(self, color: bool = True, width: int | None = None) -> str:
        """Escape-sequence text that redraws the input line and panel.

        The cursor goes back to the first row of the input line (which may
        have wrapped), everything from there down is erased and reprinted,
        panel rows are drawn underneath, and the cursor is moved back to the
        end of the input line.
        """
        width = width or shutil.get_terminal_size((80, 24)).columns
        line_len = display_width(self.prompt + self.buffer)
        end_row = max(line_len - 1, 0) // width

        out = []
        if self._cursor_row:
            out.append(f"\033[{self._cursor_row}A")
        out += ["\r\033[J", self.prompt, self.buffer]
        self._cursor_row = end_row
        rows = self.panel_lines()
        if not rows:
            return "".join(out)
        for row in rows:
            # One screen line per row
            row = row[:width - 1]
            out.append("\r\n")
            if color and row.startswith("> "):
                out.append(f"{_CYAN}{row}{_RESET}")
            elif color and row.startswith("  ... ("):
                out.append(f"{_DIM}{row}{_RESET}")
            else:
                out.append(row)
        out.append(f"\033[{len(rows)}A\r")
        col = line_len - end_row * width
        if col:
            out.append(f"\033[{col}C")
        return "".join(out)

    def clear_frame(self) -> str:
        """Erase the panel below the line before the line is handed off."""
        self._cursor_row = 0
        return "\033[J\r\n"
