"""Raw keyboard input for the line editor.

TerminalSession owns the terminal mode for the lifetime of the REPL: it
switches stdin to raw (no echo, no line buffering, no signal keys) on
entry and always restores the saved mode on exit. suspended() hands the
terminal back in its normal mode for work that needs it (streaming
output with Ctrl+C cancellation, confirmation prompts, child processes).

Keys are decoded into KeyEvent values so the editor never sees escape
sequences or platform differences.
"""

import codecs
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass

if sys.platform == "win32":
    import msvcrt
    termios = None
    tty = None
else:
    import termios
    import tty
    msvcrt = None


CHAR = "char"
ENTER = "enter"
TAB = "tab"
BACKSPACE = "backspace"
ESCAPE = "escape"
UP = "up"
DOWN = "down"
LEFT = "left"
RIGHT = "right"
CTRL_C = "ctrl_c"
CTRL_D = "ctrl_d"
UNKNOWN = "unknown"


@dataclass(frozen=True)
class KeyEvent:
    kind: str
    char: str = ""


_SINGLE = {
    "\r": ENTER,
    "\n": ENTER,
    "\t": TAB,
    "\x7f": BACKSPACE,
    "\x08": BACKSPACE,
    "\x03": CTRL_C,
    "\x04": CTRL_D,
}

_ARROWS = {"A": UP, "B": DOWN, "C": RIGHT, "D": LEFT}

# msvcrt reports special keys as a prefix character followed by a scan code
_WIN_PREFIXES = ("\x00", "\xe0")
_WIN_SCAN = {"H": UP, "P": DOWN, "M": RIGHT, "K": LEFT}


def decode_keys(data: str) -> list[KeyEvent]:
    """Decode a chunk of raw terminal input into key events.

    Handles CSI ("ESC [") and SS3 ("ESC O") arrow sequences; other escape
    sequences become a single UNKNOWN event. A lone ESC is ESCAPE.
    "\\r\\n" counts as one ENTER.
    """
    events = []
    i = 0
    n = len(data)
    while i < n:
        ch = data[i]
        if ch == "\x1b":
            if i + 1 >= n:
                events.append(KeyEvent(ESCAPE))
                i += 1
                continue
            nxt = data[i + 1]
            if nxt == "O" and i + 2 < n:
                events.append(KeyEvent(_ARROWS.get(data[i + 2], UNKNOWN)))
                i += 3
                continue
            if nxt == "[":
                # Parameters run until a final byte in @..~
                j = i + 2
                while j < n and not ("@" <= data[j] <= "~"):
                    j += 1
                if j >= n:
                    events.append(KeyEvent(UNKNOWN))
                    i = n
                    continue
                params, final = data[i + 2:j], data[j]
                kind = _ARROWS.get(final, UNKNOWN) if not params or params == "1" else UNKNOWN
                events.append(KeyEvent(kind))
                i = j + 1
                continue
            events.append(KeyEvent(ESCAPE))
            i += 1
            continue
        if ch == "\r" and i + 1 < n and data[i + 1] == "\n":
            events.append(KeyEvent(ENTER))
            i += 2
            continue
        if ch in _SINGLE:
            events.append(KeyEvent(_SINGLE[ch]))
        elif ch.isprintable():
            events.append(KeyEvent(CHAR, ch))
        else:
            events.append(KeyEvent(UNKNOWN))
        i += 1
    return events


def decode_windows_key(ch: str, read_next) -> KeyEvent:
    """Decode one msvcrt.getwch() character; read_next() fetches a scan code."""
    if ch in _WIN_PREFIXES:
        return KeyEvent(_WIN_SCAN.get(read_next(), UNKNOWN))
    if ch == "\x1b":
        return KeyEvent(ESCAPE)
    if ch == "\x1a":  # Ctrl+Z is end-of-input on Windows consoles
        return KeyEvent(CTRL_D)
    events = decode_keys(ch)
    return events[0] if events else KeyEvent(UNKNOWN)


def is_interactive(stream=None) -> bool:
    stream = stream or sys.stdin
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False


class TerminalSession:
    """Scoped raw-mode ownership of the controlling terminal."""

    def __init__(self, stdin=None):
        self.stdin = stdin or sys.stdin
        self._fd = None
        self._saved = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending: list[KeyEvent] = []

    def __enter__(self) -> "TerminalSession":
        if termios is not None:
            self._fd = self.stdin.fileno()
            self._saved = termios.tcgetattr(self._fd)
            self._enter_raw()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._restore()

    def _enter_raw(self) -> None:
        mode = termios.tcgetattr(self._fd)
        # Same flags as tty.setraw for input, but keep output processing so
        # "\n" still returns the carriage for ordinary print() calls.
        mode[tty.IFLAG] &= ~(termios.BRKINT | termios.ICRNL | termios.INPCK | termios.ISTRIP | termios.IXON)
        mode[tty.CFLAG] |= termios.CS8
        mode[tty.LFLAG] &= ~(termios.ECHO | termios.ICANON | termios.IEXTEN | termios.ISIG)
        mode[tty.CC][termios.VMIN] = 1
        mode[tty.CC][termios.VTIME] = 0
        termios.tcsetattr(self._fd, termios.TCSAFLUSH, mode)

    def _restore(self) -> None:
        if self._saved is not None:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved)

    @contextmanager
    def suspended(self):
        """Temporarily return the terminal to its normal mode."""
        self._restore()
        try:
            yield
        finally:
            if self._saved is not None:
                self._enter_raw()

    def read_key(self) -> KeyEvent:
        """Block until the next key event."""
        while not self._pending:
            if msvcrt is not None:
                return decode_windows_key(msvcrt.getwch(), msvcrt.getwch)
            data = os.read(self._fd, 1024)
            if not data:
                return KeyEvent(CTRL_D)
            self._pending.extend(decode_keys(self._decoder.decode(data)))
        return self._pending.pop(0)
