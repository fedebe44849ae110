"""Tests for the line editor state machine and raw key decoding.

Run with: python -m pytest tests/test_line_editor.py -v
Or: python tests/test_line_editor.py (standalone)
"""

import os
import sys

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ui.line_editor import (
    COMMAND, EDITING, EXIT, FILE, IGNORE, INTERRUPT, REDRAW, REDRAW_PANEL, SUBMIT, SUGGESTING,
    LineEditor, display_width,
)
from ui.terminal import (
    BACKSPACE, CHAR, CTRL_C, CTRL_D, DOWN, ENTER, ESCAPE, LEFT, RIGHT, TAB, UNKNOWN, UP,
    KeyEvent, decode_keys, decode_windows_key,
)


# ============================================================
# Fixtures
# ============================================================

COMMANDS = [
    ("/help", "Show commands"),
    ("/clear", "Clear conversation and context"),
    ("/save", "Save the session"),
    ("/load", "Load a session"),
    ("/sessions", "List saved sessions"),
    ("/delete", "Delete a session"),
    ("/context", "Show context entries"),
    ("/files", "List context files"),
    ("/drop", "Remove a context entry"),
    ("/tokens", "Estimate token usage"),
    ("/config", "Show configuration"),
    ("/exit", "Quit"),
    ("/quit", "Quit"),
]

FILES = {
    ".": ["README.md", "setup.py", "src/"],
    "src": ["main.py", "util.py"],
}


def fake_list_files(directory):
    return FILES.get(directory, [])


def make_editor():
    return LineEditor(COMMANDS, list_files=fake_list_files)


def key(kind, char=""):
    return KeyEvent(kind, char)


def type_text(editor, text):
    result = None
    for ch in text:
        result = editor.feed(key(CHAR, ch))
    return result


# ============================================================
# Editing Tests
# ============================================================

def test_plain_typing_and_submit():
    ed = make_editor()
    assert type_text(ed, "hello").action == REDRAW
    assert ed.state == EDITING
    result = ed.feed(key(ENTER))
    assert result.action == SUBMIT
    assert result.line == "hello"
    assert ed.buffer == ""


def test_backspace_editing():
    ed = make_editor()
    type_text(ed, "abc")
    ed.feed(key(BACKSPACE))
    assert ed.buffer == "ab"
    ed.reset()
    assert ed.feed(key(BACKSPACE)).action == IGNORE


def test_ctrl_keys():
    ed = make_editor()
    assert ed.feed(key(CTRL_D)).action == EXIT
    type_text(ed, "x")
    assert ed.feed(key(CTRL_D)).action == IGNORE
    assert ed.feed(key(CTRL_C)).action == INTERRUPT


def test_arrows_ignored_while_editing():
    ed = make_editor()
    type_text(ed, "hi")
    assert ed.feed(key(UP)).action == IGNORE
    assert ed.feed(key(TAB)).action == IGNORE
    assert ed.feed(key(ESCAPE)).action == IGNORE
    assert ed.buffer == "hi"


# ============================================================
# Command Autocomplete Tests
# ============================================================

def test_slash_opens_command_panel():
    ed = make_editor()
    ed.feed(key(CHAR, "/"))
    assert ed.state == SUGGESTING
    assert ed.ac.mode == COMMAND
    assert ed.ac.query_anchor == 0
    assert len(ed.ac.candidates) == len(COMMANDS)


def test_slash_mid_line_does_not_open_panel():
    ed = make_editor()
    type_text(ed, "a/b")
    assert ed.state == EDITING


def test_command_filter_and_accept():
    ed = make_editor()
    type_text(ed, "/he")
    assert [c.value for c in ed.ac.candidates] == ["/help"]
    assert ed.feed(key(TAB)).action == REDRAW
    assert ed.buffer == "/help"
    assert ed.state == EDITING
    result = ed.feed(key(ENTER))
    assert result.action == SUBMIT and result.line == "/help"


def test_command_filter_narrows():
    ed = make_editor()
    type_text(ed, "/se")
    assert [c.value for c in ed.ac.candidates] == ["/sessions"]


def test_selection_clamps():
    ed = make_editor()
    ed.feed(key(CHAR, "/"))
    assert ed.feed(key(UP)).action == REDRAW_PANEL
    assert ed.ac.selected_index == 0
    for _ in range(len(COMMANDS) + 3):
        ed.feed(key(DOWN))
    assert ed.ac.selected_index == len(COMMANDS) - 1
    ed.feed(key(ENTER))
    assert ed.buffer == "/quit"


def test_escape_closes_panel_keeps_buffer():
    ed = make_editor()
    type_text(ed, "/sa")
    assert ed.feed(key(ESCAPE)).action == REDRAW
    assert ed.state == EDITING
    assert ed.buffer == "/sa"


def test_backspace_over_trigger_closes_panel():
    ed = make_editor()
    type_text(ed, "/h")
    ed.feed(key(BACKSPACE))
    assert ed.state == SUGGESTING
    assert len(ed.ac.candidates) == len(COMMANDS)
    ed.feed(key(BACKSPACE))
    assert ed.buffer == ""
    assert ed.state == EDITING


def test_enter_with_no_candidates_submits():
    ed = make_editor()
    type_text(ed, "/zzz")
    assert ed.state == SUGGESTING
    assert ed.ac.candidates == []
    assert ed.feed(key(TAB)).action == IGNORE
    result = ed.feed(key(ENTER))
    assert result.action == SUBMIT
    assert result.line == "/zzz"


# ============================================================
# File Autocomplete Tests
# ============================================================

def test_at_opens_file_panel():
    ed = make_editor()
    type_text(ed, "see @")
    assert ed.ac.mode == FILE
    assert ed.ac.query_anchor == 5
    assert [c.label for c in ed.ac.candidates] == ["README.md", "setup.py", "src/"]


def test_file_filter_case_insensitive_and_accept():
    ed = make_editor()
    type_text(ed, "see @re")
    assert [c.value for c in ed.ac.candidates] == ["README.md"]
    ed.feed(key(TAB))
    assert ed.buffer == "see @README.md "
    assert ed.state == EDITING


def test_file_subdirectory_completion():
    ed = make_editor()
    type_text(ed, "@src/ma")
    assert [c.value for c in ed.ac.candidates] == ["src/main.py"]
    ed.feed(key(ENTER))
    assert ed.buffer == "@src/main.py "


def test_backspace_over_at_closes_file_panel():
    ed = make_editor()
    type_text(ed, "x @")
    assert ed.state == SUGGESTING
    ed.feed(key(BACKSPACE))
    assert ed.buffer == "x "
    assert ed.state == EDITING


# ============================================================
# Rendering Tests
# ============================================================

def test_panel_window_follows_selection():
    ed = make_editor()
    ed.feed(key(CHAR, "/"))
    assert ed.panel_window() == (0, 5)
    ed.ac.selected_index = 7
    assert ed.panel_window() == (5, 10)
    ed.ac.selected_index = 12
    assert ed.panel_window() == (8, 13)


def test_panel_lines_marks_selection_and_overflow():
    ed = make_editor()
    ed.feed(key(CHAR, "/"))
    ed.ac.selected_index = 1
    lines = ed.panel_lines()
    assert len(lines) == 6
    assert lines[0].startswith("  /help")
    assert lines[1] == "> /clear - Clear conversation and context"
    assert lines[-1] == "  ... (8 more)"


def test_render_frame_without_panel():
    ed = make_editor()
    type_text(ed, "hi")
    assert ed.render_frame(color=False, width=80) == "\r\033[J> hi"


def test_render_frame_with_panel_returns_cursor():
    ed = make_editor()
    type_text(ed, "/he")
    frame = ed.render_frame(color=False, width=80)
    assert frame.startswith("\r\033[J> /he\r\n> /help - Show commands")
    assert frame.endswith("\033[1A\r\033[5C")


def test_render_frame_wrapped_line_with_panel():
    """A line longer than the terminal spans rows; the redraw must account for them."""
    ed = make_editor()
    type_text(ed, "abcdefghijklmnopqrs @")
    frame = ed.render_frame(color=False, width=10)
    # 23 columns on a 10 column terminal: cursor ends on the third row, column 3
    assert frame.startswith("\r\033[J> abcdefghijklmnopqrs @\r\n> README.")
    assert frame.endswith("\033[3A\r\033[3C")
    type_text(ed, "R")
    frame = ed.render_frame(color=False, width=10)
    assert frame.startswith("\033[2A\r\033[J> abcdefghijklmnopqrs @R")


def test_clear_frame_forgets_wrapped_rows():
    ed = make_editor()
    type_text(ed, "a" * 30)
    ed.render_frame(color=False, width=10)
    ed.clear_frame()
    ed.reset()
    assert ed.render_frame(color=False, width=10) == "\r\033[J> "


def test_display_width():
    assert display_width("\033[32m> \033[0m") == 2
    assert display_width("日本") == 4
    assert display_width("e\u0301") == 1


# ============================================================
# Key Decoding Tests
# ============================================================

def test_decode_printable_and_controls():
    events = decode_keys("a\t\x7f\x08\x03\x04")
    assert events[0] == KeyEvent(CHAR, "a")
    assert [e.kind for e in events[1:]] == [TAB, BACKSPACE, BACKSPACE, CTRL_C, CTRL_D]


def test_decode_arrows():
    assert [e.kind for e in decode_keys("\x1b[A\x1b[B\x1b[C\x1b[D")] == [UP, DOWN, RIGHT, LEFT]
    assert [e.kind for e in decode_keys("\x1bOA\x1bOB")] == [UP, DOWN]


def test_decode_escape_and_unknown_sequences():
    assert decode_keys("\x1b") == [KeyEvent(ESCAPE)]
    assert decode_keys("\x1b[1;5C") == [KeyEvent(UNKNOWN)]
    assert decode_keys("\x1b[3~x") == [KeyEvent(UNKNOWN), KeyEvent(CHAR, "x")]


def test_decode_crlf_is_one_enter():
    assert decode_keys("\r\n") == [KeyEvent(ENTER)]
    assert decode_keys("\r\r") == [KeyEvent(ENTER), KeyEvent(ENTER)]


def test_decode_unicode_char():
    assert decode_keys("é") == [KeyEvent(CHAR, "é")]


def test_decode_windows_keys():
    assert decode_windows_key("\xe0", lambda: "H") == KeyEvent(UP)
    assert decode_windows_key("\x00", lambda: "P") == KeyEvent(DOWN)
    assert decode_windows_key("\x1a", lambda: "") == KeyEvent(CTRL_D)
    assert decode_windows_key("\r", lambda: "") == KeyEvent(ENTER)
    assert decode_windows_key("q", lambda: "") == KeyEvent(CHAR, "q")


# ============================================================
# Runner
# ============================================================

if __name__ == "__main__":
    test_functions = [v for k, v in sorted(globals().items()) if k.startswith("test_")]
    passed = 0
    failed = 0
    for fn in test_functions:
        try:
            fn()
            passed += 1
            print(f"  PASS  {fn.__name__}")
        except Exception as e:
            failed += 1
            print(f"  FAIL  {fn.__name__}: {e}")

    print(f"\n{passed} passed, {failed} failed, {passed + failed} total")
    sys.exit(1 if failed else 0)
