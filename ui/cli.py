"""Terminal conversation interface for Parley.

Handles the user interaction loop: read a line, classify it, then run a
slash command, load @files into context, run a !command through the
safety gate, or send a message to the model and stream the reply.

The Orchestrator owns the conversation state (history, context, current
session) and processes one completed line at a time. run_cli() drives it
from the raw-mode line editor, or from input() when stdin is not a
terminal.
"""

import json
import signal
import sys
import threading
import time
from contextlib import contextmanager
from datetime import datetime

from core import command_safety
from core.config import mask_config
from core.context_manager import ContextManager
from core.history import ASSISTANT, USER, Turn, optimize
from core.input_parser import FILE_REF, MESSAGE, SHELL, SLASH, classify, split_slash_command
from core.prompts import with_context
from core.provider_base import ProviderError
from core.session_store import Session, SessionStoreError
from tools.bash_exec import bash_exec, format_command_for_context, summarize_command_result
from tools.file_read import read_file
from ui.line_editor import EXIT, INTERRUPT, REDRAW, REDRAW_PANEL, SUBMIT, LineEditor
from ui.terminal import TerminalSession, is_interactive


# ANSI color codes
_CYAN = "\033[36m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_RED = "\033[31m"
_DIM = "\033[2m"
_RESET = "\033[0m"
_BOLD = "\033[1m"

PROMPT = f"{_GREEN}> {_RESET}"

# Lines of command output echoed to the terminal (context gets all of it)
MAX_ECHO_LINES = 60

# Exit status for Ctrl+C at the prompt
EXIT_INTERRUPTED = 130

SLASH_COMMANDS = [
    ("/help", "Show available commands"),
    ("/clear", "Clear conversation history and context"),
    ("/save", "Save the session: /save [name]"),
    ("/load", "Load a saved session: /load <id|name>"),
    ("/sessions", "List saved sessions"),
    ("/delete", "Delete a saved session: /delete <id|name>"),
    ("/context", "Show files and command output in context"),
    ("/files", "Same as /context"),
    ("/drop", "Remove one context entry: /drop <key>"),
    ("/tokens", "Estimate tokens for the next request"),
    ("/config", "Show active configuration"),
    ("/exit", "Exit Parley"),
    ("/quit", "Exit Parley"),
]


def confirm(question: str) -> bool:
    """Ask a yes/no question. EOF or Ctrl+C counts as no."""
    try:
        response = input(f"  {question} [y/N] ").strip().lower()
    except (EOFError, KeyboardInterrupt):
        print()
        return False
    return response in ("y", "yes")


@contextmanager
def _sigint_cancels(cancel: threading.Event):
    """While active, Ctrl+C sets cancel instead of raising KeyboardInterrupt."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _stream_generate(provider, turns, system_prompt, cancel, out=None):
    """Stream a reply to the terminal.

    Shows a thinking indicator before the first chunk, then writes chunks
    as they arrive. Returns the provider's ChatResponse.
    """
    out = out or sys.stdout
    started = [False]

    out.write(f"{_DIM}Thinking...{_RESET}")
    out.flush()

    def on_chunk(chunk):
        if chunk.done:
            return
        if not started[0]:
            out.write(f"\r{' ' * 20}\r")  # Clear "Thinking..."
            out.write(_CYAN)
            started[0] = True
        out.write(chunk.text)
        out.flush()

    try:
        result = provider.stream(turns, system_prompt, on_chunk, cancel)
    finally:
        if started[0]:
            out.write(_RESET + "\n")
        else:
            out.write(f"\r{' ' * 20}\r")
        out.flush()
    return result


class Orchestrator:
    """Conversation state plus the per-line control flow."""

    def __init__(self, provider, config: dict, system_prompt: str, store=None, audit=None,
                 confirm_fn=confirm, read_fn=read_file, run_fn=bash_exec):
        self.provider = provider
        self.config = config
        self.system_prompt = system_prompt
        self.store = store
        self.audit = audit
        self.confirm = confirm_fn
        self.read_file = read_fn
        self.run_command = run_fn
        self.streaming = config.get("streaming", True)
        self.history: list[Turn] = []
        self.context = ContextManager(max_chars=config.get("max_context_chars", 50_000))
        self.session: Session | None = None

    # ------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------

    def handle_line(self, line: str) -> str:
        """Process one completed line. Returns 'continue' or 'exit'."""
        if not line.strip():
            return "continue"
        parsed = classify(line)
        try:
            if parsed.kind == SLASH:
                return self.handle_command(parsed.payload)
            if parsed.kind == SHELL:
                self.run_shell(parsed.command)
            elif parsed.kind == FILE_REF:
                self.load_files(parsed.files)
                if parsed.payload:
                    self.send_message(parsed.payload)
            elif parsed.kind == MESSAGE:
                self.send_message(parsed.payload)
        except ProviderError as e:
            print(f"{_RED}{e}{_RESET}")
            if self.audit:
                self.audit.error(e.provider, e.message)
        except SessionStoreError as e:
            print(f"{_RED}Session error: {e}{_RESET}")
            if self.audit:
                self.audit.error("sessions", str(e))
        except OSError as e:
            print(f"{_RED}Error: {e}{_RESET}")
            if self.audit:
                self.audit.error("io", str(e))
        except KeyboardInterrupt:
            print(f"\n{_DIM}Interrupted.{_RESET}")
        except Exception as e:
            # Anything else: report it and read the next line
            print(f"{_RED}Error: {type(e).__name__}: {e}{_RESET}")
            if self.audit:
                self.audit.error("internal", f"{type(e).__name__}: {e}")
        return "continue"

    # ------------------------------------------------------------
    # Model requests
    # ------------------------------------------------------------

    def effective_request(self) -> tuple[list[Turn], str]:
        """(turns, system prompt) to submit: optimized history plus rendered context."""
        turns = optimize(
            self.history,
            max_turns=self.config.get("history_max_turns", 20),
            max_chars=self.config.get("history_max_chars", 30_000),
        )
        return turns, with_context(self.system_prompt, self.context.render())

    def send_message(self, text: str, echo: bool = True):
        """Append a user turn, get the reply, record it. Returns the ChatResponse.

        On ProviderError the user turn is removed again and the error re-raised.
        """
        self.history.append(Turn.text(USER, text))
        turns, system_prompt = self.effective_request()
        if not turns:
            self.history.pop()
            limit = self.config.get("history_max_chars", 30_000)
            print(f"{_RED}Message too long: {len(text)} characters exceeds the "
                  f"history budget of {limit}.{_RESET}")
            return None

        cancel = threading.Event()
        start = time.time()
        try:
            if self.streaming:
                with _sigint_cancels(cancel):
                    if echo:
                        response = _stream_generate(self.provider, turns, system_prompt, cancel)
                    else:
                        response = self.provider.stream(turns, system_prompt, lambda chunk: None, cancel)
            else:
                response = self.provider.chat(turns, system_prompt)
                if echo:
                    print(f"{_CYAN}{response.text}{_RESET}")
        except KeyboardInterrupt:
            self.history.pop()
            print(f"{_DIM}[cancelled]{_RESET}")
            self._log_generation(0, start, "cancelled")
            return None
        except ProviderError as e:
            self.history.pop()
            self._log_generation(0, start, "errored", str(e))
            raise

        if response.cancelled:
            print(f"{_DIM}[cancelled]{_RESET}")
        if response.text or not response.cancelled:
            self.history.append(Turn.text(ASSISTANT, response.text))
        else:
            # Cancelled before any text arrived: nothing to keep
            self.history.pop()
        self._log_generation(len(response.text), start,
                             "cancelled" if response.cancelled else "completed")
        return response

    def _log_generation(self, chars: int, start: float, outcome: str, error: str = "") -> None:
        if self.audit:
            self.audit.generation(self.provider.name, chars, int((time.time() - start) * 1000),
                                  outcome, error)

    # ------------------------------------------------------------
    # @file references
    # ------------------------------------------------------------

    def load_files(self, paths: list[str], quiet: bool = False) -> int:
        """Read each file into context. Failures are reported per file. Returns successes."""
        loaded = 0
        for path in paths:
            result = self.read_file(path)
            if result["ok"]:
                self.context.add(path, result["content"])
                loaded += 1
                if not quiet:
                    print(f"{_DIM}  + {path} ({result['size']} bytes){_RESET}")
            else:
                print(f"{_RED}  ! {result['error']}{_RESET}", file=sys.stderr if quiet else sys.stdout)
            if self.audit:
                self.audit.file_ref(path, result["ok"], result.get("size", 0), result.get("error", ""))
        return loaded

    # ------------------------------------------------------------
    # !commands
    # ------------------------------------------------------------

    def run_shell(self, command: str) -> dict | None:
        """Run a command through the safety gate. Returns the result, or None if not run."""
        if not command:
            print(f"{_BOLD}Usage:{_RESET} !<command>")
            return None

        verdict = command_safety.classify(command)
        if verdict.dangerous:
            print(f"{_RED}Refused: {verdict.reason}{_RESET}")
            print(f"{_DIM}  Command not executed: {command}{_RESET}")
            if self.audit:
                self.audit.safety_block(command, verdict.reason, rule=verdict.rule)
            return None

        if verdict.needs_confirmation:
            print(f"{_YELLOW}Warning: {verdict.reason}{_RESET}")
            print(f"  Command: {command}")
            if not self.confirm("Run anyway?"):
                print(f"{_DIM}Cancelled.{_RESET}")
                if self.audit:
                    self.audit.safety_block(command, f"declined: {verdict.reason}", rule=verdict.rule)
                return None

        result = self.run_command(
            command,
            timeout_seconds=self.config.get("command_timeout", 30),
            max_output=self.config.get("command_max_output", 1024 * 1024),
        )
        self._echo_command_output(result)
        self.context.add(f"[Command: {command}]", format_command_for_context(result))
        color = _GREEN if result["ok"] else _YELLOW
        print(f"{color}{summarize_command_result(result)}{_RESET}")
        print(f"{_DIM}  Output added to context as [Command: {command}]{_RESET}")
        if self.audit:
            label = "confirm" if verdict.needs_confirmation else "safe"
            self.audit.shell_exec(command, label, result["ok"], result["returncode"], result["duration_ms"])
        return result

    def _echo_command_output(self, result: dict) -> None:
        if result["stdout"]:
            lines = result["stdout"].splitlines()
            for line in lines[:MAX_ECHO_LINES]:
                print(line)
            if len(lines) > MAX_ECHO_LINES:
                print(f"{_DIM}...{len(lines) - MAX_ECHO_LINES} more lines{_RESET}")
        if result["stderr"]:
            for line in result["stderr"].splitlines()[:10]:
                print(f"{_RED}{line}{_RESET}")

    # ------------------------------------------------------------
    # Slash commands
    # ------------------------------------------------------------

    def handle_command(self, line: str) -> str:
        """Handle slash commands. Returns 'continue' or 'exit'."""
        name, args = split_slash_command(line)
        if self.audit:
            self.audit.command(f"/{name}")

        if name in ("exit", "quit"):
            return "exit"

        handler = {
            "help": self._show_help,
            "clear": self._clear,
            "save": self._save,
            "load": self._load,
            "sessions": self._list_sessions,
            "delete": self._delete,
            "context": self._show_context,
            "files": self._show_context,
            "drop": self._drop,
            "tokens": self._show_tokens,
            "config": self._show_config,
        }.get(name)

        if handler is None:
            print(f"{_RED}Unknown command: /{name}{_RESET}")
            print(f"{_DIM}Type /help for the list of commands.{_RESET}")
            return "continue"
        handler(args)
        return "continue"

    def _show_help(self, args: str) -> None:
        print(f"{_BOLD}Commands:{_RESET}")
        for name, desc in SLASH_COMMANDS:
            print(f"  {name:<10} {desc}")
        print()
        print(f"{_DIM}@path adds a file to context, !command runs a shell command{_RESET}")
        print(f"{_DIM}Ctrl+C during a reply stops it; Ctrl+C at the prompt exits{_RESET}")
        print()

    def _clear(self, args: str) -> None:
        self.history.clear()
        self.context.clear()
        self.session = None
        print(f"{_GREEN}Conversation and context cleared.{_RESET}")

    def _require_store(self) -> bool:
        if self.store is None:
            print(f"{_DIM}Session storage is not configured.{_RESET}")
            return False
        return True

    def _save(self, args: str) -> None:
        if not self._require_store():
            return
        if not self.history:
            print(f"{_DIM}Nothing to save.{_RESET}")
            return
        name = args.strip() or None
        if self.session is None:
            self.session = Session.create(self.history, self.provider.name, name=name)
        else:
            self.session.turns = list(self.history)
            self.session.updated_at = time.time()
            if name:
                self.session.name = name
        self.store.save(self.session)
        label = f" ({self.session.name})" if self.session.name else ""
        print(f"{_GREEN}Saved {len(self.history)} turns to session {self.session.id}{label}{_RESET}")

    def _load(self, args: str) -> None:
        if not self._require_store():
            return
        target = args.strip()
        if not target:
            self._list_sessions("")
            print(f"{_DIM}Usage: /load <id|name>{_RESET}")
            return
        session = self.store.find(target)
        if session is None:
            print(f"{_RED}Session not found: {target}{_RESET}")
            return
        self.resume(session)
        print(f"{_GREEN}Loaded {len(session.turns)} turns from session {session.id}{_RESET}")
        print(f"{_DIM}Saved at: {_format_time(session.updated_at)}{_RESET}")

    def resume(self, session: Session) -> None:
        """Replace the conversation with a saved session. Context starts empty."""
        self.history = list(session.turns)
        self.context.clear()
        self.session = session

    def _list_sessions(self, args: str) -> None:
        if not self._require_store():
            return
        sessions = self.store.list()
        if not sessions:
            print(f"{_DIM}No saved sessions found.{_RESET}")
            return
        print(f"{_BOLD}Saved sessions:{_RESET}")
        for s in sessions[:20]:
            name = f" {_CYAN}{s.name}{_RESET}" if s.name else ""
            current = f" {_GREEN}(current){_RESET}" if self.session and s.id == self.session.id else ""
            print(f"  {s.id}{name}  {_DIM}{len(s.turns)} turns, {_format_time(s.updated_at)}, "
                  f"{s.provider_id}{_RESET}{current}")
        if len(sessions) > 20:
            print(f"{_DIM}  ...{len(sessions) - 20} more{_RESET}")

    def _delete(self, args: str) -> None:
        if not self._require_store():
            return
        target = args.strip()
        if not target:
            print(f"{_BOLD}Usage:{_RESET} /delete <id|name>")
            return
        session = self.store.find(target)
        if session is None or not self.store.delete(session.id):
            print(f"{_RED}Session not found: {target}{_RESET}")
            return
        if self.session and self.session.id == session.id:
            self.session = None
        print(f"{_GREEN}Deleted session {session.id}{_RESET}")

    def _show_context(self, args: str) -> None:
        items = self.context.items()
        if not items:
            print(f"{_DIM}Context is empty. Add files with @path or command output with !command.{_RESET}")
            return
        print(f"{_BOLD}Context ({len(items)} entries):{_RESET}")
        for item in items:
            print(f"  {item.key}  {_DIM}{item.size} chars{_RESET}")
        total = self.context.total_size()
        print(f"  {_DIM}Total: {total} / {self.context.max_chars} chars{_RESET}")
        if len(self.context.render()) >= self.context.max_chars:
            print(f"{_YELLOW}  Context exceeds the limit and will be truncated.{_RESET}")

    def _drop(self, args: str) -> None:
        key = args.strip()
        if not key:
            print(f"{_BOLD}Usage:{_RESET} /drop <key>")
            return
        if self.context.remove(key):
            print(f"{_GREEN}Removed {key} from context.{_RESET}")
        else:
            print(f"{_RED}Not in context: {key}{_RESET}")

    def _show_tokens(self, args: str) -> None:
        turns, system_prompt = self.effective_request()
        text = system_prompt + "".join(t.content for t in turns)
        count = self.provider.count_tokens(text)
        print(f"{_BOLD}Next request (estimate):{_RESET}")
        print(f"  ~{count} tokens")
        print(f"  {len(turns)} of {len(self.history)} turns, {self.context.count()} context entries")

    def _show_config(self, args: str) -> None:
        print(f"{_BOLD}Active configuration:{_RESET}")
        config_file = self.config.get("_config_file")
        if config_file:
            print(f"  {_DIM}(from {config_file}){_RESET}")
        print(f"  backend: {self.provider.describe()}")
        for key, val in sorted(mask_config(self.config).items()):
            if val is None or val == "":
                continue
            print(f"  {key}: {val}")
        print()


def _format_time(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


# ============================================================
# Loops
# ============================================================

def _print_banner(orch: Orchestrator) -> None:
    print(f"{_BOLD}Parley{_RESET}")
    print(f"{_DIM}Type /exit to quit, /help for commands{_RESET}")
    print(f"{_DIM}  Backend: {orch.provider.describe()}{_RESET}")
    print(f"{_DIM}  Streaming: {'enabled' if orch.streaming else 'disabled'}{_RESET}")
    if orch.session:
        print(f"{_DIM}  Resumed session: {orch.session.id} ({len(orch.history)} turns){_RESET}")
    if orch.audit:
        print(f"{_DIM}  Audit log: {orch.audit.log_path}{_RESET}")
    print()


def _finish(orch: Orchestrator) -> None:
    if orch.audit:
        orch.audit.session_end(len(orch.history), orch.context.count())
    print(f"{_DIM}Goodbye.{_RESET}")


def run_cli(orch: Orchestrator) -> int:
    """Run the interactive loop. Returns the process exit status."""
    _print_banner(orch)
    if is_interactive():
        status = _raw_loop(orch)
    else:
        status = _input_loop(orch)
    _finish(orch)
    return status


def _raw_loop(orch: Orchestrator) -> int:
    editor = LineEditor(SLASH_COMMANDS, prompt=PROMPT)
    out = sys.stdout
    with TerminalSession() as term:
        out.write(editor.render_frame())
        out.flush()
        while True:
            result = editor.feed(term.read_key())
            if result.action in (REDRAW, REDRAW_PANEL):
                out.write(editor.render_frame())
            elif result.action == SUBMIT:
                out.write(editor.clear_frame())
                out.flush()
                line = result.line.strip()
                if line:
                    with term.suspended():
                        outcome = orch.handle_line(line)
                    if outcome == "exit":
                        return 0
                out.write(editor.render_frame())
            elif result.action == EXIT:
                out.write("\r\n")
                return 0
            elif result.action == INTERRUPT:
                out.write("\r\n")
                return EXIT_INTERRUPTED
            out.flush()


def _input_loop(orch: Orchestrator) -> int:
    """Line-buffered fallback when stdin is not a terminal."""
    while True:
        try:
            line = input(PROMPT if sys.stdin.isatty() else "").strip()
        except EOFError:
            print()
            return 0
        except KeyboardInterrupt:
            print()
            return EXIT_INTERRUPTED
        if orch.handle_line(line) == "exit":
            return 0


def run_query(orch: Orchestrator, query: str, output_format: str = "text") -> int:
    """Answer one query without the REPL. Returns the process exit status."""
    parsed = classify(query)
    text = query
    if parsed.kind == FILE_REF:
        orch.load_files(parsed.files, quiet=True)
        text = parsed.payload
    if not text.strip():
        print("Error: empty query", file=sys.stderr)
        return 1

    as_json = output_format == "json"
    if as_json:
        # Token usage is only reported by non-streaming requests
        orch.streaming = False
    try:
        response = orch.send_message(text, echo=not as_json)
    except ProviderError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if response is None:
        return 1

    if as_json:
        tokens = None
        if response.tokens_used is not None:
            tokens = {
                "prompt": response.tokens_used.prompt,
                "completion": response.tokens_used.completion,
                "total": response.tokens_used.total,
            }
        print(json.dumps({"response": response.text, "tokens": tokens}, ensure_ascii=False))
    return 0
