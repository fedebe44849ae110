"""Structured audit logging for Parley sessions.

Logs slash commands, shell executions, safety refusals, file references,
model generations and errors to a JSONL (JSON Lines) file. Each line is a
self-contained JSON object.

Log files are written as .parley-audit-YYYYMMDD-HHMMSS.jsonl in the
configured audit directory.
"""

import atexit
import json
import os
import time
from datetime import datetime, timezone


class AuditLog:
    """Append-only structured logger for session events."""

    def __init__(self, log_dir: str = "."):
        """Initialize audit logger.

        Args:
            log_dir: Directory to write log files. Defaults to cwd.
        """
        self.log_dir = log_dir
        ts = datetime.now().strftime("%Y%m%d-%H%M%S")
        self.log_path = os.path.join(log_dir, f".parley-audit-{ts}.jsonl")
        self._session_id = ts
        self._event_count = 0
        self._start_time = time.time()
        self._file = None
        atexit.register(self.close)

    def _ensure_open(self):
        """Lazily open the log file on first write."""
        if self._file is None:
            os.makedirs(self.log_dir, exist_ok=True)
            self._file = open(self.log_path, "a", encoding="utf-8")

    def _write(self, event_type: str, data: dict) -> None:
        """Write a single event to the log."""
        self._ensure_open()
        self._event_count += 1
        entry = {
            "seq": self._event_count,
            "ts": datetime.now(timezone.utc).isoformat(),
            "elapsed_s": round(time.time() - self._start_time, 2),
            "event": event_type,
            **data,
        }
        self._file.write(json.dumps(entry, separators=(",", ":")) + "\n")
        self._file.flush()

    def session_start(self, provider: str, model: str = "", streaming: bool = True,
                      resumed: str = "") -> None:
        """Log session start with configuration."""
        self._write("session_start", {
            "session_id": self._session_id,
            "provider": provider,
            "model": model or "",
            "streaming": streaming,
            "resumed": resumed,
        })

    def session_end(self, turns: int, context_items: int) -> None:
        """Log session end with summary stats."""
        self._write("session_end", {
            "turns": turns,
            "context_items": context_items,
            "duration_s": round(time.time() - self._start_time, 1),
        })
        self.close()

    def command(self, cmd: str) -> None:
        """Log a slash command."""
        self._write("command", {"cmd": cmd})

    def shell_exec(self, command: str, verdict: str, ok: bool, exit_code: int | None,
                   duration_ms: int) -> None:
        """Log a shell command that was run."""
        self._write("shell_exec", {
            "command": command[:500],
            "verdict": verdict,
            "ok": ok,
            "exit_code": exit_code,
            "duration_ms": duration_ms,
        })

    def safety_block(self, command: str, reason: str, rule: str | None = None) -> None:
        """Log a refused or declined shell command and the rule that flagged it."""
        self._write("safety_block", {
            "command": command[:200],
            "reason": reason[:300],
            "rule": rule or "",
        })

    def file_ref(self, path: str, ok: bool, size: int = 0, error: str = "") -> None:
        """Log an @file reference."""
        self._write("file_ref", {
            "path": path[:300],
            "ok": ok,
            "size": size,
            "error": error[:300] if error else "",
        })

    def generation(self, provider: str, chars: int, duration_ms: int, outcome: str,
                   error: str = "") -> None:
        """Log a model generation. outcome is completed, cancelled or errored."""
        self._write("generation", {
            "provider": provider,
            "chars": chars,
            "duration_ms": duration_ms,
            "outcome": outcome,
            "error": error[:300] if error else "",
        })

    def error(self, source: str, message: str) -> None:
        """Log an error."""
        self._write("error", {
            "source": source,
            "message": message[:500],
        })

    def close(self) -> None:
        """Flush and close the log file."""
        if self._file is not None:
            self._file.flush()
            self._file.close()
            self._file = None

    @property
    def event_count(self) -> int:
        return self._event_count

    @property
    def session_id(self) -> str:
        return self._session_id
