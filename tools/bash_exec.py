"""Execute shell commands via subprocess with a timeout and an output bound.

Callers are expected to run the command through core.command_safety first;
this module only runs what it is given.

Output is read incrementally. Once stdout and stderr together pass the
bound the command is killed, so a runaway command never buffers more than
max_output bytes.
"""

import os
import signal
import subprocess
import threading
import time


DEFAULT_TIMEOUT = 30
DEFAULT_MAX_OUTPUT = 1024 * 1024

READ_CHUNK = 8192


def _kill(proc: subprocess.Popen) -> None:
    """Kill the command and anything it spawned."""
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
    else:
        proc.kill()


def _decode(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace").strip()


def bash_exec(command: str, timeout_seconds: int = DEFAULT_TIMEOUT,
              max_output: int = DEFAULT_MAX_OUTPUT) -> dict:
    """Execute a shell command and return stdout, stderr, and return code.

    Exceeding the timeout or producing more than max_output bytes (stdout
    and stderr combined) kills the command and marks it as failed; the
    captured output is cut to the bound.

    Args:
        command: The shell command string to execute.
        timeout_seconds: Max seconds before killing the process. Default 30.
        max_output: Max bytes of captured output. Default 1MB.

    Returns:
        dict with command, ok, stdout, stderr, returncode, duration_ms, and error
        when ok is False for a reason other than a non-zero exit.
    """
    start = time.time()

    try:
        proc = subprocess.Popen(
            command,
            shell=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=hasattr(os, "killpg"),
        )
    except (OSError, ValueError) as e:
        # ValueError: embedded null byte in the command
        return {
            "command": command,
            "ok": False,
            "stdout": "",
            "stderr": str(e),
            "returncode": -1,
            "duration_ms": int((time.time() - start) * 1000),
            "error": f"Could not start command: {e}",
        }

    captured = {"stdout": [], "stderr": []}
    total = [0]
    lock = threading.Lock()
    overflow = threading.Event()

    def pump(stream, name):
        with stream:
            for chunk in iter(lambda: stream.read1(READ_CHUNK), b""):
                with lock:
                    room = max_output - total[0]
                    if room > 0:
                        captured[name].append(chunk[:room])
                    total[0] += len(chunk)
                    if total[0] > max_output and not overflow.is_set():
                        overflow.set()
                        _kill(proc)

    readers = [
        threading.Thread(target=pump, args=(proc.stdout, "stdout"), daemon=True),
        threading.Thread(target=pump, args=(proc.stderr, "stderr"), daemon=True),
    ]
    for reader in readers:
        reader.start()

    timed_out = False
    try:
        returncode = proc.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill(proc)
        proc.wait()
        returncode = -1
    # A detached grandchild can hold the pipes open; don't wait on it forever
    for reader in readers:
        reader.join(timeout=5)

    duration_ms = int((time.time() - start) * 1000)
    result = {
        "command": command,
        "ok": returncode == 0,
        "stdout": _decode(captured["stdout"]),
        "stderr": _decode(captured["stderr"]),
        "returncode": returncode,
        "duration_ms": duration_ms,
    }
    if timed_out:
        result["ok"] = False
        result["error"] = f"Command timed out after {timeout_seconds}s."
    elif overflow.is_set():
        result["ok"] = False
        result["error"] = f"Output exceeded {max_output} bytes; command stopped."
    return result


def format_command_for_context(result: dict) -> str:
    """Render a bash_exec result as text for the context block."""
    lines = [
        f"Command: {result['command']}",
        f"Exit Code: {result['returncode']}",
        "",
    ]
    if result.get("error"):
        lines += [f"Failure: {result['error']}", ""]
    if result.get("stdout"):
        lines += ["Output:", result["stdout"], ""]
    if result.get("stderr"):
        lines += ["Errors:", result["stderr"], ""]
    if not result.get("stdout") and not result.get("stderr"):
        lines += ["(No output)", ""]
    return "\n".join(lines).rstrip("\n")


def summarize_command_result(result: dict) -> str:
    """One-line status, e.g. "OK (exit 0) - 12 lines of output"."""
    status = "OK" if result["ok"] else "FAILED"
    summary = f"{status} (exit {result['returncode']})"
    stdout = result.get("stdout", "")
    output_lines = len(stdout.split("\n")) if stdout else 0
    error_lines = len([l for l in result.get("stderr", "").split("\n") if l.strip()])
    if output_lines:
        summary += f" - {output_lines} line{'s' if output_lines != 1 else ''} of output"
    if error_lines:
        summary += f" - {error_lines} error line{'s' if error_lines != 1 else ''}"
    if result.get("error"):
        summary += f" - {result['error']}"
    return summary
