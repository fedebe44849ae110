"""Parley: a terminal chat front end for local and hosted language models.

Usage (interactive):
    parley [--provider llamacpp|gemini] [options]

Usage (one question, then exit):
    parley "why does this test fail?" [--output-format json]

Run 'parley --help' for all options.
"""

import argparse
import os
import sys

# Add parent directory to path so imports work when run directly
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.audit_log import AuditLog
from core.config import DEFAULTS, OUTPUT_FORMATS, PROVIDERS, generate_sample_config, load_config, merge_cli_args
from core.prompts import build_system_prompt
from core.provider_base import ProviderError
from core.provider_factory import create_provider
from core.session_store import SessionStore
from ui.cli import Orchestrator, run_cli, run_query


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Parley: chat with a language model from your terminal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("query", nargs="?", default=None,
                        help="Ask one question and exit instead of starting the REPL")
    parser.add_argument("--provider", choices=PROVIDERS, default=None,
                        help="Model backend (default: llamacpp)")
    parser.add_argument("--model", default=None, help="Model name (backend default if omitted)")
    parser.add_argument("--endpoint", default=None,
                        help="llama-server base URL (default: http://127.0.0.1:8080)")
    parser.add_argument("--temperature", type=float, default=None, help="Sampling temperature (default: 0.7)")
    parser.add_argument("--max-tokens", type=int, default=None, help="Max tokens per reply (default: 2048)")
    parser.add_argument("--timeout", type=int, default=None, help="Request timeout seconds (default: 60)")
    parser.add_argument("--system-prompt", default=None, help="Replace the default system prompt")
    parser.add_argument("--system-prompt-file", default=None, help="Read the system prompt from a file")
    parser.add_argument("--append-system-prompt", default=None, help="Text appended to the system prompt")
    parser.add_argument("--no-stream", action="store_true", help="Wait for complete replies instead of streaming")
    parser.add_argument("--output-format", choices=OUTPUT_FORMATS, default=None,
                        help="One-shot output format (default: text)")
    parser.add_argument(
        "--continue", dest="continue_session", action="store_true",
        help="Resume the most recently saved session",
    )
    parser.add_argument(
        "--audit", dest="audit", action="store_true",
        help="Write a JSONL audit log to the current directory",
    )
    parser.add_argument(
        "--config", default=None,
        help="Path to config file (default: .parley.toml or ~/.parley.toml)",
    )
    parser.add_argument(
        "--no-config", action="store_true",
        help="Ignore config files, use only CLI flags",
    )
    parser.add_argument(
        "--init-config", action="store_true",
        help="Generate a sample .parley.toml and exit",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    # Generate sample config and exit
    if args.init_config:
        if os.path.exists(".parley.toml"):
            print("Error: .parley.toml already exists.", file=sys.stderr)
            return 1
        with open(".parley.toml", "w", encoding="utf-8") as f:
            f.write(generate_sample_config())
        print("Created .parley.toml with default settings.")
        return 0

    # Load configuration: DEFAULTS → config file → CLI args
    if not args.no_config:
        config = load_config(args.config)
    else:
        config = dict(DEFAULTS)
    config = merge_cli_args(config, args)
    if args.audit and not config.get("audit_dir"):
        config["audit_dir"] = os.getcwd()

    config_file = config.get("_config_file")
    if config_file:
        print(f"Config: {config_file}", file=sys.stderr)

    try:
        provider = create_provider(config)
    except ProviderError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Connecting to {provider.describe()}...", file=sys.stderr)
    if not provider.check_health():
        print(f"Error: {provider.describe()} is not reachable", file=sys.stderr)
        if provider.name == "llama.cpp":
            print("Start it with: llama-server -m model.gguf --port 8080", file=sys.stderr)
        return 1
    info = provider.get_model_info() if provider.name == "llama.cpp" else None
    if info:
        print(f"Connected. Model: {info.get('model', 'unknown')}", file=sys.stderr)
    else:
        print("Connected.", file=sys.stderr)

    system_prompt = build_system_prompt(config)
    store = SessionStore(config["sessions_dir"])
    audit = AuditLog(log_dir=config["audit_dir"]) if config.get("audit_dir") else None

    orch = Orchestrator(provider, config, system_prompt, store=store, audit=audit)

    if args.query is not None:
        return run_query(orch, args.query, config.get("output_format", "text"))

    resumed = ""
    if args.continue_session:
        session = store.most_recent()
        if session is None:
            print("No saved session to continue.", file=sys.stderr)
        else:
            orch.resume(session)
            resumed = session.id

    if audit:
        audit.session_start(provider.name, model=config.get("model") or "",
                            streaming=orch.streaming, resumed=resumed)

    return run_cli(orch)


if __name__ == "__main__":
    sys.exit(main())
