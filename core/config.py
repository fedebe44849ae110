"""Configuration file support for Parley.

Loads settings from .parley.toml (project-level) or ~/.parley.toml (user-level).
CLI flags override config file values. Config file overrides defaults.
"""

import os
import sys
import tomllib
from pathlib import Path


# Default configuration values (same as CLI defaults)
DEFAULTS = {
    "provider": "llamacpp",
    "endpoint": "http://127.0.0.1:8080",
    "api_key": None,
    "model": None,
    "temperature": 0.7,
    "top_p": 0.9,
    "top_k": 40,
    "max_tokens": 2048,
    "timeout": 60,
    "streaming": True,
    "system_prompt": None,
    "system_prompt_file": None,
    "append_system_prompt": None,
    "output_format": "text",
    "max_context_chars": 50_000,
    "history_max_turns": 20,
    "history_max_chars": 30_000,
    "command_timeout": 30,
    "command_max_output": 1_048_576,  # bytes
    "sessions_dir": str(Path.home() / ".parley" / "sessions"),
    "audit_dir": None,
}

PROVIDERS = ("llamacpp", "gemini")
OUTPUT_FORMATS = ("text", "json")

# Config file search order (first found wins)
CONFIG_FILENAMES = [".parley.toml", "parley.toml"]
CONFIG_SEARCH_DIRS = [
    ".",                          # Current directory (project-level)
    str(Path.home()),             # Home directory (user-level)
]


def find_config_file() -> str | None:
    """Find the first config file in the search path."""
    for directory in CONFIG_SEARCH_DIRS:
        for filename in CONFIG_FILENAMES:
            path = os.path.join(directory, filename)
            if os.path.isfile(path):
                return path
    return None


def load_config(config_path: str = None) -> dict:
    """Load configuration from file.

    Args:
        config_path: Explicit path to config file. If None, searches default locations.

    Returns:
        Dict of configuration values. Missing keys use DEFAULTS. An unreadable
        or malformed file is reported on stderr and leaves the defaults intact.
    """
    config = dict(DEFAULTS)

    path = config_path or find_config_file()
    if not path or not os.path.isfile(path):
        return config

    try:
        with open(path, "rb") as f:
            file_config = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        print(f"Warning: could not read config {path}: {e}", file=sys.stderr)
        return config

    # Normalize key names (TOML uses - or _, CLI uses _)
    for key, value in file_config.items():
        norm_key = key.replace("-", "_")
        if norm_key in config:
            config[norm_key] = value

    config["_config_file"] = path
    return config


def merge_cli_args(config: dict, args) -> dict:
    """Merge CLI arguments over config file values.

    CLI args that are None or False (defaults) don't override config.
    Explicitly set CLI args always win.
    """
    result = dict(config)

    # Map argparse attribute names to config keys
    mappings = {
        "provider": "provider",
        "model": "model",
        "endpoint": "endpoint",
        "temperature": "temperature",
        "max_tokens": "max_tokens",
        "timeout": "timeout",
        "system_prompt": "system_prompt",
        "system_prompt_file": "system_prompt_file",
        "append_system_prompt": "append_system_prompt",
        "output_format": "output_format",
    }

    for arg_name, config_key in mappings.items():
        cli_value = getattr(args, arg_name, None)
        if cli_value is None:
            continue
        # For boolean flags: only override if True (explicitly set)
        if isinstance(cli_value, bool) and not cli_value:
            continue
        result[config_key] = cli_value

    # --no-stream is the one negative flag
    if getattr(args, "no_stream", False):
        result["streaming"] = False

    return result


def mask_config(config: dict) -> dict:
    """Copy of config safe to display: secrets masked, private keys dropped."""
    shown = {k: v for k, v in config.items() if not k.startswith("_")}
    key = shown.get("api_key")
    if key:
        shown["api_key"] = key[:4] + "..." if len(key) > 8 else "***"
    return shown


def generate_sample_config() -> str:
    """Generate a sample .parley.toml config file."""
    return '''# Parley Configuration
# Place this file at .parley.toml (project) or ~/.parley.toml (user)

# Backend: "llamacpp" (local llama-server) or "gemini"
provider = "llamacpp"
endpoint = "http://127.0.0.1:8080"
# model = "gemini-2.0-flash"
# api_key = "..."                  # Or set GEMINI_API_KEY

# Generation settings
temperature = 0.7
top_p = 0.9
top_k = 40
max_tokens = 2048
timeout = 60
streaming = true

# System prompt
# system_prompt = "You are a terse assistant."
# system_prompt_file = "prompt.md"
# append_system_prompt = "Answer in English."

# Context and history budgets (characters)
max_context_chars = 50000
history_max_turns = 20
history_max_chars = 30000

# Shell commands run with !
command_timeout = 30
command_max_output = 1048576  # bytes, stdout and stderr combined

# Storage
# sessions_dir = "~/.parley/sessions"
# audit_dir = "."
'''
