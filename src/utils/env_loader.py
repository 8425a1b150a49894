# file: src/utils/env_loader.py
# Copyright (c) 2025 gangAI-labs. All rights reserved.
# This file is part of a demonstration project. See LICENSE for usage terms.
"""
Dotenv wrapper: env var loading with auto-trim for inline comments (#) and safe casting.
Wraps python-decouple on top of python-dotenv. Load once (load_env()), then get_env() everywhere.
Handles: "True # dev note" -> True (bool), "a, b,c" -> ["a", "b", "c"] (list).
Usage: in app.py: load_env(); in config.py: get_env(key, default, cast=bool).
"""


from typing import Union, Optional, Any
from dotenv import load_dotenv
from decouple import AutoConfig, UndefinedValueError

_TRUE_VALUES = ('true', '1', 'yes', 'on', 't', 'y')
_FALSE_VALUES = ('false', '0', 'no', 'off', 'f', 'n')

# Global config instance (loaded once)
_config: Optional[AutoConfig] = None


def load_env(env_path: str = ".env", override: bool = False) -> None:
    """
    Load .env file once (call early in app.py).
    Args:
        env_path: Path to .env (default: ".env" in the working directory).
        override: Let .env values win over variables already in os.environ.
    A missing file is not an error: os.environ and defaults are used.
    """
    global _config
    if _config is not None and not override:
        return

    load_dotenv(env_path, override=override)
    _config = AutoConfig()


def get_env(key: str, default: Optional[Any] = None, cast: Optional[Union[type, str]] = None) -> Any:
    """
    Get env var with auto-trim (# comments) and safe cast.
    Args:
        key: Env var name (e.g., "QR_TIMEOUT_SECONDS").
        default: Fallback value if missing.
        cast: bool, int, float, list or None (str).
    Raises:
        ValueError: If cast fails (e.g., "abc" to int).
    Example:
        get_env("RELOAD", default="True", cast=bool)  # "True # note" -> True
        get_env("ALLOW_ORIGINS", default="*", cast=list)  # "a,b" -> ["a", "b"]
    """
    if _config is None:
        load_env()

    try:
        raw_value = _config(key, default=str(default) if default is not None else None)
    except UndefinedValueError:
        return default
    if raw_value is None:
        return default

    trimmed = raw_value.split('#')[0].strip()

    if cast is None:
        return trimmed

    try:
        if cast == bool:
            lowered = trimmed.lower()
            if lowered in _TRUE_VALUES:
                return True
            if lowered in _FALSE_VALUES:
                return False
            raise ValueError(f"expected true/false-like, got '{trimmed}'")
        if cast == int:
            return int(trimmed)
        if cast == float:
            return float(trimmed)
        if cast == list:
            return [item.strip() for item in trimmed.split(",") if item.strip()]
    except ValueError as e:
        raise ValueError(f"Failed to cast {key}: {e}") from e

    raise ValueError(f"Unsupported cast '{cast}' for {key} (use bool/int/float/list/None)")


__all__ = ["load_env", "get_env"]
