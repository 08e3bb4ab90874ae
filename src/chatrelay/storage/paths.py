"""
Path utilities for chatrelay.

Provides consistent path resolution for configuration and state files.
"""

import os
from pathlib import Path


def get_chatrelay_home() -> Path:
    """
    Get the chatrelay home directory.

    Resolution order:
    1. CHATRELAY_HOME environment variable
    2. Default: ~/.chatrelay

    Returns:
        Path to the chatrelay home directory.
    """
    env_home = os.environ.get("CHATRELAY_HOME")
    if env_home:
        return Path(env_home).expanduser().resolve()
    return Path.home() / ".chatrelay"


def get_global_config_path() -> Path:
    """
    Get the path to the global configuration file.

    Returns:
        Path to ~/.chatrelay/config.yaml
    """
    return get_chatrelay_home() / "config.yaml"


def get_ledger_path() -> Path:
    """
    Get the path to the persisted ledger.

    Returns:
        Path to ~/.chatrelay/ledger.json
    """
    return get_chatrelay_home() / "ledger.json"


def expand_path(path: str | Path) -> Path:
    """
    Expand ~ and environment variables in a path.

    Args:
        path: Path string or Path object.

    Returns:
        Expanded absolute Path.
    """
    return Path(os.path.expandvars(str(path))).expanduser().resolve()
