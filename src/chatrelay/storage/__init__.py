"""Storage utilities for chatrelay."""

from chatrelay.storage.paths import (
    expand_path,
    get_chatrelay_home,
    get_global_config_path,
    get_ledger_path,
)

__all__ = [
    "expand_path",
    "get_chatrelay_home",
    "get_global_config_path",
    "get_ledger_path",
]
