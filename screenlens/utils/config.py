"""
screenlens settings, read from config/default.toml or a --config TOML file.
Sections: [storage], [logging], [gemini], [capture], [context].
"""

import sys
import os
import logging
from pathlib import Path
from typing import Any, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger("screenlens.config")

_DEFAULT = Path(__file__).parent.parent.parent / "config" / "default.toml"


def load_config(path: Optional[Path] = None) -> dict[str, Any]:
    target = Path(path) if path else _DEFAULT
    try:
        with open(target, "rb") as f:
            cfg = tomllib.load(f)
        logger.info(f"Config loaded from {target}")
        return cfg
    except Exception as e:
        logger.error(f"Config load failed ({target}): {e}")
        return {}


def section(cfg: dict[str, Any], name: str) -> dict[str, Any]:
    """Return a config section, or an empty dict when it is missing."""
    value = cfg.get(name, {})
    return value if isinstance(value, dict) else {}


def resolve_path(raw: str) -> Path:
    """Turn a configured db_path, log_dir or recordings_dir into a Path, expanding env vars and ~."""
    return Path(os.path.expanduser(os.path.expandvars(raw)))
