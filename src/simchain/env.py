# src/simchain/env.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

_LOADED = False


def load_dotenv_if_present(dotenv_path: Optional[str] = None) -> bool:
    """Load node settings from a .env file, at most once per process.

    The file is dotenv_path, else SIMCHAIN_DOTENV_PATH, else ./.env. Variables
    already set in the environment keep their values. Returns True only when
    a file was read.
    """
    global _LOADED
    if _LOADED:
        return False
    _LOADED = True

    candidate = dotenv_path or os.getenv("SIMCHAIN_DOTENV_PATH") or ".env"
    path = Path(candidate).expanduser()
    if not path.is_file():
        return False
    load_dotenv(dotenv_path=path, override=False)
    return True
