# src/postledger/env.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

_LOADED = False


def load_dotenv_if_present(dotenv_path: Optional[str] = None) -> bool:
    """
    Load a .env file once per process.

    Path rules:
        1) If dotenv_path arg provided, use it.
        2) Else if POSTLEDGER_DOTENV_PATH is set, use that.
        3) Else default to ".env" in current working directory.

    Variables already present in the environment win over the file.
    Returns True if a dotenv file was found AND loaded, else False.
    """
    global _LOADED
    if _LOADED:
        return False

    path = Path(dotenv_path or os.getenv("POSTLEDGER_DOTENV_PATH", ".env")).expanduser()
    _LOADED = True

    if not path.exists() or not path.is_file():
        return False

    load_dotenv(dotenv_path=str(path), override=False)
    return True
