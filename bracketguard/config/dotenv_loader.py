"""
Explicit dotenv loader.

Rules:
- In production (`ENVIRONMENT=prod`): do not load `.env` / `.env.local`.
- Otherwise: load `.env` then `.env.local` (local overrides).

Must not import `bracketguard.config.config`.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv


def is_prod_env() -> bool:
    return str(os.getenv("ENVIRONMENT") or "prod").strip().lower() == "prod"


def load_dotenv_files(*, repo_root: Path | None = None) -> list[Path]:
    """
    Load dotenv files for local/dev usage. Returns the files that were loaded.

    In prod, this is a no-op.
    """
    if is_prod_env():
        return []

    root = repo_root or Path.cwd()
    loaded: list[Path] = []

    env_path = root / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)
        loaded.append(env_path)

    # .env.local wins over .env and the process environment
    env_local_path = root / ".env.local"
    if env_local_path.exists():
        load_dotenv(dotenv_path=env_local_path, override=True)
        loaded.append(env_local_path)

    return loaded
