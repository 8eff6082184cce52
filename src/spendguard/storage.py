"""Local state directory and file helpers."""

from __future__ import annotations

import json
import os
from pathlib import Path


def state_dir() -> Path:
    """Root directory for ledger, execution log and key material."""
    override = os.getenv("SPENDGUARD_HOME")
    return Path(override) if override else Path.home() / ".spendguard"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def write_json_atomic(path: Path, payload: dict) -> None:
    """Replace ``path`` with ``payload`` so readers never see a partial file."""
    tmp_path = path.with_suffix(path.suffix + f".tmp.{os.getpid()}")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    ensure_private_file(path)


def read_json(path: Path) -> dict:
    with open(path, encoding="utf-8") as f:
        return json.load(f)
