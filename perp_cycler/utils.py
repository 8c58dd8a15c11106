"""
Small helpers shared by the engine: UTC time, the heartbeat file, logging
setup and the optional .env loader.

The heartbeat and the .env loader must never stop the engine; their failures
are logged and dropped.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

log = logging.getLogger("utils")

LOG_FORMAT = "%(asctime)sZ | %(levelname)s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"
LOG_FILENAME = "perp_cycler.log"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def write_json_atomic(path: str, data: Any) -> None:
    """
    Dump `data` next to `path` and rename it into place, so readers never see
    a half-written file.

    Raises:
        ValueError: empty path.
        OSError: the directory, the temp file or the rename failed.
    """
    if not path:
        raise ValueError("write_json_atomic: empty path")
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=str)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, target)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def write_heartbeat(heartbeat_path: Optional[str], **extra: Any) -> None:
    """Record that the loop is alive; `extra` carries the last cycle's outcome. No path, no file."""
    if not heartbeat_path:
        return
    now = utcnow()
    payload: Dict[str, Any] = {"ts": now.isoformat(), "unix_ts": now.timestamp(), **extra}
    try:
        write_json_atomic(heartbeat_path, payload)
    except (OSError, ValueError, TypeError) as e:
        log.warning(f"Heartbeat not written to {heartbeat_path}: {e}")


def setup_logging(level: str, logs_dir: str, file_backups: int) -> None:
    """
    Console plus `<logs_dir>/perp_cycler.log`, rotated at UTC midnight into
    `perp_cycler.log.YYYYMMDD` with `file_backups` days kept.

    This log is the engine's only audit trail: balances, the chosen
    instrument, side and size, order statuses and every force close.
    """
    os.makedirs(logs_dir, exist_ok=True)
    lvl = level.upper()
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    console = logging.StreamHandler()
    daily = TimedRotatingFileHandler(
        os.path.join(logs_dir, LOG_FILENAME),
        when="midnight",
        backupCount=file_backups,
        utc=True,
    )
    daily.suffix = "%Y%m%d"

    root = logging.getLogger()
    root.handlers = []
    root.setLevel(lvl)
    for handler in (console, daily):
        handler.setLevel(lvl)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    log.info(f"Logging to console and {os.path.join(logs_dir, LOG_FILENAME)} (level={lvl})")


def _parse_env_line(line: str) -> Optional[tuple]:
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    if line.startswith("export "):
        line = line[len("export "):]
    key, sep, value = line.partition("=")
    key, value = key.strip(), value.strip()
    if not sep or not key:
        return None
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        value = value[1:-1]
    return key, value


def load_env_file_if_present(env_path: Optional[str] = None) -> int:
    """
    Export KEY=value pairs from a .env file (default: ./.env). Variables already
    present in the environment win. Returns how many were set.
    """
    path = Path(env_path) if env_path else Path.cwd() / ".env"
    if not path.is_file():
        return 0
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        log.warning(f"Could not read {path}: {e}")
        return 0

    loaded = 0
    for n, raw in enumerate(lines, start=1):
        parsed = _parse_env_line(raw)
        if parsed is None:
            if raw.strip() and not raw.strip().startswith("#"):
                log.warning(f"{path}:{n}: ignoring malformed line")
            continue
        key, value = parsed
        if key in os.environ:
            continue
        os.environ[key] = value
        loaded += 1
    if loaded:
        log.info(f"Loaded {loaded} variable(s) from {path}")
    return loaded
