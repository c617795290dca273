"""
Utility helpers for filesystem paths, configuration-driven resources and
user input parsing.

Centralizes logic for resolving the project data directory and database
connection strings, plus the coercion rules applied to amounts, allocations
and dates typed by the user.
"""

from __future__ import annotations

import logging
import math
import os
import re
import time
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy.engine import make_url

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent
_DEFAULT_DATA_DIR_NAME = "data"
_DEFAULT_DB_FILENAME = "budget.db"
CONNECTION_STRING_ENV = "BUDGET_DB_CONNECTION_STRING"

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def utc_now() -> datetime:
    """
    Get current UTC datetime with timezone awareness.

    All timestamps handed to the storage engine are stored in UTC.

    Returns:
        Current datetime in UTC with timezone info
    """
    return datetime.now(UTC)


def now_millis() -> int:
    """Return the current wall clock time in whole milliseconds."""
    return time.time_ns() // 1_000_000


def get_project_root() -> Path:
    """Return the repository root directory."""
    return _PROJECT_ROOT


def _coerce_path(path_value: str | Path, *, allow_relative: bool = True) -> Path:
    """
    Convert a string/Path into an absolute project-root based Path.

    Args:
        path_value: Candidate filesystem path.
        allow_relative: If False, value must already be absolute.

    Returns:
        Absolute Path instance.
    """
    path = Path(path_value)
    if path.is_absolute() or not allow_relative:
        return path
    return get_project_root() / path


def get_data_dir(config: Optional[Dict[str, Any]] = None) -> Path:
    """
    Resolve the data directory path without creating it.

    Args:
        config: Optional configuration dictionary.

    Returns:
        Path to the data directory (may not exist yet).
    """
    db_config = (config or {}).get("database", {})
    data_dir_raw = db_config.get("data_dir") or _DEFAULT_DATA_DIR_NAME
    return _coerce_path(data_dir_raw)


def ensure_data_dir(config: Optional[Dict[str, Any]] = None) -> Path:
    """
    Ensure the data directory exists and return its Path.

    Args:
        config: Optional configuration dictionary.

    Returns:
        Absolute Path to the ensured data directory.
    """
    data_dir = get_data_dir(config)
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("Failed to create data directory '%s': %s", data_dir, exc)
        raise
    return data_dir


def _ensure_sqlite_parent_dir(connection_string: str) -> None:
    """
    Ensure the parent directory for a SQLite database exists.

    Args:
        connection_string: SQLAlchemy connection string.
    """
    try:
        url = make_url(connection_string)
    except Exception as exc:  # pragma: no cover - logging only
        logger.debug("Unable to parse connection string '%s': %s", connection_string, exc)
        return

    if not url.drivername.startswith("sqlite"):
        return

    database = url.database
    if not database or database == ":memory:":
        return

    db_path = Path(database)
    if not db_path.is_absolute():
        db_path = get_project_root() / db_path

    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("Failed to create SQLite parent directory '%s': %s", db_path.parent, exc)
        raise


def resolve_connection_string(config: Optional[Dict[str, Any]] = None) -> str:
    """
    Resolve the database connection string using env var, config, or defaults.

    Order of precedence:
        1. BUDGET_DB_CONNECTION_STRING environment variable
        2. config['database']['connection_string']
        3. Constructed from data_dir/path defaults

    Args:
        config: Optional configuration dictionary.

    Returns:
        SQLAlchemy connection string.
    """
    config = config or {}
    env_conn = os.environ.get(CONNECTION_STRING_ENV)
    if env_conn and env_conn.strip():
        _ensure_sqlite_parent_dir(env_conn.strip())
        return env_conn.strip()

    db_config = config.get("database", {})
    config_conn = db_config.get("connection_string")
    if config_conn:
        _ensure_sqlite_parent_dir(config_conn)
        return config_conn

    data_dir = ensure_data_dir(config)
    db_filename = db_config.get("path") or _DEFAULT_DB_FILENAME
    db_path = Path(db_filename)
    if not db_path.is_absolute():
        db_path = data_dir / db_path
    else:
        db_path.parent.mkdir(parents=True, exist_ok=True)

    return f"sqlite:///{db_path.as_posix()}"


def resolve_log_path(log_path: str) -> Path:
    """
    Convert a log file path to an absolute path under the project root when needed.

    Args:
        log_path: Configured log file path (relative or absolute).

    Returns:
        Absolute Path for logging output.
    """
    resolved = _coerce_path(log_path)
    if resolved.parent != resolved:
        resolved.parent.mkdir(parents=True, exist_ok=True)
    return resolved


def round_currency(value: float) -> float:
    """Round a currency value to cents."""
    return round(float(value), 2)


def round_whole(value: float) -> int:
    """Round to the nearest whole currency unit, halves away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_amount(raw: Any) -> Optional[float]:
    """
    Parse a user supplied amount.

    Args:
        raw: Number or string such as "4.50" or " 12 ".

    Returns:
        Amount rounded to cents, or None when the input is not a finite number.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = Decimal(str(raw))
    else:
        text = str(raw).strip().replace(",", "")
        if not text:
            return None
        try:
            value = Decimal(text)
        except InvalidOperation:
            return None
    if not value.is_finite():
        return None
    try:
        return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return None


def coerce_amount(raw: Any) -> float:
    """Parse an amount, treating unparsable input as 0."""
    amount = parse_amount(raw)
    return 0.0 if amount is None else amount


def parse_allocation(raw: Any) -> int:
    """
    Parse an allocation typed into a whole-number field.

    Leading zeros are stripped, empty or unparsable input becomes 0 and
    negative or non-finite values are treated as 0. Trailing garbage after
    the digits is ignored ("120abc" -> 120).
    """
    if raw is None or isinstance(raw, bool):
        return 0
    if isinstance(raw, float) and not math.isfinite(raw):
        return 0
    if isinstance(raw, (int, float)):
        return max(int(raw), 0)

    text = str(raw).strip().lstrip("0")
    if not text:
        return 0
    match = _LEADING_INT.match(text)
    if not match:
        return 0
    return max(int(match.group(1)), 0)


def parse_timestamp(raw: Any, default: Optional[datetime] = None) -> datetime:
    """
    Normalize a timestamp to a timezone-aware datetime.

    Naive values are assumed to be UTC. Missing or unparsable values fall back
    to ``default`` (current time when not given).
    """
    fallback = default or utc_now()
    if raw is None or raw == "":
        return fallback
    if isinstance(raw, datetime):
        value = raw
    else:
        try:
            value = datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparsable timestamp %r; using fallback", raw)
            return fallback
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value
