"""Project-level configuration and scaffolding."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

CONFIG_FILE = "sheetbook.yaml"

DEFAULT_CONFIG = {
    "database": "sheetbook.db",
    "max_import_rows_per_sheet": 1000,
    "header_scan_rows": 5,
    "internal_field_prefix": "_",
    "income_labels": ["收入", "income"],
    "expense_labels": ["支出", "expense"],
    "default_owner": "local",
    "logging_fsync": False,
    "logging_tail_bytes": 2_097_152,  # 2 MB
}

DEMO_CONFIG = """\
# sheetbook project configuration
database: sheetbook.db

# Rows beyond this cap are dropped per sheet on import (recorded in the summary)
max_import_rows_per_sheet: 1000

# Leading rows searched for the header row
header_scan_rows: 5

# Flow-type labels counted as income / expense in monthly views
income_labels: [收入, income]
expense_labels: [支出, expense]

default_owner: local

logging_fsync: false
"""


def load_project_config(project_dir: Path) -> dict[str, Any]:
    """Load project configuration from ``sheetbook.yaml``, with defaults.

    Args:
        project_dir: Root of the sheetbook project.

    Returns:
        Merged configuration dict.
    """
    config = dict(DEFAULT_CONFIG)
    config_path = project_dir / CONFIG_FILE
    if config_path.exists():
        user_config = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        if not isinstance(user_config, dict):
            raise ValueError(f"{config_path} must contain a mapping")
        config.update(user_config)
    return config


def database_path(project_dir: Path, config: dict[str, Any] | None = None) -> Path:
    """Resolve the configured SQLite database path against *project_dir*."""
    cfg = config if config is not None else load_project_config(project_dir)
    db = Path(str(cfg.get("database") or DEFAULT_CONFIG["database"]))
    if not db.is_absolute():
        db = project_dir / db
    return db


def scaffold_project(target_dir: Path) -> Path:
    """Create a project directory with a starter ``sheetbook.yaml``.

    Args:
        target_dir: Directory to create (must not already hold a config).

    Returns:
        The project directory.

    Raises:
        FileExistsError: If ``sheetbook.yaml`` already exists.
    """
    target_dir = Path(target_dir)
    if (target_dir / CONFIG_FILE).exists():
        raise FileExistsError(f"{CONFIG_FILE} already exists in {target_dir}")
    target_dir.mkdir(parents=True, exist_ok=True)
    (target_dir / CONFIG_FILE).write_text(DEMO_CONFIG, encoding="utf-8")
    (target_dir / "logs").mkdir(exist_ok=True)
    return target_dir
