"""Utility for initializing the RetailCore database.

The module doubles as a script (``python setup_database.py``) and as a library
used by tests or other tooling. Shared helpers keep the database bootstrap
logic consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from retailcore.constants import EXPECTED_SCHEMA_VERSION
from retailcore.store import SqliteStore, StorageFailure

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    database_file: Path
    schema_version: str


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        database_raw = parser.get("System", "DatabaseFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc
    schema_version = parser.get("System", "SchemaVersion", fallback=EXPECTED_SCHEMA_VERSION)

    database_path = Path(database_raw)
    if not database_path.is_absolute():
        database_path = (config_path.parent / database_path).resolve()

    return SetupSettings(database_file=database_path, schema_version=schema_version)


def create_database(
    destination: Path,
    *,
    schema_version: str = EXPECTED_SCHEMA_VERSION,
    overwrite: bool = False,
) -> Path:
    """Create an empty RetailCore database at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists; with ``overwrite`` the
    old file is removed first.
    """

    destination = destination.expanduser().resolve()
    if destination.exists():
        if not overwrite:
            raise FileExistsError(f"Refusing to overwrite existing database: {destination}")
        destination.unlink()

    destination.parent.mkdir(parents=True, exist_ok=True)
    SqliteStore(destination).ensure_schema(schema_version)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the database configured in ``config_path``."""

    settings = load_settings(config_path)
    return create_database(
        settings.database_file,
        schema_version=settings.schema_version,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the RetailCore database")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target database if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- RetailCore Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (StorageFailure, OSError) as exc:
        print(f"\n[ERROR] Unable to create database: {exc}")
        return 1

    print(f"\n[SUCCESS] Created database at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
