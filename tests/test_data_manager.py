"""Unit tests documenting the expected behavior of the data mapping layer."""

from __future__ import annotations

import configparser
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

from retailcore import constants, data_manager
from retailcore.store import MemoryStore, SqliteStore, StorageFailure


def _raw_product(**overrides: object) -> dict:
    row = {
        "id": 1,
        "name": "Widget",
        "sku": "W-1",
        "selling_price": "50.00",
        "quantity": 4,
        "wac_cost": "30.00",
        "last_unit_cost": "31.00",
        "min_stock_level": 5,
        "is_active": 1,
        "created_at": "2025-03-10T09:00:00.000000",
        "updated_at": "2025-03-10T09:30:00.000000",
    }
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_cwd(tmp_path, monkeypatch):
    """Auto-discovery should locate config.ini in the working directory tree."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDatabaseFile=retailcore.sqlite3")
    nested = tmp_path / "nested" / "deeper"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "StoreName") == "Test Store"
    assert parser.get("Defaults", "DefaultUser") == "7"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths_and_policy(config_factory):
    """Relative DatabaseFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True, enforce_credit_limit=True, allow_overpayment=False)
    parser = data_manager.read_config(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.database_file == bundle.database_path.resolve()
    assert settings.store_name == "Test Store"
    assert settings.backend == data_manager.BACKEND_SQLITE
    assert settings.default_user_id == 7
    assert settings.enforce_credit_limit is True
    assert settings.allow_overpayment is False
    assert settings.low_stock_default == 5


def test_parse_settings_defaults_optional_sections(tmp_path):
    """Policy and Defaults sections are optional and keep the historical behaviour."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDatabaseFile=db.sqlite3\nStoreName=Shop\nSchemaVersion=1.0.0\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.enforce_credit_limit is False
    assert settings.allow_overpayment is True
    assert settings.default_user_id == 1


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_unknown_backend(tmp_path):
    """Only the sqlite and memory backends exist."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDatabaseFile=db.sqlite3\nStoreName=Shop\nSchemaVersion=1.0.0\nBackend=postgres\n"
    )
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Store lifecycle
# ---------------------------------------------------------------------------


def test_open_store_returns_sqlite_store(config_factory):
    """An existing database file should open as a SqliteStore."""

    bundle = config_factory()
    settings = data_manager.parse_settings(data_manager.read_config(bundle.config_path))

    store = data_manager.open_store(settings)

    assert isinstance(store, SqliteStore)
    assert store.schema_version() == constants.EXPECTED_SCHEMA_VERSION


def test_open_store_requires_existing_database(tmp_path):
    """A missing SQLite file should raise FileNotFoundError instead of creating one."""

    settings = data_manager.ConfigSettings(
        database_file=tmp_path / "missing.sqlite3",
        store_name="Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    with pytest.raises(FileNotFoundError):
        data_manager.open_store(settings)
    assert not (tmp_path / "missing.sqlite3").exists()


def test_open_store_memory_backend_has_schema(tmp_path):
    """The memory backend starts empty with the configured schema version."""

    settings = data_manager.ConfigSettings(
        database_file=tmp_path / "unused.sqlite3",
        store_name="Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        backend=data_manager.BACKEND_MEMORY,
    )
    store = data_manager.open_store(settings)

    assert isinstance(store, MemoryStore)
    assert store.schema_version() == constants.EXPECTED_SCHEMA_VERSION


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (Decimal("2.345"), Decimal("2.35")),
        (Decimal("2.344"), Decimal("2.34")),
        (Decimal("-2.345"), Decimal("-2.35")),
        (Decimal("110"), Decimal("110.00")),
    ],
)
def test_round_money_rounds_half_away_from_zero(raw: Decimal, expected: Decimal):
    """Money should be quantized to cents with ROUND_HALF_UP."""

    assert data_manager.round_money(raw) == expected
    assert str(data_manager.round_money(raw)) == str(expected)


def test_storage_timestamps_sort_chronologically():
    """Fixed-width UTC text should compare the same way as the datetimes."""

    earlier = datetime(2025, 3, 10, 9, 0, 0, 5, tzinfo=UTC)
    later = datetime(2025, 3, 10, 10, 0, tzinfo=UTC)

    assert data_manager.to_storage_timestamp(earlier) == "2025-03-10T09:00:00.000005"
    assert data_manager.to_storage_timestamp(earlier) < data_manager.to_storage_timestamp(later)


def test_naive_timestamps_are_treated_as_utc():
    """Naive datetimes should be stored without any offset shift."""

    naive = datetime(2025, 3, 10, 9, 0)
    stored = data_manager.to_storage_timestamp(naive)

    assert stored == "2025-03-10T09:00:00.000000"
    assert data_manager.parse_timestamp(stored) == naive.replace(tzinfo=UTC)


def test_day_bounds_cover_one_utc_day():
    """day_bounds should return the half-open window of a calendar day."""

    assert data_manager.day_bounds(date(2025, 12, 31)) == (
        "2025-12-31T00:00:00.000000",
        "2026-01-01T00:00:00.000000",
    )


# ---------------------------------------------------------------------------
# Record mapping
# ---------------------------------------------------------------------------


def test_deserialize_product_returns_typed_row():
    """Raw rows should become frozen dataclasses with Decimal and datetime fields."""

    product = data_manager.deserialize_product(_raw_product())

    assert product.selling_price == Decimal("50.00")
    assert product.wac_cost == Decimal("30.00")
    assert product.is_active is True
    assert product.created_at == datetime(2025, 3, 10, 9, 0, tzinfo=UTC)
    assert product.effective_wac == Decimal("30.00")


def test_effective_wac_is_zero_for_empty_products():
    """A product without stock carries no cost."""

    product = data_manager.deserialize_product(_raw_product(quantity=0))

    assert product.wac_cost == Decimal("30.00")
    assert product.effective_wac == Decimal("0.00")


@pytest.mark.parametrize(
    "overrides",
    [
        {"quantity": -1},
        {"selling_price": "abc"},
        {"wac_cost": None},
        {"created_at": "10/03/2025"},
    ],
)
def test_deserialize_product_rejects_malformed_rows(overrides: dict):
    """Malformed rows should surface as StorageFailure rather than bad data."""

    with pytest.raises(StorageFailure):
        data_manager.deserialize_product(_raw_product(**overrides))


def test_deserialize_sale_rejects_unknown_status():
    """Enum columns should only accept their known values."""

    raw = {
        "id": 1,
        "invoice_number": "INV-20250310-0001",
        "customer_id": None,
        "user_id": 1,
        "subtotal": "100.00",
        "discount": "0.00",
        "total": "100.00",
        "payment_method": "cash",
        "payment_received": "100.00",
        "change_given": "0.00",
        "status": "lost",
        "notes": None,
        "created_at": "2025-03-10T09:00:00.000000",
    }
    with pytest.raises(StorageFailure):
        data_manager.deserialize_sale(raw)


def test_serialize_product_flattens_to_primitives():
    """Serialization should drop the id and convert every value to a primitive."""

    product = data_manager.deserialize_product(_raw_product())
    values = data_manager.serialize_product(product)

    assert "id" not in values
    assert values["selling_price"] == "50.00"
    assert values["is_active"] == 1
    assert values["created_at"] == "2025-03-10T09:00:00.000000"


def test_serialize_ledger_entry_uses_enum_values():
    """Enum members should be stored by value."""

    entry = data_manager.LedgerEntryRow(
        id=None,
        customer_id=3,
        entry_type=constants.LedgerEntryType.DEBIT,
        amount=Decimal("100"),
        running_balance=Decimal("100"),
        reference_type=constants.ReferenceType.SALE.value,
        reference_id=9,
        description="Credit sale",
        user_id=1,
        created_at=datetime(2025, 3, 10, 9, 0, tzinfo=UTC),
    )
    values = data_manager.serialize_ledger_entry(entry)

    assert values["entry_type"] == "debit"
    assert values["amount"] == "100.00"
    assert values["reference_type"] == "sale"
