"""Data mapping layer for RetailCore.

This module sits between the raw :mod:`retailcore.store` and the business
layers. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Store lifecycle: opening the configured store implementation.
3. Record mapping: converting raw store rows into strongly typed, validated
   dataclasses and back into storable primitives.
"""


from __future__ import annotations

import configparser
from dataclasses import asdict, dataclass
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

from . import log
from .constants import (
    MONEY_QUANTUM,
    LedgerEntryType,
    MovementType,
    PaymentMethod,
    SaleStatus,
)
from .store import MemoryStore, SqliteStore, StorageFailure, Store


CONFIG_FILE_NAME = "config.ini"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"
BACKEND_SQLITE = "sqlite"
BACKEND_MEMORY = "memory"

E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    database_file: Path
    store_name: str
    schema_version: str
    backend: str = BACKEND_SQLITE
    default_user_id: int = 1
    enforce_credit_limit: bool = False
    allow_overpayment: bool = True
    low_stock_default: int = 5


@dataclass(frozen=True)
class ProductRow:
    """Typed view of a row from the ``products`` table."""

    id: Optional[int]
    name: str
    sku: Optional[str]
    selling_price: Decimal
    quantity: int
    wac_cost: Decimal
    last_unit_cost: Decimal
    min_stock_level: int
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @property
    def effective_wac(self) -> Decimal:
        """WAC used for valuation; an empty product carries no cost."""

        return self.wac_cost if self.quantity > 0 else Decimal("0.00")


@dataclass(frozen=True)
class CustomerRow:
    """Typed view of a row from the ``customers`` table."""

    id: Optional[int]
    name: str
    phone: Optional[str]
    credit_limit: Decimal
    credit_balance: Decimal
    is_active: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class SaleRow:
    """Typed view of a row from the ``sales`` table."""

    id: Optional[int]
    invoice_number: str
    customer_id: Optional[int]
    user_id: int
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    payment_method: PaymentMethod
    payment_received: Decimal
    change_given: Decimal
    status: SaleStatus
    notes: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class SaleLineRow:
    """Typed view of a row from the ``sale_lines`` table."""

    id: Optional[int]
    sale_id: int
    product_id: int
    quantity: int
    unit_price: Decimal
    cost_at_sale: Decimal
    line_discount: Decimal
    line_total: Decimal
    created_at: datetime


@dataclass(frozen=True)
class LedgerEntryRow:
    """Typed view of a row from the ``ledger_entries`` table."""

    id: Optional[int]
    customer_id: int
    entry_type: LedgerEntryType
    amount: Decimal
    running_balance: Decimal
    reference_type: Optional[str]
    reference_id: Optional[int]
    description: Optional[str]
    user_id: int
    created_at: datetime


@dataclass(frozen=True)
class StockMovementRow:
    """Typed view of a row from the ``stock_movements`` table."""

    id: Optional[int]
    product_id: int
    movement_type: MovementType
    quantity: int
    unit_cost: Optional[Decimal]
    previous_stock: int
    new_stock: int
    previous_wac: Optional[Decimal]
    new_wac: Optional[Decimal]
    reference_type: Optional[str]
    reference_id: Optional[int]
    notes: Optional[str]
    user_id: int
    created_at: datetime


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Required entries live in the ``System`` section. ``Policy`` and
    ``Defaults`` entries are optional and fall back to the dataclass defaults,
    which reproduce the historical behaviour: credit limits are advisory and
    overpayments turn into customer credit. Relative ``DatabaseFile`` entries
    are anchored to ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative database
            path.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing, or the backend
            name is unknown.
        ValueError: If an optional entry cannot be converted to its type.
    """

    try:
        database_raw = parser.get("System", "DatabaseFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    backend = parser.get("System", "Backend", fallback=BACKEND_SQLITE).strip().lower()
    if backend not in (BACKEND_SQLITE, BACKEND_MEMORY):
        raise KeyError(f"Unknown store backend: {backend}")

    database_path = Path(database_raw)
    if not database_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        database_path = (base_path / database_path).resolve()

    return ConfigSettings(
        database_file=database_path,
        store_name=store_name,
        schema_version=schema_version,
        backend=backend,
        default_user_id=parser.getint("Defaults", "DefaultUser", fallback=1),
        enforce_credit_limit=parser.getboolean("Policy", "EnforceCreditLimit", fallback=False),
        allow_overpayment=parser.getboolean("Policy", "AllowOverpayment", fallback=True),
        low_stock_default=parser.getint("Policy", "LowStockDefault", fallback=5),
    )


def open_store(settings: ConfigSettings) -> Store:
    """Open the store implementation selected by ``settings.backend``.

    SQLite databases must already exist (see ``setup_database.py``); the
    in-memory backend starts empty with its schema in place.

    Raises:
        FileNotFoundError: If the configured database file does not exist.
    """

    if settings.backend == BACKEND_MEMORY:
        store = MemoryStore()
        store.ensure_schema(settings.schema_version)
        log.info("Opened in-memory store")
        return store

    database_file = Path(settings.database_file).expanduser().resolve()
    if not database_file.exists():
        raise FileNotFoundError(f"Database not found: {database_file}")
    log.info("Opened SQLite store '%s'", database_file)
    return SqliteStore(database_file)


def round_money(amount: Decimal) -> Decimal:
    """Quantize to cents using round-half-away-from-zero."""

    return Decimal(amount).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def utc_now() -> datetime:
    """Return the current timezone-aware UTC time."""

    return datetime.now(UTC)


def to_storage_timestamp(moment: datetime) -> str:
    """Render ``moment`` as fixed-width UTC text so lexical order is time order.

    Naive datetimes are treated as already being in UTC.
    """

    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC)
    return moment.strftime(TIMESTAMP_FORMAT)


def day_bounds(day: date) -> tuple[str, str]:
    """Return the storage-format ``[start, end)`` bounds of one UTC calendar day."""

    start = datetime(day.year, day.month, day.day, tzinfo=UTC)
    end = datetime.fromordinal(day.toordinal() + 1).replace(tzinfo=UTC)
    return to_storage_timestamp(start), to_storage_timestamp(end)


def to_storage_money(amount: Optional[Decimal]) -> Optional[str]:
    """Serialize a monetary value as a cent-quantized decimal string."""

    if amount is None:
        return None
    return str(round_money(amount))


def parse_money(raw: Any, *, column: str) -> Decimal:
    """Convert a stored monetary value into a :class:`Decimal`.

    Raises:
        StorageFailure: If the value is missing or not a valid decimal.
    """

    if raw is None:
        raise StorageFailure(f"Missing monetary value in column '{column}'")
    try:
        value = Decimal(str(raw))
    except InvalidOperation as exc:
        raise StorageFailure(f"Malformed monetary value in column '{column}': {raw!r}") from exc
    if not value.is_finite():
        raise StorageFailure(f"Non-finite monetary value in column '{column}': {raw!r}")
    return value


def _parse_optional_money(raw: Any, *, column: str) -> Optional[Decimal]:
    return None if raw is None else parse_money(raw, column=column)


def parse_timestamp(raw: Any, *, column: str = "created_at") -> datetime:
    """Convert stored timestamp text into an aware UTC datetime."""

    try:
        return datetime.strptime(str(raw), TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError as exc:
        raise StorageFailure(f"Malformed timestamp in column '{column}': {raw!r}") from exc


def _parse_int(raw: Any, *, column: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        try:
            return int(str(raw))
        except ValueError as exc:
            raise StorageFailure(f"Malformed integer in column '{column}': {raw!r}") from exc
    return raw


def _parse_optional_int(raw: Any, *, column: str) -> Optional[int]:
    return None if raw is None else _parse_int(raw, column=column)


def _parse_enum(enum_type: Type[E], raw: Any, *, column: str) -> E:
    try:
        return enum_type(raw)
    except ValueError as exc:
        raise StorageFailure(f"Unknown value in column '{column}': {raw!r}") from exc


def _optional_text(raw: Any) -> Optional[str]:
    return None if raw is None else str(raw)


def _storable(record: Any) -> Dict[str, Any]:
    """Flatten a row dataclass into store primitives, omitting ``id``."""

    values: Dict[str, Any] = {}
    for key, value in asdict(record).items():
        if key == "id":
            continue
        if isinstance(value, Enum):
            values[key] = value.value
        elif isinstance(value, bool):
            values[key] = int(value)
        elif isinstance(value, Decimal):
            values[key] = to_storage_money(value)
        elif isinstance(value, datetime):
            values[key] = to_storage_timestamp(value)
        else:
            values[key] = value
    return values


def serialize_product(record: ProductRow) -> Dict[str, Any]:
    """Convert a product dataclass into insertable column values."""

    return _storable(record)


def serialize_customer(record: CustomerRow) -> Dict[str, Any]:
    """Convert a customer dataclass into insertable column values."""

    return _storable(record)


def serialize_sale(record: SaleRow) -> Dict[str, Any]:
    """Convert a sale dataclass into insertable column values."""

    return _storable(record)


def serialize_sale_line(record: SaleLineRow) -> Dict[str, Any]:
    """Convert a sale line dataclass into insertable column values."""

    return _storable(record)


def serialize_ledger_entry(record: LedgerEntryRow) -> Dict[str, Any]:
    """Convert a ledger entry dataclass into insertable column values."""

    return _storable(record)


def serialize_stock_movement(record: StockMovementRow) -> Dict[str, Any]:
    """Convert a stock movement dataclass into insertable column values."""

    return _storable(record)


def deserialize_product(raw_row: Mapping[str, Any]) -> ProductRow:
    """Convert a raw ``products`` row into a validated :class:`ProductRow`.

    Raises:
        StorageFailure: If a column is malformed or the stored quantity is
            negative.
    """

    quantity = _parse_int(raw_row["quantity"], column="quantity")
    if quantity < 0:
        raise StorageFailure(f"Product {raw_row['id']} has negative quantity {quantity}")
    return ProductRow(
        id=_parse_int(raw_row["id"], column="id"),
        name=str(raw_row["name"]),
        sku=_optional_text(raw_row["sku"]),
        selling_price=parse_money(raw_row["selling_price"], column="selling_price"),
        quantity=quantity,
        wac_cost=parse_money(raw_row["wac_cost"], column="wac_cost"),
        last_unit_cost=parse_money(raw_row["last_unit_cost"], column="last_unit_cost"),
        min_stock_level=_parse_int(raw_row["min_stock_level"], column="min_stock_level"),
        is_active=bool(raw_row["is_active"]),
        created_at=parse_timestamp(raw_row["created_at"]),
        updated_at=parse_timestamp(raw_row["updated_at"], column="updated_at"),
    )


def deserialize_customer(raw_row: Mapping[str, Any]) -> CustomerRow:
    """Convert a raw ``customers`` row into a validated :class:`CustomerRow`."""

    return CustomerRow(
        id=_parse_int(raw_row["id"], column="id"),
        name=str(raw_row["name"]),
        phone=_optional_text(raw_row["phone"]),
        credit_limit=parse_money(raw_row["credit_limit"], column="credit_limit"),
        credit_balance=parse_money(raw_row["credit_balance"], column="credit_balance"),
        is_active=bool(raw_row["is_active"]),
        created_at=parse_timestamp(raw_row["created_at"]),
        updated_at=parse_timestamp(raw_row["updated_at"], column="updated_at"),
    )


def deserialize_sale(raw_row: Mapping[str, Any]) -> SaleRow:
    """Convert a raw ``sales`` row into a validated :class:`SaleRow`."""

    return SaleRow(
        id=_parse_int(raw_row["id"], column="id"),
        invoice_number=str(raw_row["invoice_number"]),
        customer_id=_parse_optional_int(raw_row["customer_id"], column="customer_id"),
        user_id=_parse_int(raw_row["user_id"], column="user_id"),
        subtotal=parse_money(raw_row["subtotal"], column="subtotal"),
        discount=parse_money(raw_row["discount"], column="discount"),
        total=parse_money(raw_row["total"], column="total"),
        payment_method=_parse_enum(PaymentMethod, raw_row["payment_method"], column="payment_method"),
        payment_received=parse_money(raw_row["payment_received"], column="payment_received"),
        change_given=parse_money(raw_row["change_given"], column="change_given"),
        status=_parse_enum(SaleStatus, raw_row["status"], column="status"),
        notes=_optional_text(raw_row["notes"]),
        created_at=parse_timestamp(raw_row["created_at"]),
    )


def deserialize_sale_line(raw_row: Mapping[str, Any]) -> SaleLineRow:
    """Convert a raw ``sale_lines`` row into a validated :class:`SaleLineRow`."""

    quantity = _parse_int(raw_row["quantity"], column="quantity")
    if quantity <= 0:
        raise StorageFailure(f"Sale line {raw_row['id']} has non-positive quantity {quantity}")
    return SaleLineRow(
        id=_parse_int(raw_row["id"], column="id"),
        sale_id=_parse_int(raw_row["sale_id"], column="sale_id"),
        product_id=_parse_int(raw_row["product_id"], column="product_id"),
        quantity=quantity,
        unit_price=parse_money(raw_row["unit_price"], column="unit_price"),
        cost_at_sale=parse_money(raw_row["cost_at_sale"], column="cost_at_sale"),
        line_discount=parse_money(raw_row["line_discount"], column="line_discount"),
        line_total=parse_money(raw_row["line_total"], column="line_total"),
        created_at=parse_timestamp(raw_row["created_at"]),
    )


def deserialize_ledger_entry(raw_row: Mapping[str, Any]) -> LedgerEntryRow:
    """Convert a raw ``ledger_entries`` row into a validated :class:`LedgerEntryRow`."""

    return LedgerEntryRow(
        id=_parse_int(raw_row["id"], column="id"),
        customer_id=_parse_int(raw_row["customer_id"], column="customer_id"),
        entry_type=_parse_enum(LedgerEntryType, raw_row["entry_type"], column="entry_type"),
        amount=parse_money(raw_row["amount"], column="amount"),
        running_balance=parse_money(raw_row["running_balance"], column="running_balance"),
        reference_type=_optional_text(raw_row["reference_type"]),
        reference_id=_parse_optional_int(raw_row["reference_id"], column="reference_id"),
        description=_optional_text(raw_row["description"]),
        user_id=_parse_int(raw_row["user_id"], column="user_id"),
        created_at=parse_timestamp(raw_row["created_at"]),
    )


def deserialize_stock_movement(raw_row: Mapping[str, Any]) -> StockMovementRow:
    """Convert a raw ``stock_movements`` row into a validated :class:`StockMovementRow`."""

    return StockMovementRow(
        id=_parse_int(raw_row["id"], column="id"),
        product_id=_parse_int(raw_row["product_id"], column="product_id"),
        movement_type=_parse_enum(MovementType, raw_row["movement_type"], column="movement_type"),
        quantity=_parse_int(raw_row["quantity"], column="quantity"),
        unit_cost=_parse_optional_money(raw_row["unit_cost"], column="unit_cost"),
        previous_stock=_parse_int(raw_row["previous_stock"], column="previous_stock"),
        new_stock=_parse_int(raw_row["new_stock"], column="new_stock"),
        previous_wac=_parse_optional_money(raw_row["previous_wac"], column="previous_wac"),
        new_wac=_parse_optional_money(raw_row["new_wac"], column="new_wac"),
        reference_type=_optional_text(raw_row["reference_type"]),
        reference_id=_parse_optional_int(raw_row["reference_id"], column="reference_id"),
        notes=_optional_text(raw_row["notes"]),
        user_id=_parse_int(raw_row["user_id"], column="user_id"),
        created_at=parse_timestamp(raw_row["created_at"]),
    )
