"""Shared pytest fixtures and utilities for RetailCore tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from retailcore import catalog, cli, constants, core_logic, costing, data_manager  # noqa: E402
from setup_database import create_database  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
BASE_TIME = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DatabaseFile = {database_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n"
    "Backend = {backend}\n\n"
    "[Policy]\n"
    "EnforceCreditLimit = {enforce_credit_limit}\n"
    "AllowOverpayment = {allow_overpayment}\n"
    "LowStockDefault = 5\n\n"
    "[Defaults]\n"
    "DefaultUser = 7\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    database_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/database bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        create: bool = True,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        backend: str = "sqlite",
        enforce_credit_limit: bool = False,
        allow_overpayment: bool = True,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        database_path = bundle_dir / "retailcore.sqlite3"
        if create:
            create_database(database_path, schema_version=schema_version)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                database_file=database_path.name if make_relative else str(database_path),
                store_name=store_name,
                schema_version=schema_version,
                backend=backend,
                enforce_credit_limit=str(enforce_credit_limit).lower(),
                allow_overpayment=str(allow_overpayment).lower(),
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            database_path=database_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> Iterator[core_logic.RuntimeContext]:
    """Load the SQLite runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    yield context
    core_logic.close_context(context)


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def context_factory(tmp_path: Path) -> Callable[..., core_logic.RuntimeContext]:
    """Build contexts on either store backend with optional policy overrides."""

    def _create(backend: str = "memory", **policy: object) -> core_logic.RuntimeContext:
        database = tmp_path / f"store_{uuid.uuid4().hex}.sqlite3"
        settings = data_manager.ConfigSettings(
            database_file=database,
            store_name="Test Store",
            schema_version=DEFAULT_SCHEMA_VERSION,
            backend=backend,
            **policy,
        )
        if backend == data_manager.BACKEND_SQLITE:
            create_database(database)
        return core_logic.RuntimeContext(settings=settings, store=data_manager.open_store(settings))

    return _create


@pytest.fixture(params=[data_manager.BACKEND_MEMORY, data_manager.BACKEND_SQLITE])
def context(request: pytest.FixtureRequest, context_factory: Callable[..., core_logic.RuntimeContext]) -> core_logic.RuntimeContext:
    """Engine context; every test using it runs against both store backends."""

    return context_factory(request.param)


@pytest.fixture
def product_factory(context: core_logic.RuntimeContext) -> Callable[..., data_manager.ProductRow]:
    """Create a product and optionally receive opening stock into it."""

    def _create(
        *,
        name: str = "Widget",
        price: Decimal = Decimal("50.00"),
        quantity: int = 0,
        unit_cost: Decimal = Decimal("30.00"),
        min_stock_level: int = 5,
        sku: str | None = None,
        timestamp: datetime = BASE_TIME,
    ) -> data_manager.ProductRow:
        product = catalog.add_product(
            context,
            core_logic.NewProductCommand(
                name=name,
                selling_price=price,
                sku=sku,
                min_stock_level=min_stock_level,
            ),
            timestamp=timestamp,
        )
        if quantity:
            costing.receive_stock(
                context,
                core_logic.StockReceiptCommand(
                    product_id=product.id,
                    quantity=quantity,
                    unit_cost=unit_cost,
                    user_id=1,
                    timestamp=timestamp,
                ),
            )
            product = catalog.get_product(context, product.id)
        return product

    return _create


@pytest.fixture
def customer_factory(context: core_logic.RuntimeContext) -> Callable[..., data_manager.CustomerRow]:
    """Create a credit customer with a zero balance."""

    def _create(
        *,
        name: str = "Asha",
        phone: str | None = "0300-1234567",
        credit_limit: Decimal = Decimal("500.00"),
        timestamp: datetime = BASE_TIME,
    ) -> data_manager.CustomerRow:
        return catalog.add_customer(
            context,
            core_logic.NewCustomerCommand(name=name, phone=phone, credit_limit=credit_limit),
            timestamp=timestamp,
        )

    return _create


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` so commands without timestamps use ``moment``."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="retailcore-cli", description="RetailCore CLI")


@pytest.fixture
def subparsers_action(cli_parser: argparse.ArgumentParser) -> argparse._SubParsersAction:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
