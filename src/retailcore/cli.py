"""Command-line entry points for RetailCore.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing the results. The same parser configuration can be reused
by tests or any other front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import catalog, core_logic, costing, export, ledger, log, reports, sales
from .constants import MovementType, PaymentMethod, SaleStatus
from .store import StorageFailure


SubParsers = argparse._SubParsersAction


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[SubParsers], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="retailcore-cli",
        description="Command-line tools for the RetailCore inventory and credit ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to an upward search from the working directory).",
    )
    parser.add_argument(
        "--user",
        type=int,
        default=None,
        help="User id recorded on writes (defaults to DefaultUser from config.ini).",
    )
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales, receipts and payments."""
    specs = {
        "add-product": register_add_product_command(),
        "add-customer": register_add_customer_command(),
        "update-product": register_update_product_command(),
        "update-customer": register_update_customer_command(),
        "receive": register_receive_command(),
        "sale": register_sale_command(),
        "credit-sale": register_credit_sale_command(),
        "pay": register_pay_command(),
        "void-sale": register_void_sale_command(),
        "adjust": register_adjust_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports and exports."""
    specs = {
        "stock-alerts": register_stock_alerts_command(),
        "profit": register_profit_command(),
        "daily-profit": register_daily_profit_command(),
        "balances": register_balances_command(),
        "statement": register_statement_command(),
        "export": register_export_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_money_arg(raw: str) -> Decimal:
    """argparse ``type`` converting text into a finite :class:`Decimal`."""
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid amount: {raw!r}") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"invalid amount: {raw!r}")
    return value


def parse_date_arg(raw: str) -> date:
    """argparse ``type`` accepting ``YYYY-MM-DD``."""
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date (expected YYYY-MM-DD): {raw!r}") from exc


def parse_line_arg(raw: str) -> core_logic.SaleLineInput:
    """argparse ``type`` for ``PRODUCT_ID:QUANTITY:UNIT_PRICE[:LINE_DISCOUNT]``."""
    parts = raw.split(":")
    if len(parts) not in (3, 4):
        raise argparse.ArgumentTypeError(
            f"invalid line {raw!r}; expected PRODUCT_ID:QUANTITY:UNIT_PRICE[:LINE_DISCOUNT]"
        )
    try:
        product_id = int(parts[0])
        quantity = int(parts[1])
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid line {raw!r}: {exc}") from exc
    unit_price = parse_money_arg(parts[2])
    line_discount = parse_money_arg(parts[3]) if len(parts) == 4 else Decimal("0")
    return core_logic.SaleLineInput(product_id, quantity, unit_price, line_discount)


def _add_window_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", type=parse_date_arg, default=None, help="First day included (YYYY-MM-DD).")
    parser.add_argument("--end", type=parse_date_arg, default=None, help="Last day included (YYYY-MM-DD).")


def register_add_product_command() -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the catalog."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", type=parse_money_arg, required=True, help="Selling price.")
        parser.add_argument("--sku", default=None)
        parser.add_argument("--min-stock", type=int, default=None, help="Low-stock threshold.")
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_add_customer_command() -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new credit customer."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--credit-limit", type=parse_money_arg, default=Decimal("0"))
        parser.add_argument("--inactive", action="store_true", help="Mark the customer as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_update_product_command() -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Edit a product's name, price, SKU or low-stock threshold."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--price", type=parse_money_arg, default=None, help="New selling price.")
        parser.add_argument("--sku", default=None, help="New SKU; pass an empty string to clear it.")
        parser.add_argument("--min-stock", type=int, default=None, help="New low-stock threshold.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_update_customer_command() -> CommandSpec:
    """Register the parser and executor for ``update-customer``."""
    name = "update-customer"
    help_text = "Edit a customer's name, phone or credit limit."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", type=int, required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--phone", default=None, help="New phone; pass an empty string to clear it.")
        parser.add_argument("--credit-limit", type=parse_money_arg, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_customer)


def register_receive_command() -> CommandSpec:
    """Register the parser and executor for ``receive``."""
    name = "receive"
    help_text = "Receive purchased stock and update the weighted-average cost."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--unit-cost", type=parse_money_arg, required=True)
        parser.add_argument("--supplier-id", type=int, default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receive)


def register_sale_command() -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a cash or card sale."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            type=parse_line_arg,
            required=True,
            help="PRODUCT_ID:QUANTITY:UNIT_PRICE[:LINE_DISCOUNT]; repeat for each line.",
        )
        parser.add_argument("--paid", type=parse_money_arg, required=True, help="Amount handed over.")
        parser.add_argument("--discount", type=parse_money_arg, default=Decimal("0"))
        parser.add_argument("--customer-id", type=int, default=None)
        parser.add_argument(
            "--method",
            choices=[PaymentMethod.CASH.value, PaymentMethod.CARD.value],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_credit_sale_command() -> CommandSpec:
    """Register the parser and executor for ``credit-sale``."""
    name = "credit-sale"
    help_text = "Record a sale on the customer's credit account."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", type=int, required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            type=parse_line_arg,
            required=True,
            help="PRODUCT_ID:QUANTITY:UNIT_PRICE[:LINE_DISCOUNT]; repeat for each line.",
        )
        parser.add_argument("--discount", type=parse_money_arg, default=Decimal("0"))
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_credit_sale)


def register_pay_command() -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Record a payment against a customer's balance."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", type=int, required=True)
        parser.add_argument("--amount", type=parse_money_arg, required=True)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_void_sale_command() -> CommandSpec:
    """Register the parser and executor for ``void-sale``."""
    name = "void-sale"
    help_text = "Refund (or cancel) a completed sale."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", type=int, required=True)
        parser.add_argument("--cancel", action="store_true", help="Mark the sale cancelled instead of refunded.")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_void_sale)


def register_adjust_command() -> CommandSpec:
    """Register the parser and executor for ``adjust``."""
    name = "adjust"
    help_text = "Apply a manual stock correction or damage write-off."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        parser.add_argument("--change", type=int, required=True, help="Signed quantity change.")
        parser.add_argument("--damage", action="store_true", help="Record the change as damaged stock.")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust)


def register_stock_alerts_command() -> CommandSpec:
    """Register the parser and executor for ``stock-alerts``."""
    name = "stock-alerts"
    help_text = "List active products at or below their minimum stock level."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_alerts)


def register_profit_command() -> CommandSpec:
    """Register the parser and executor for ``profit``."""
    name = "profit"
    help_text = "Display revenue, cost, and profit for a date range."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_profit)


def register_daily_profit_command() -> CommandSpec:
    """Register the parser and executor for ``daily-profit``."""
    name = "daily-profit"
    help_text = "Display profit per day, newest first."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_daily_profit)


def register_balances_command() -> CommandSpec:
    """Register the parser and executor for ``balances``."""
    name = "balances"
    help_text = "Display outstanding customer balances."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balances)


def register_statement_command() -> CommandSpec:
    """Register the parser and executor for ``statement``."""
    name = "statement"
    help_text = "Display a customer's ledger statement."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_statement)


def register_export_command() -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Export reports (or one customer's statement) to an .xlsx workbook."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, required=True)
        parser.add_argument("--customer-id", type=int, default=None, help="Export this customer's statement.")
        parser.add_argument("--force", action="store_true", help="Overwrite the output file if it exists.")
        _add_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def resolve_user(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    user = getattr(args, "user", None)
    return context.settings.default_user_id if user is None else user


def resolve_window(args: argparse.Namespace) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Turn inclusive ``--start``/``--end`` days into a half-open UTC window."""
    start_day: Optional[date] = getattr(args, "start", None)
    end_day: Optional[date] = getattr(args, "end", None)
    start = None if start_day is None else datetime(start_day.year, start_day.month, start_day.day, tzinfo=UTC)
    end = None
    if end_day is not None:
        following = end_day + timedelta(days=1)
        end = datetime(following.year, following.month, following.day, tzinfo=UTC)
    return start, end


def translate_add_product(args: argparse.Namespace) -> core_logic.NewProductCommand:
    """Translate CLI args into a new-product command object."""
    return core_logic.NewProductCommand(
        name=args.name,
        selling_price=args.price,
        sku=args.sku,
        min_stock_level=args.min_stock,
        is_active=not getattr(args, "inactive", False),
    )


def translate_add_customer(args: argparse.Namespace) -> core_logic.NewCustomerCommand:
    """Translate CLI args into a new-customer command object."""
    return core_logic.NewCustomerCommand(
        name=args.name,
        phone=args.phone,
        credit_limit=args.credit_limit,
        is_active=not getattr(args, "inactive", False),
    )


def translate_update_product(args: argparse.Namespace) -> core_logic.ProductUpdateCommand:
    """Translate CLI args into a product edit command object."""
    return core_logic.ProductUpdateCommand(
        product_id=args.product_id,
        name=args.name,
        selling_price=args.price,
        sku=args.sku,
        min_stock_level=args.min_stock,
    )


def translate_update_customer(args: argparse.Namespace) -> core_logic.CustomerUpdateCommand:
    """Translate CLI args into a customer edit command object."""
    return core_logic.CustomerUpdateCommand(
        customer_id=args.customer_id,
        name=args.name,
        phone=args.phone,
        credit_limit=args.credit_limit,
    )


def translate_receive(args: argparse.Namespace, user_id: int) -> core_logic.StockReceiptCommand:
    """Translate CLI args into a stock receipt command object."""
    return core_logic.StockReceiptCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        unit_cost=args.unit_cost,
        user_id=user_id,
        supplier_id=args.supplier_id,
        notes=args.notes,
    )


def translate_sale(args: argparse.Namespace, user_id: int) -> core_logic.CashSaleCommand:
    """Translate CLI args into a cash sale command object."""
    return core_logic.CashSaleCommand(
        lines=tuple(args.lines),
        user_id=user_id,
        amount_paid=args.paid,
        discount=args.discount,
        customer_id=args.customer_id,
        payment_method=PaymentMethod(args.method),
        notes=args.notes,
    )


def translate_credit_sale(args: argparse.Namespace, user_id: int) -> core_logic.CreditSaleCommand:
    """Translate CLI args into a credit sale command object."""
    return core_logic.CreditSaleCommand(
        customer_id=args.customer_id,
        lines=tuple(args.lines),
        user_id=user_id,
        discount=args.discount,
        notes=args.notes,
    )


def translate_pay(args: argparse.Namespace, user_id: int) -> core_logic.PaymentCommand:
    """Translate CLI args into a payment command object."""
    return core_logic.PaymentCommand(
        customer_id=args.customer_id,
        amount=args.amount,
        user_id=user_id,
        description=args.description,
    )


def translate_void_sale(args: argparse.Namespace, user_id: int) -> core_logic.VoidSaleCommand:
    """Translate CLI args into a void-sale command object."""
    return core_logic.VoidSaleCommand(
        sale_id=args.sale_id,
        user_id=user_id,
        status=SaleStatus.CANCELLED if args.cancel else SaleStatus.REFUNDED,
        notes=args.notes,
    )


def translate_adjust(args: argparse.Namespace, user_id: int) -> core_logic.StockAdjustmentCommand:
    """Translate CLI args into a stock adjustment command object."""
    return core_logic.StockAdjustmentCommand(
        product_id=args.product_id,
        quantity_change=args.change,
        user_id=user_id,
        movement_type=MovementType.DAMAGE if args.damage else MovementType.ADJUSTMENT,
        notes=args.notes,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = catalog.add_product(context, translate_add_product(args))
    print(f"Added product #{product.id}: {product.name} @ {product.selling_price}")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    customer = catalog.add_customer(context, translate_add_customer(args))
    print(f"Added customer #{customer.id}: {customer.name} (limit {customer.credit_limit})")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = catalog.update_product(context, translate_update_product(args))
    print(
        f"Updated product #{product.id}: {product.name} @ {product.selling_price} "
        f"(sku {product.sku or '-'}, min stock {product.min_stock_level})"
    )
    return 0


def run_update_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    customer = catalog.update_customer(context, translate_update_customer(args))
    print(f"Updated customer #{customer.id}: {customer.name} (limit {customer.credit_limit})")
    return 0


def run_receive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    receipt = costing.receive_stock(context, translate_receive(args, resolve_user(context, args)))
    print(
        f"Product #{receipt.product.id}: stock {receipt.previous_stock} -> {receipt.new_stock}, "
        f"WAC {receipt.previous_wac} -> {receipt.new_wac}"
    )
    return 0


def _print_sale(result: core_logic.SaleResult) -> None:
    sale = result.sale
    print(f"Sale #{sale.id} {sale.invoice_number} ({sale.payment_method.value})")
    for line in result.lines:
        print(f"  product #{line.product_id} x{line.quantity} @ {line.unit_price} = {line.line_total}")
    print(f"  subtotal {sale.subtotal}  discount {sale.discount}  total {sale.total}")


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = sales.record_cash_sale(context, translate_sale(args, resolve_user(context, args)))
    _print_sale(result)
    print(f"  paid {result.sale.payment_received}  change {result.change}")
    return 0


def run_credit_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = sales.record_credit_sale(context, translate_credit_sale(args, resolve_user(context, args)))
    _print_sale(result)
    if result.ledger_entry is not None:
        print(f"  customer #{result.sale.customer_id} balance {result.ledger_entry.running_balance}")
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = ledger.record_payment(context, translate_pay(args, resolve_user(context, args)))
    print(f"Payment of {result.entry.amount} from customer #{result.customer.id}; balance {result.customer.credit_balance}")
    return 0


def run_void_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = sales.void_sale(context, translate_void_sale(args, resolve_user(context, args)))
    print(f"Sale #{result.sale.id} {result.sale.invoice_number} is now {result.sale.status.value}")
    return 0


def run_adjust(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = costing.adjust_stock(context, translate_adjust(args, resolve_user(context, args)))
    movement = result.movement
    print(f"Product #{movement.product_id}: stock {movement.previous_stock} -> {movement.new_stock}")
    return 0


def run_stock_alerts(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    alerts = reports.low_stock_alerts(context)
    if not alerts:
        print("No stock alerts.")
    for alert in alerts:
        print(f"#{alert.product_id} {alert.name}: {alert.current_stock}/{alert.min_stock_level} {alert.status.value}")
    return 0


def run_profit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    start, end = resolve_window(args)
    report = reports.profit_for_range(context, start, end)
    print(f"Revenue:       {report.revenue}")
    print(f"Cost:          {report.cost}")
    print(f"Gross profit:  {report.gross_profit}")
    print(f"Discounts:     {report.total_discounts}")
    print(f"Net profit:    {report.net_profit}")
    print(f"Margin:        {report.profit_margin}%")
    print(f"Items sold:    {report.items_sold}")
    print(f"Transactions:  {report.transaction_count}")
    return 0


def run_daily_profit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    start, end = resolve_window(args)
    for day in reports.daily_profit_breakdown(context, start, end):
        print(
            f"{day.day.isoformat()}  revenue {day.revenue}  net {day.net_profit}  "
            f"margin {day.profit_margin}%  ({day.transaction_count} sales)"
        )
    return 0


def run_balances(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    balances = reports.outstanding_balances(context)
    if not balances:
        print("No outstanding balances.")
    for entry in balances:
        print(f"#{entry.customer_id} {entry.name}: owes {entry.amount_owed} (remaining credit {entry.remaining_credit})")
    return 0


def run_statement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for entry in ledger.statement_for(context, args.customer_id):
        print(
            f"{entry.created_at.isoformat()}  {entry.entry_type.value:<6} {entry.amount:>10}  "
            f"balance {entry.running_balance}  {entry.description or ''}"
        )
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if args.customer_id is not None:
        path = export.export_statement(context, args.customer_id, args.output, overwrite=args.force)
    else:
        start, end = resolve_window(args)
        path = export.export_reports(context, args.output, start=start, end=end, overwrite=args.force)
    print(f"Wrote {path}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, core_logic.BusinessRuleViolation):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    if isinstance(error, StorageFailure):
        return 4
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
    except Exception as error:
        return handle_cli_error(error)
    try:
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:
        return handle_cli_error(error)
    finally:
        core_logic.close_context(context)


if __name__ == "__main__":  # pragma: no cover - exercised via the console script
    raise SystemExit(main())
