"""Command-line entry points for the till ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the records and commands consumed by the business
layer, and printing results. Keeping the CLI thin lets tests and any other
front end reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log
from .constants import PaymentMethod, TransactionStatus, VatType, VoidOutcome
from .pricing import to_display_amount


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="till-cli",
        description="Command-line tools for the Till ledger store.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and voids."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "sale": register_sale_command(subparsers),
        "void": register_void_command(subparsers),
        "attach-customer": register_attach_customer_command(subparsers),
        "set-vat-rate": register_set_vat_rate_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "products": register_products_command(subparsers),
        "log": register_log_command(subparsers),
        "receipt": register_receipt_command(subparsers),
        "summary": register_summary_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_cart_line(raw: str) -> core_logic.CartLine:
    """Parse ``PRODUCT_ID:QUANTITY`` (quantity defaults to 1)."""
    product_id, _, quantity_raw = raw.rpartition(":")
    if not product_id:
        product_id, quantity_raw = raw, "1"
    try:
        quantity = int(quantity_raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid quantity in '{raw}'") from exc
    if quantity <= 0:
        raise argparse.ArgumentTypeError(f"Quantity must be positive in '{raw}'")
    return core_logic.CartLine(product_id=product_id, quantity=quantity)


def parse_amount(raw: str) -> Decimal:
    """Parse a decimal amount from the command line."""
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid amount: '{raw}'") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"Amount must be a finite number: '{raw}'")
    return value


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a product to the catalog or replace an existing one."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--barcode", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--cost-price", type=parse_amount, default=Decimal("0"))
        parser.add_argument("--selling-price", type=parse_amount, required=True)
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument(
            "--vat-type",
            choices=[member.value for member in VatType],
            default=VatType.INCLUDED.value,
        )
        parser.add_argument("--image-url", default=None)
        parser.add_argument("--inactive", action="store_true", help="Hide the product from the sales screen.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Remove a product from the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Add a customer to the directory or replace an existing one."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--tax-id", default="")
        parser.add_argument("--branch", default="Head Office")
        parser.add_argument("--address", default="")
        parser.add_argument("--phone", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale from one or more cart lines."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_cart_line,
            required=True,
            help="Cart line as PRODUCT_ID:QUANTITY; repeat for more lines.",
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            required=True,
        )
        parser.add_argument("--discount", type=parse_amount, default=Decimal("0"))
        parser.add_argument("--note", dest="note", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_void_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``void``."""
    name = "void"
    help_text = "Void a completed transaction and return its stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_void)


def register_attach_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``attach-customer``."""
    name = "attach-customer"
    help_text = "Attach a customer snapshot to a transaction for a tax invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--customer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_attach_customer)


def register_set_vat_rate_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-vat-rate``."""
    name = "set-vat-rate"
    help_text = "Change the flat VAT rate used for new sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--vat-rate", type=parse_amount, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_vat_rate)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List active products, optionally filtered by name or barcode."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--query", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the transaction log, most recent first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def register_receipt_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receipt``."""
    name = "receipt"
    help_text = "Display a stored transaction as a receipt."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receipt_report)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display sales totals for a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=date.fromisoformat, default=None, help="First day (YYYY-MM-DD).")
        parser.add_argument("--end", type=date.fromisoformat, default=None, help="Last day (YYYY-MM-DD).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


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


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_add_product(args: argparse.Namespace) -> data_manager.ProductRecord:
    """Translate CLI args into a product record."""
    return data_manager.ProductRecord(
        product_id=args.product_id,
        barcode=args.barcode,
        name=args.name,
        cost_price=args.cost_price,
        selling_price=args.selling_price,
        stock_quantity=args.stock,
        vat_type=VatType(args.vat_type),
        is_active=not getattr(args, "inactive", False),
        image_url=args.image_url,
    )


def translate_add_customer(args: argparse.Namespace) -> data_manager.CustomerRecord:
    """Translate CLI args into a customer record."""
    return data_manager.CustomerRecord(
        customer_id=args.customer_id,
        name=args.name,
        tax_id=args.tax_id,
        branch=args.branch,
        address=args.address,
        phone=args.phone,
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        lines=tuple(args.items),
        payment_method=PaymentMethod(args.payment_method),
        discount=args.discount,
        note=args.note,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.upsert_product(context, translate_add_product(args))
    print(f"Saved product {product.product_id} ({product.name})")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    core_logic.delete_product(context, args.product_id)
    print(f"Deleted product {args.product_id}")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    customer = core_logic.upsert_customer(context, translate_add_customer(args))
    print(f"Saved customer {customer.customer_id} ({customer.name})")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Check stock, then record the sale via the BLL."""
    command = translate_sale(args)
    with context.lock:
        core_logic.ensure_stock_available(context, command.lines)
        transaction = core_logic.record_sale(context, command)
    print(
        f"{transaction.receipt_no}  {transaction.transaction_id}  "
        f"net {to_display_amount(transaction.net_amount)}"
    )
    return 0


def run_void(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the void workflow via the BLL."""
    result = core_logic.void_transaction(context, args.transaction_id)
    if result.outcome is VoidOutcome.NOT_FOUND:
        print(f"Transaction {args.transaction_id} not found")
        return 2
    if result.outcome is VoidOutcome.ALREADY_VOID:
        print(f"Transaction {args.transaction_id} is already voided")
        return 0
    print(f"Voided {result.transaction.receipt_no}")
    return 0


def run_attach_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the attach-customer workflow via the BLL."""
    transaction = core_logic.attach_customer_by_id(context, args.transaction_id, args.customer_id)
    print(f"Attached customer {args.customer_id} to {transaction.receipt_no}")
    return 0


def run_set_vat_rate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Persist a new VAT rate in the store settings."""
    current = core_logic.load_store_settings(context)
    core_logic.save_store_settings(context, replace(current, vat_rate=args.vat_rate))
    print(f"VAT rate set to {args.vat_rate}%")
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the active catalog, optionally filtered."""
    for product in core_logic.search_products(context, args.query):
        print(
            f"{product.product_id:<10} {product.barcode:<14} {product.name:<24} "
            f"{to_display_amount(product.selling_price):>10} {product.stock_quantity:>6} "
            f"{product.vat_type.value}"
        )
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the transaction log."""
    for transaction in core_logic.list_transactions(context):
        print(
            f"{transaction.receipt_no:<18} {transaction.timestamp_iso:<34} "
            f"{to_display_amount(transaction.net_amount):>10} "
            f"{transaction.payment_method.value:<12} {transaction.status.value}"
        )
    return 0


def run_receipt_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one transaction with per-line figures recomputed from its items."""
    transaction = core_logic.get_transaction(context, args.transaction_id)
    settings = core_logic.load_store_settings(context)
    for line in format_receipt(transaction, settings):
        print(line)
    return 0


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the sales summary; defaults to the current month."""
    today = datetime.now(UTC).date()
    start = args.start or today.replace(day=1)
    end = args.end or today
    summary = core_logic.summarize_sales(context, start, end)
    print(f"Sales {start.isoformat()} .. {end.isoformat()}")
    print(f"  Total sales:   {to_display_amount(summary.total_sales)}")
    print(f"  Transactions:  {summary.completed_count}")
    print(f"  Average value: {to_display_amount(summary.average_value)}")
    print(f"  Voided:        {summary.void_count}")
    for day, amount in summary.daily_totals.items():
        print(f"  {day.isoformat()}  {to_display_amount(amount)}")
    return 0


def format_receipt(
    transaction: data_manager.TransactionRecord,
    settings: data_manager.StoreSettings,
) -> list[str]:
    """Render a transaction as plain receipt lines."""
    totals = core_logic.price_transaction(transaction)
    lines = [settings.company_name]
    if settings.address:
        lines.append(settings.address)
    if settings.tax_id:
        lines.append(f"Tax ID: {settings.tax_id}")
    lines.append(f"Receipt: {transaction.receipt_no}")
    lines.append(f"Date:    {transaction.timestamp_iso}")
    if transaction.status is TransactionStatus.VOIDED:
        lines.append("*** VOIDED ***")
    snapshot = transaction.customer_snapshot
    if snapshot is not None:
        lines.append(f"Customer: {snapshot.name} ({snapshot.branch})")
        if snapshot.tax_id:
            lines.append(f"Customer tax ID: {snapshot.tax_id}")
        if snapshot.address:
            lines.append(f"Address: {snapshot.address}")
    for item, breakdown in zip(transaction.items, totals.lines):
        lines.append(
            f"{item.product_name:<24} {item.quantity:>3} x {to_display_amount(item.unit_price):>8} "
            f"{to_display_amount(breakdown.line_total):>10}"
        )
    lines.append(f"Subtotal: {to_display_amount(transaction.gross_amount)}")
    lines.append(f"Discount: {to_display_amount(transaction.discount)}")
    lines.append(f"VAT {transaction.vat_rate}%: {to_display_amount(transaction.vat_amount)}")
    lines.append(f"Net:      {to_display_amount(transaction.net_amount)}")
    lines.append(f"Paid by:  {transaction.payment_method.value}")
    if settings.footer_message:
        lines.append(settings.footer_message)
    return lines


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, (data_manager.StorageError, data_manager.DecodeError)):
        log.error("Store failure: %s", error)
        return 4
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
