"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import threading
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import pytest

from till_ledger import cli, constants, core_logic, data_manager
from till_ledger.constants import PaymentMethod, TransactionStatus, VatType


WRITE_COMMANDS = {
    "add-product",
    "delete-product",
    "add-customer",
    "sale",
    "void",
    "attach-customer",
    "set-vat-rate",
}

READ_COMMANDS = {
    "products",
    "log",
    "receipt",
    "summary",
}


def _run(parser_args, context) -> int:
    parser = cli.build_parser()
    table = cli.configure_subcommands(parser)
    args = parser.parse_args(parser_args)
    return cli.dispatch_command(context, args, table)


@pytest.fixture
def stocked(context, make_product):
    core_logic.upsert_product(context, make_product("P1", price="60", stock=10, vat_type=VatType.INCLUDED, name="Espresso"))
    core_logic.upsert_product(context, make_product("P2", price="100", stock=2, vat_type=VatType.EXCLUDED, name="Croissant"))
    return context


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should produce a configured ArgumentParser instance."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "till-cli"
    assert "Till" in parser.description


def test_configure_subcommands_registers_all_commands(cli_parser):
    """Every read and write command is available."""

    table = cli.configure_subcommands(cli_parser)
    assert set(table) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) for spec in specs.values())


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS


def test_register_sale_command_configures_arguments():
    """The sale parser collects repeated cart lines and validates the payment method."""

    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(dest="command")
    cli.register_sale_command(subparsers).register(subparsers)

    args = parser.parse_args(
        ["sale", "--item", "P1:2", "--item", "P2", "--payment-method", "QR Transfer", "--discount", "5.5"]
    )

    assert args.items == [core_logic.CartLine("P1", 2), core_logic.CartLine("P2", 1)]
    assert args.payment_method == "QR Transfer"
    assert args.discount == Decimal("5.5")
    with pytest.raises(SystemExit):
        parser.parse_args(["sale", "--item", "P1", "--payment-method", "Card"])


def test_register_add_product_command_configures_arguments():
    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(dest="command")
    cli.register_add_product_command(subparsers).register(subparsers)

    args = parser.parse_args(
        ["add-product", "--product-id", "P1", "--barcode", "885", "--name", "Tea", "--selling-price", "40"]
    )

    assert args.vat_type == VatType.INCLUDED.value
    assert args.stock == 0
    assert args.cost_price == Decimal("0")
    assert args.inactive is False


def test_build_command_table_detects_duplicate_commands():
    """Two specs with one name are a programming error."""

    spec = cli.CommandSpec(name="log", help_text="", register=lambda action: None, execute=lambda c, a: 0)
    with pytest.raises(ValueError):
        cli.build_command_table([spec, spec])


def test_dispatch_command_handles_unknown_commands(context):
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="nope"), {})


# ---------------------------------------------------------------------------
# Argument parsing helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("P1:3", core_logic.CartLine("P1", 3)),
        ("P1", core_logic.CartLine("P1", 1)),
        ("SKU:A:2", core_logic.CartLine("SKU:A", 2)),
    ],
)
def test_parse_cart_line_accepts_product_and_quantity(raw, expected):
    assert cli.parse_cart_line(raw) == expected


@pytest.mark.parametrize("raw", ["P1:x", "P1:0", "P1:-2"])
def test_parse_cart_line_rejects_bad_quantities(raw):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_cart_line(raw)


def test_parse_amount_rejects_text():
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_amount("ten")


@pytest.mark.parametrize("raw", ["NaN", "sNaN", "Infinity", "-inf"])
def test_parse_amount_rejects_non_finite(raw):
    """Special decimal values are usage errors, not amounts."""

    with pytest.raises(argparse.ArgumentTypeError, match="finite"):
        cli.parse_amount(raw)


def test_sale_rejects_nan_discount_at_parse_time(stocked):
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    with pytest.raises(SystemExit):
        parser.parse_args(["sale", "--item", "P1", "--payment-method", "Cash", "--discount", "NaN"])
    assert core_logic.list_transactions(stocked) == []


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------


def test_translate_add_product_returns_record():
    args = argparse.Namespace(
        product_id="P1",
        barcode="885",
        name="Tea",
        cost_price=Decimal("10"),
        selling_price=Decimal("40"),
        stock=12,
        vat_type="Excluded",
        image_url=None,
        inactive=True,
    )

    record = cli.translate_add_product(args)

    assert record == data_manager.ProductRecord(
        "P1", "885", "Tea", Decimal("10"), Decimal("40"), 12, VatType.EXCLUDED, is_active=False
    )


def test_translate_add_customer_returns_record():
    args = argparse.Namespace(
        customer_id="C1", name="Acme", tax_id="0105", branch="Head Office", address="1 Road", phone=""
    )

    assert cli.translate_add_customer(args) == data_manager.CustomerRecord(
        "C1", "Acme", tax_id="0105", branch="Head Office", address="1 Road"
    )


def test_translate_sale_returns_sale_command():
    args = argparse.Namespace(
        items=[core_logic.CartLine("P1", 2)],
        payment_method="Cash",
        discount=Decimal("1"),
        note="",
    )

    command = cli.translate_sale(args)

    assert command.lines == (core_logic.CartLine("P1", 2),)
    assert command.payment_method is PaymentMethod.CASH
    assert command.discount == Decimal("1")
    assert command.timestamp is None


# ---------------------------------------------------------------------------
# Command executors
# ---------------------------------------------------------------------------


def test_run_sale_prints_receipt_number(stocked, capsys):
    """A sale prints the receipt number and net amount."""

    assert _run(["sale", "--item", "P2:1", "--payment-method", "Cash"], stocked) == 0

    output = capsys.readouterr().out
    assert "INV-" in output
    assert "net 107.00" in output
    assert core_logic.get_product(stocked, "P2").stock_quantity == 1


def test_run_sale_refuses_oversell(stocked):
    """The CLI checks stock before recording."""

    with pytest.raises(core_logic.BusinessRuleViolation):
        _run(["sale", "--item", "P2:3", "--payment-method", "Cash"], stocked)
    assert core_logic.list_transactions(stocked) == []


class _TrackingLock:
    """Re-entrant lock that reports how deeply it is currently held."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.depth = 0

    def __enter__(self):
        self._lock.acquire()
        self.depth += 1
        return self

    def __exit__(self, *exc_info) -> None:
        self.depth -= 1
        self._lock.release()


def test_run_sale_checks_stock_under_the_writer_lock(stocked, monkeypatch):
    """The stock check and the write happen in one critical section."""

    lock = _TrackingLock()
    guarded = replace(stocked, lock=lock)
    seen_depths = []
    original_check = core_logic.ensure_stock_available

    def checking(context, lines):
        seen_depths.append(lock.depth)
        return original_check(context, lines)

    monkeypatch.setattr(core_logic, "ensure_stock_available", checking)

    assert _run(["sale", "--item", "P2:1", "--payment-method", "Cash"], guarded) == 0
    assert seen_depths == [1]
    assert lock.depth == 0
    assert core_logic.get_product(guarded, "P2").stock_quantity == 1


def test_run_void_reports_outcomes(stocked, capsys):
    """Unknown transactions exit with 2; repeated voids are harmless."""

    sale = core_logic.record_sale(
        stocked,
        core_logic.SaleCommand(lines=(core_logic.CartLine("P1", 1),), payment_method=PaymentMethod.CASH),
    )

    assert _run(["void", "--transaction-id", "T-missing"], stocked) == 2
    assert _run(["void", "--transaction-id", sale.transaction_id], stocked) == 0
    assert _run(["void", "--transaction-id", sale.transaction_id], stocked) == 0

    output = capsys.readouterr().out
    assert "not found" in output
    assert f"Voided {sale.receipt_no}" in output
    assert "already voided" in output
    assert core_logic.get_transaction(stocked, sale.transaction_id).status is TransactionStatus.VOIDED


def test_run_add_and_delete_product(context, capsys):
    _run(
        ["add-product", "--product-id", "P7", "--barcode", "887", "--name", "Mocha", "--selling-price", "75", "--stock", "3"],
        context,
    )
    assert core_logic.get_product(context, "P7").stock_quantity == 3

    _run(["delete-product", "--product-id", "P7"], context)
    assert core_logic.list_products(context) == []
    assert "Deleted product P7" in capsys.readouterr().out


def test_run_attach_customer_sets_snapshot(stocked):
    sale = core_logic.record_sale(
        stocked,
        core_logic.SaleCommand(lines=(core_logic.CartLine("P1", 1),), payment_method=PaymentMethod.QR),
    )
    _run(["add-customer", "--customer-id", "C1", "--name", "Acme", "--tax-id", "0105"], stocked)

    assert _run(["attach-customer", "--transaction-id", sale.transaction_id, "--customer-id", "C1"], stocked) == 0

    snapshot = core_logic.get_transaction(stocked, sale.transaction_id).customer_snapshot
    assert snapshot == data_manager.CustomerRecord("C1", "Acme", tax_id="0105", branch="Head Office")


def test_run_set_vat_rate_keeps_other_settings(context):
    core_logic.save_store_settings(context, data_manager.StoreSettings(company_name="Cafe", footer_message="Thanks"))

    _run(["set-vat-rate", "--vat-rate", "10"], context)

    settings = core_logic.load_store_settings(context)
    assert settings.vat_rate == Decimal("10")
    assert settings.company_name == "Cafe"
    assert settings.footer_message == "Thanks"


def test_run_products_report_filters(stocked, capsys):
    _run(["products", "--query", "cro"], stocked)

    output = capsys.readouterr().out
    assert "Croissant" in output
    assert "Espresso" not in output


def test_run_log_and_summary_reports(stocked, capsys):
    core_logic.record_sale(
        stocked,
        core_logic.SaleCommand(
            lines=(core_logic.CartLine("P1", 2),),
            payment_method=PaymentMethod.CASH,
            timestamp=datetime(2026, 3, 14, 9, 30, tzinfo=UTC),
        ),
    )

    _run(["log"], stocked)
    _run(["summary", "--start", "2026-03-01", "--end", "2026-03-31"], stocked)

    output = capsys.readouterr().out
    assert "INV-20260314-0001" in output
    assert "Total sales:   120.00" in output
    assert "2026-03-14  120.00" in output


def test_format_receipt_includes_customer_and_void_marker(stocked):
    """Receipts show shop details, the customer block, and void status."""

    sale = core_logic.record_sale(
        stocked,
        core_logic.SaleCommand(
            lines=(core_logic.CartLine("P1", 1), core_logic.CartLine("P2", 1)),
            payment_method=PaymentMethod.CASH,
            discount=Decimal("16"),
        ),
    )
    core_logic.attach_customer(stocked, sale.transaction_id, data_manager.CustomerRecord("C1", "Acme", branch="HQ"))
    core_logic.void_transaction(stocked, sale.transaction_id)
    transaction = core_logic.get_transaction(stocked, sale.transaction_id)
    settings = data_manager.StoreSettings(company_name="Cafe", tax_id="0105", footer_message="Thank you")

    lines = cli.format_receipt(transaction, settings)

    assert lines[0] == "Cafe"
    assert "Tax ID: 0105" in lines
    assert "*** VOIDED ***" in lines
    assert "Customer: Acme (HQ)" in lines
    assert "Subtotal: 160.00" in lines
    assert "Discount: 16.00" in lines
    assert lines[-1] == "Thank you"


# ---------------------------------------------------------------------------
# Error handling and entry point
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (core_logic.BusinessRuleViolation("no"), 2),
        (core_logic.MissingReferenceError("gone"), 2),
        (FileNotFoundError("config.ini"), 3),
        (data_manager.StorageError("disk"), 4),
        (data_manager.DecodeError("bad json"), 4),
        (ValueError("bad input"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, code):
    assert cli.handle_cli_error(error) == code


def test_load_runtime_context_uses_provided_path(config_file: Path):
    context = cli.load_runtime_context(config_file)
    assert isinstance(context.store, data_manager.WorkbookStore)
    assert context.settings.shop_name == "Test Shop"


def test_main_runs_commands_against_workbook(config_file: Path, capsys):
    """main loads the configured workbook and executes sub-commands."""

    assert cli.main(
        ["--config", str(config_file), "add-product", "--product-id", "P1", "--barcode", "885",
         "--name", "Tea", "--selling-price", "40", "--stock", "5"]
    ) == 0
    assert cli.main(["--config", str(config_file), "sale", "--item", "P1:2", "--payment-method", "Cash"]) == 0
    assert cli.main(["--config", str(config_file), "products"]) == 0

    output = capsys.readouterr().out
    assert "Tea" in output
    reopened = core_logic.load_runtime_context(config_file)
    assert core_logic.get_product(reopened, "P1").stock_quantity == 3


def test_main_returns_code_for_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "log"]) == 3


def test_main_rejects_schema_mismatch(config_factory):
    bundle = config_factory(schema_version="0.1.0")
    assert cli.main(["--config", str(bundle.config_path), "log"]) == 1


def test_main_reports_business_rule_errors(config_file: Path):
    assert cli.main(["--config", str(config_file), "delete-product", "--product-id", "nope"]) == 2


def test_summary_defaults_to_current_month(context, capsys):
    _run(["summary"], context)
    today = datetime.now(UTC).date()
    assert f"Sales {today.replace(day=1).isoformat()} .. {today.isoformat()}" in capsys.readouterr().out


def test_summary_default_range_follows_utc_calendar(context, capsys, monkeypatch):
    """The default month is the UTC one, whatever the local clock says."""

    class _LateEvening(datetime):
        @classmethod
        def now(cls, tz=None):
            assert tz is UTC
            return datetime(2026, 3, 31, 23, 30, tzinfo=UTC)

    monkeypatch.setattr(cli, "datetime", _LateEvening)

    assert _run(["summary"], context) == 0
    assert "Sales 2026-03-01 .. 2026-03-31" in capsys.readouterr().out


def test_constants_payment_methods_are_cli_choices():
    assert [member.value for member in constants.PaymentMethod] == ["Cash", "QR Transfer"]


def test_package_logger_writes_through_rotating_file():
    """The shared logger carries a rotating file handler for the ledger log."""

    import logging.handlers

    import till_ledger

    assert till_ledger.log.name == "till_ledger"
    assert till_ledger.LOG_FILE.name == "till_ledger.log"
    handlers = [h for h in till_ledger.log.handlers if isinstance(h, logging.handlers.RotatingFileHandler)]
    assert all(h.maxBytes == 1_000_000 for h in handlers)
