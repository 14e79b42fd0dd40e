"""Business logic layer for the till ledger.

This module turns carts into persisted, receipt-numbered transactions, keeps
catalog stock in step with sales and voids, and attaches customer snapshots
for tax-invoice reissue. It consumes the data access layer for all I/O and
never touches storage formats directly.

Every mutating operation follows the same pattern: take ``context.lock``, read
the affected collections, compute the new state in memory, and hand the whole
result to the store in one call. Nothing is written until validation has
passed, so a rejected request leaves the store exactly as it was.
"""

from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from . import data_manager, log, pricing
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    RECEIPT_PREFIX,
    PaymentMethod,
    StockDirection,
    StorageKey,
    TransactionStatus,
    VoidOutcome,
)
from .data_manager import CustomerRecord, LineItemRecord, ProductRecord, StoreSettings, TransactionRecord


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, customer, or transaction is unknown."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the backing store, and the writer lock."""

    settings: data_manager.ConfigSettings
    store: data_manager.KeyValueStore
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class CartLine:
    """One product and quantity the customer is buying."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class SaleCommand:
    """User intent for recording a sale.

    ``transaction_id`` is normally left empty and generated. Supplying one makes
    the command replay-safe: a second submission with an identifier that is
    already stored returns the stored transaction without touching stock.
    """

    lines: Sequence[CartLine]
    payment_method: PaymentMethod
    discount: Decimal = Decimal("0")
    vat_rate: Optional[Decimal] = None
    timestamp: Optional[datetime] = None
    note: str = ""
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class VoidResult:
    """Outcome of a void request and the transaction it concerned, if any."""

    outcome: VoidOutcome
    transaction: Optional[TransactionRecord]

    @property
    def changed(self) -> bool:
        return self.outcome is VoidOutcome.VOIDED


@dataclass(frozen=True)
class SalesSummary:
    """Dashboard figures for a date range."""

    total_sales: Decimal
    completed_count: int
    average_value: Decimal
    void_count: int
    daily_totals: Dict[date, Decimal]


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when provided, otherwise the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def parse_timestamp(timestamp_iso: str) -> datetime:
    """Parse a stored ISO-8601 timestamp, treating naive values as UTC.

    Raises:
        data_manager.DecodeError: If the text is not an ISO-8601 timestamp.
    """

    try:
        moment = datetime.fromisoformat(timestamp_iso)
    except ValueError as exc:
        raise data_manager.DecodeError(f"Invalid timestamp: {timestamp_iso!r}") from exc
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment


def calendar_day(moment: datetime) -> date:
    """Return the UTC calendar day a moment falls on."""

    if moment.tzinfo is None:
        return moment.date()
    return moment.astimezone(UTC).date()


def transaction_day(transaction: TransactionRecord) -> date:
    return calendar_day(parse_timestamp(transaction.timestamp_iso))


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the workbook-backed store.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file. When omitted the data layer performs its
            upward search from the current working directory.

    Returns:
        RuntimeContext: Context ready for the business operations below.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.WorkbookStore(settings.data_file)
    log.info("Loaded runtime context for store '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def load_store_settings(context: RuntimeContext) -> StoreSettings:
    """Return persisted shop settings, or defaults derived from ``config.ini``."""
    default = StoreSettings(
        company_name=context.settings.shop_name,
        vat_rate=context.settings.default_vat_rate,
    )
    return data_manager.read_settings(context.store, default)


def save_store_settings(context: RuntimeContext, settings: StoreSettings) -> StoreSettings:
    """Validate and persist shop settings.

    Raises:
        ValueError: If the VAT rate is negative.
    """
    require_nonnegative_money(settings.vat_rate)
    with context.lock:
        _write(context, {StorageKey.SETTINGS: data_manager.encode_settings(settings)})
    log.info("Saved store settings (vat_rate=%s)", settings.vat_rate)
    return settings


# ---------------------------------------------------------------------------
# Product catalog
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext, *, include_inactive: bool = True) -> List[ProductRecord]:
    """Return the catalog in stored order.

    Args:
        context (RuntimeContext): Runtime context providing store access.
        include_inactive (bool): When ``False`` hide products whose
            ``is_active`` flag is cleared. The default returns everything.
    """
    products = data_manager.iter_products(context.store)
    if include_inactive:
        return products
    return [product for product in products if product.is_active]


def search_products(context: RuntimeContext, query: str = "") -> List[ProductRecord]:
    """Return active products whose name or barcode contains ``query``.

    Matching on the name ignores case. An empty query returns every active
    product, mirroring the sales screen's product grid.
    """
    needle = query.strip().lower()
    return [
        product
        for product in list_products(context, include_inactive=False)
        if needle in product.name.lower() or needle in product.barcode.lower()
    ]


def get_product(context: RuntimeContext, product_id: str) -> ProductRecord:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is not in the catalog.
    """
    for product in data_manager.iter_products(context.store):
        if product.product_id == product_id:
            return product
    log.warning("Product lookup failed for id '%s'", product_id)
    raise MissingReferenceError(f"Unknown product id: {product_id}")


def upsert_product(context: RuntimeContext, product: ProductRecord) -> ProductRecord:
    """Insert a new product or replace an existing one in place.

    Replacing keeps the product's position in the catalog so listings stay
    stable. Barcodes must be unique across the catalog.

    Args:
        context (RuntimeContext): Runtime context providing store access.
        product (ProductRecord): Full product record to store.

    Returns:
        ProductRecord: The stored record.

    Raises:
        ValueError: If the identifier is blank, prices are negative, or the
            stock quantity is not an integer.
        BusinessRuleViolation: If another product already uses the barcode.
    """
    if not product.product_id.strip():
        raise ValueError("Product id must not be blank")
    require_nonnegative_money(product.selling_price)
    require_nonnegative_money(product.cost_price)
    if isinstance(product.stock_quantity, bool) or not isinstance(product.stock_quantity, int):
        raise ValueError("Stock quantity must be a whole number")

    with context.lock:
        products = data_manager.iter_products(context.store)
        for existing in products:
            if existing.barcode == product.barcode and existing.product_id != product.product_id:
                log.error(
                    "Barcode '%s' already assigned to product '%s'",
                    product.barcode,
                    existing.product_id,
                )
                raise BusinessRuleViolation(
                    f"Barcode '{product.barcode}' already belongs to product '{existing.product_id}'"
                )

        index = _index_of(products, product.product_id, key=lambda item: item.product_id)
        if index is None:
            products.append(product)
            action = "Added"
        else:
            products[index] = product
            action = "Updated"
        _write(context, {StorageKey.PRODUCTS: data_manager.encode_products(products)})

    log.info("%s product '%s' (%s)", action, product.product_id, product.name)
    return product


def delete_product(context: RuntimeContext, product_id: str) -> None:
    """Remove a product from the catalog.

    Historical transactions are unaffected because their line items carry
    their own name and price snapshot.

    Raises:
        MissingReferenceError: If ``product_id`` is not in the catalog.
    """
    with context.lock:
        products = data_manager.iter_products(context.store)
        remaining = [product for product in products if product.product_id != product_id]
        if len(remaining) == len(products):
            log.warning("Delete requested for unknown product '%s'", product_id)
            raise MissingReferenceError(f"Unknown product id: {product_id}")
        _write(context, {StorageKey.PRODUCTS: data_manager.encode_products(remaining)})
    log.info("Deleted product '%s'", product_id)


def apply_stock_delta(
    products: Sequence[ProductRecord],
    items: Iterable[LineItemRecord],
    direction: StockDirection,
) -> List[ProductRecord]:
    """Return a copy of ``products`` with line item quantities applied.

    ``DEDUCT`` subtracts each item's quantity from its product, ``RESTORE``
    adds it back. Items whose product is no longer in the catalog are skipped.
    Stock may reach zero or below; preventing oversell is the caller's job
    (see :func:`ensure_stock_available`).
    """
    sign = -1 if direction is StockDirection.DEDUCT else 1
    updated = list(products)
    positions = {product.product_id: index for index, product in enumerate(updated)}
    for item in items:
        index = positions.get(item.product_id)
        if index is None:
            log.info(
                "Skipping stock %s for missing product '%s'",
                direction.value.lower(),
                item.product_id,
            )
            continue
        current = updated[index]
        updated[index] = replace(current, stock_quantity=current.stock_quantity + sign * item.quantity)
    return updated


def adjust_stock(
    context: RuntimeContext,
    items: Iterable[LineItemRecord],
    direction: StockDirection,
) -> List[ProductRecord]:
    """Apply a stock delta to the stored catalog and persist it."""
    with context.lock:
        products = apply_stock_delta(data_manager.iter_products(context.store), items, direction)
        _write(context, {StorageKey.PRODUCTS: data_manager.encode_products(products)})
    log.info("Applied stock %s to catalog", direction.value.lower())
    return products


def ensure_stock_available(context: RuntimeContext, lines: Iterable[CartLine]) -> None:
    """Check that the catalog holds enough stock for a cart.

    Quantities for the same product are summed before comparing.

    Raises:
        MissingReferenceError: If a product is not in the catalog.
        BusinessRuleViolation: If a product has less stock than requested.
    """
    wanted: Dict[str, int] = {}
    for line in lines:
        wanted[line.product_id] = wanted.get(line.product_id, 0) + line.quantity

    catalog = {product.product_id: product for product in data_manager.iter_products(context.store)}
    for product_id, quantity in wanted.items():
        product = catalog.get(product_id)
        if product is None:
            raise MissingReferenceError(f"Unknown product id: {product_id}")
        if product.stock_quantity < quantity:
            log.warning(
                "Insufficient stock for '%s': wanted %s, have %s",
                product_id,
                quantity,
                product.stock_quantity,
            )
            raise BusinessRuleViolation(
                f"Only {product.stock_quantity} of '{product.name}' in stock, {quantity} requested"
            )


# ---------------------------------------------------------------------------
# Receipt numbering
# ---------------------------------------------------------------------------


def next_receipt_number(transactions: Iterable[TransactionRecord], day: date) -> str:
    """Derive the next receipt number for ``day`` from existing transactions.

    The sequence is the number of transactions already stamped on ``day`` plus
    one. If a receipt for that day already carries that sequence or a higher
    one, numbering continues above the highest so numbers never repeat.

    Args:
        transactions (Iterable[TransactionRecord]): Every persisted
            transaction, before the new one is added.
        day (date): Calendar day the new transaction belongs to.

    Returns:
        str: Identifier formatted as ``INV-YYYYMMDD-NNNN``.
    """
    prefix = f"{RECEIPT_PREFIX}-{day.strftime('%Y%m%d')}-"
    same_day = 0
    highest = 0
    for transaction in transactions:
        if transaction_day(transaction) == day:
            same_day += 1
        if transaction.receipt_no.startswith(prefix):
            suffix = transaction.receipt_no[len(prefix):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))

    sequence = same_day + 1
    if sequence <= highest:
        log.warning(
            "Receipt sequence %d for %s already issued; continuing from %d",
            sequence,
            day.isoformat(),
            highest + 1,
        )
        sequence = highest + 1
    return f"{prefix}{sequence:04d}"


# ---------------------------------------------------------------------------
# Transaction ledger
# ---------------------------------------------------------------------------


def list_transactions(context: RuntimeContext) -> List[TransactionRecord]:
    """Return every transaction, most recent first."""
    return data_manager.iter_transactions(context.store)


def get_transaction(context: RuntimeContext, transaction_id: str) -> TransactionRecord:
    """Retrieve a transaction by its identifier.

    Raises:
        MissingReferenceError: If the ledger lacks the identifier.
    """
    for transaction in data_manager.iter_transactions(context.store):
        if transaction.transaction_id == transaction_id:
            return transaction
    log.warning("Transaction lookup failed for id '%s'", transaction_id)
    raise MissingReferenceError(f"Unknown transaction id: {transaction_id}")


def price_transaction(transaction: TransactionRecord) -> pricing.SaleTotals:
    """Recompute totals from a persisted transaction's own line items.

    Used for receipt rendering and to check that stored totals still agree
    with the line items they were derived from.
    """
    return pricing.calculate_totals(
        (
            pricing.PricedLine(unit_price=item.unit_price, quantity=item.quantity, vat_type=item.vat_type)
            for item in transaction.items
        ),
        transaction.discount,
        transaction.vat_rate,
    )


def record_sale(context: RuntimeContext, command: SaleCommand) -> TransactionRecord:
    """Validate a cart, persist it as a completed transaction, and deduct stock.

    The workflow validates the whole command before anything is written:
    every line must reference an active catalog product with a positive
    quantity, the discount must lie between zero and the cart subtotal, and
    the payment method must be supported. The receipt number is derived from
    the transactions stored *before* this one, stock is deducted using the
    new line items, and both collections are handed to the store in a single
    ``write_many`` call. The new transaction is prepended so listings stay
    most-recent-first.

    Args:
        context (RuntimeContext): Runtime context providing store access.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        TransactionRecord: The persisted transaction including its receipt
            number. When ``command.transaction_id`` is already stored, the
            stored transaction is returned unchanged.

    Raises:
        ValueError: If the cart is empty, a quantity is not positive, the
            discount is negative or larger than the subtotal, or the VAT rate
            is negative or not finite.
        MissingReferenceError: If a cart line references an unknown product.
        BusinessRuleViolation: If a product is inactive or the payment method
            is unsupported.
        data_manager.StorageError: If the store rejects the write. Nothing is
            persisted in that case.
    """
    if not isinstance(command.payment_method, PaymentMethod):
        log.error("Unsupported payment method provided: %s", command.payment_method)
        raise BusinessRuleViolation(f"Unsupported payment method: {command.payment_method}")
    if not command.lines:
        log.error("Sale rejected: cart is empty")
        raise ValueError("Cart must contain at least one line item")
    for line in command.lines:
        require_positive_quantity(line.quantity)
    discount = Decimal(command.discount)
    require_nonnegative_money(discount)

    with context.lock:
        transactions = data_manager.iter_transactions(context.store)
        if command.transaction_id is not None:
            index = _index_of(transactions, command.transaction_id, key=lambda item: item.transaction_id)
            if index is not None:
                log.info(
                    "Sale '%s' already recorded as %s; returning stored transaction",
                    command.transaction_id,
                    transactions[index].receipt_no,
                )
                return transactions[index]

        products = data_manager.iter_products(context.store)
        catalog = {product.product_id: product for product in products}
        resolved: List[ProductRecord] = []
        for line in command.lines:
            product = catalog.get(line.product_id)
            if product is None:
                log.warning("Sale references unknown product '%s'", line.product_id)
                raise MissingReferenceError(f"Unknown product id: {line.product_id}")
            if not product.is_active:
                log.warning("Attempted sale on inactive product '%s'", line.product_id)
                raise BusinessRuleViolation(f"Product '{line.product_id}' is inactive")
            resolved.append(product)

        vat_rate = command.vat_rate if command.vat_rate is not None else load_store_settings(context).vat_rate
        require_nonnegative_money(vat_rate)
        totals = pricing.calculate_totals(
            (
                pricing.PricedLine(unit_price=product.selling_price, quantity=line.quantity, vat_type=product.vat_type)
                for product, line in zip(resolved, command.lines)
            ),
            discount,
            vat_rate,
        )
        if discount > totals.subtotal:
            log.error("Discount %s exceeds subtotal %s", discount, totals.subtotal)
            raise ValueError("Discount cannot exceed the cart subtotal")

        timestamp = _resolve_timestamp(command.timestamp)
        transaction_id = command.transaction_id or generate_transaction_id(when=timestamp)
        items = build_line_items(transaction_id, resolved, command.lines)
        transaction = TransactionRecord(
            transaction_id=transaction_id,
            receipt_no=next_receipt_number(transactions, calendar_day(timestamp)),
            timestamp_iso=timestamp.isoformat(),
            customer_id=None,
            customer_snapshot=None,
            gross_amount=totals.subtotal,
            discount=discount,
            vat_amount=totals.vat_amount,
            net_amount=totals.net_amount,
            vat_rate=Decimal(vat_rate),
            payment_method=command.payment_method,
            status=TransactionStatus.COMPLETED,
            items=items,
            note=command.note,
        )
        updated_products = apply_stock_delta(products, items, StockDirection.DEDUCT)
        _write(
            context,
            {
                StorageKey.TRANSACTIONS: data_manager.encode_transactions([transaction, *transactions]),
                StorageKey.PRODUCTS: data_manager.encode_products(updated_products),
            },
        )

    log.info(
        "Recorded sale '%s' as %s (%d lines, net=%s, vat=%s, payment=%s)",
        transaction.transaction_id,
        transaction.receipt_no,
        len(items),
        transaction.net_amount,
        transaction.vat_amount,
        transaction.payment_method.value,
    )
    return transaction


def void_transaction(context: RuntimeContext, transaction_id: str) -> VoidResult:
    """Mark a completed transaction as voided and return its stock.

    Stock is restored from the transaction's own line items, not from the
    live catalog, and products that have since been deleted are skipped.
    Monetary fields are left exactly as recorded.

    Args:
        context (RuntimeContext): Runtime context providing store access.
        transaction_id (str): Identifier of the transaction to void.

    Returns:
        VoidResult: ``VOIDED`` with the updated record, ``ALREADY_VOID`` with
            the untouched record, or ``NOT_FOUND`` without one. Only the first
            outcome changes the store.
    """
    with context.lock:
        transactions = data_manager.iter_transactions(context.store)
        index = _index_of(transactions, transaction_id, key=lambda item: item.transaction_id)
        if index is None:
            log.warning("Void requested for unknown transaction '%s'", transaction_id)
            return VoidResult(outcome=VoidOutcome.NOT_FOUND, transaction=None)

        target = transactions[index]
        if target.status is TransactionStatus.VOIDED:
            log.warning("Transaction '%s' (%s) is already voided", transaction_id, target.receipt_no)
            return VoidResult(outcome=VoidOutcome.ALREADY_VOID, transaction=target)

        voided = replace(target, status=TransactionStatus.VOIDED)
        transactions[index] = voided
        products = apply_stock_delta(
            data_manager.iter_products(context.store),
            target.items,
            StockDirection.RESTORE,
        )
        _write(
            context,
            {
                StorageKey.TRANSACTIONS: data_manager.encode_transactions(transactions),
                StorageKey.PRODUCTS: data_manager.encode_products(products),
            },
        )

    log.info("Voided transaction '%s' (%s)", transaction_id, voided.receipt_no)
    return VoidResult(outcome=VoidOutcome.VOIDED, transaction=voided)


def summarize_sales(context: RuntimeContext, start: date, end: date) -> SalesSummary:
    """Produce dashboard totals for transactions dated ``start``..``end``.

    Both bounds are inclusive UTC calendar days. Completed transactions feed
    the sales total, count, average, and per-day totals; voided ones are only
    counted.
    """
    total = Decimal("0")
    completed = 0
    voided = 0
    daily: Dict[date, Decimal] = {}
    for transaction in data_manager.iter_transactions(context.store):
        day = transaction_day(transaction)
        if not start <= day <= end:
            continue
        if transaction.status is TransactionStatus.VOIDED:
            voided += 1
            continue
        completed += 1
        total += transaction.net_amount
        daily[day] = daily.get(day, Decimal("0")) + transaction.net_amount

    average = total / completed if completed else Decimal("0")
    log.debug(
        "Summarized sales %s..%s: total=%s completed=%d voided=%d",
        start,
        end,
        total,
        completed,
        voided,
    )
    return SalesSummary(
        total_sales=total,
        completed_count=completed,
        average_value=average,
        void_count=voided,
        daily_totals=dict(sorted(daily.items())),
    )


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


def list_customers(context: RuntimeContext) -> List[CustomerRecord]:
    return data_manager.iter_customers(context.store)


def get_customer(context: RuntimeContext, customer_id: str) -> CustomerRecord:
    """Resolve a customer by identifier.

    Raises:
        MissingReferenceError: If the directory lacks ``customer_id``.
    """
    for customer in data_manager.iter_customers(context.store):
        if customer.customer_id == customer_id:
            return customer
    log.warning("Customer lookup failed for id '%s'", customer_id)
    raise MissingReferenceError(f"Unknown customer id: {customer_id}")


def upsert_customer(context: RuntimeContext, customer: CustomerRecord) -> CustomerRecord:
    """Insert or replace a customer in the directory.

    Editing a customer here never changes snapshots already attached to
    transactions.
    """
    if not customer.customer_id.strip():
        raise ValueError("Customer id must not be blank")
    with context.lock:
        customers = data_manager.iter_customers(context.store)
        index = _index_of(customers, customer.customer_id, key=lambda item: item.customer_id)
        if index is None:
            customers.append(customer)
        else:
            customers[index] = customer
        _write(context, {StorageKey.CUSTOMERS: data_manager.encode_customers(customers)})
    log.info("Saved customer '%s' (%s)", customer.customer_id, customer.name)
    return customer


def attach_customer(context: RuntimeContext, transaction_id: str, customer: CustomerRecord) -> TransactionRecord:
    """Attach a point-in-time copy of ``customer`` to a stored transaction.

    The transaction's customer reference and snapshot are replaced; amounts,
    status, and receipt number are left alone. Calling again overwrites the
    previous snapshot.

    Args:
        context (RuntimeContext): Runtime context providing store access.
        transaction_id (str): Identifier of the transaction to update.
        customer (CustomerRecord): Customer data to copy onto the transaction.

    Returns:
        TransactionRecord: The updated transaction.

    Raises:
        MissingReferenceError: If no transaction has ``transaction_id``.
    """
    snapshot = copy.deepcopy(customer)
    with context.lock:
        transactions = data_manager.iter_transactions(context.store)
        index = _index_of(transactions, transaction_id, key=lambda item: item.transaction_id)
        if index is None:
            log.warning("Cannot attach customer: unknown transaction '%s'", transaction_id)
            raise MissingReferenceError(f"Unknown transaction id: {transaction_id}")

        updated = replace(
            transactions[index],
            customer_id=snapshot.customer_id,
            customer_snapshot=snapshot,
        )
        transactions[index] = updated
        _write(context, {StorageKey.TRANSACTIONS: data_manager.encode_transactions(transactions)})

    log.info(
        "Attached customer '%s' to transaction '%s' (%s)",
        snapshot.customer_id,
        transaction_id,
        updated.receipt_no,
    )
    return updated


def attach_customer_by_id(context: RuntimeContext, transaction_id: str, customer_id: str) -> TransactionRecord:
    """Look up ``customer_id`` in the directory and attach it to a transaction."""
    return attach_customer(context, transaction_id, get_customer(context, customer_id))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def generate_transaction_id(*, prefix: str = "T", when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-resistant transaction identifier.

    The identifier is ``{prefix}{YYYYMMDDHHMMSSffffff}-{8 hex chars}``. The
    timestamp keeps identifiers in chronological order; the random suffix
    keeps two sales stamped with the same moment apart.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:8]}"


def build_line_items(
    transaction_id: str,
    products: Sequence[ProductRecord],
    lines: Sequence[CartLine],
) -> tuple[LineItemRecord, ...]:
    """Snapshot product name, price, and VAT type for each cart line."""
    return tuple(
        LineItemRecord(
            line_id=f"{transaction_id}-L{position}",
            transaction_id=transaction_id,
            product_id=product.product_id,
            product_name=product.name,
            quantity=line.quantity,
            unit_price=product.selling_price,
            line_total=pricing.line_total(product.selling_price, line.quantity),
            vat_type=product.vat_type,
        )
        for position, (product, line) in enumerate(zip(products, lines), start=1)
    )


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive whole number.

    Raises:
        ValueError: If ``quantity`` is not an integer or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a whole number greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is finite and nonnegative.

    Raises:
        ValueError: If ``amount`` is NaN, infinite or less than zero.
    """
    value = Decimal(amount)
    if not value.is_finite() or value < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be a finite number, zero or positive")


def _index_of(records: Sequence, identifier: str, *, key) -> Optional[int]:
    for index, record in enumerate(records):
        if key(record) == identifier:
            return index
    return None


def _write(context: RuntimeContext, entries: Dict[StorageKey, bytes]) -> None:
    """Hand encoded collections to the store in a single call."""
    try:
        context.store.write_many({key.value: value for key, value in entries.items()})
    except data_manager.StorageError:
        log.error("Store rejected write of %s", ", ".join(key.value for key in entries))
        raise
