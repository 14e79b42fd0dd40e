"""Enumerations shared across the till ledger modules.

Centralises domain constants so that the storage layer, the business logic
layer, and the command-line front end rely on a single source of truth for
tax classifications, payment methods, and storage keys.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating the store.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_VAT_RATE = Decimal("7")

RECEIPT_PREFIX = "INV"


class VatType(str, Enum):
    """Enumerate how a product's selling price relates to VAT."""

    INCLUDED = "Included"
    EXCLUDED = "Excluded"
    NONE = "None"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "Cash"
    QR = "QR Transfer"


class TransactionStatus(str, Enum):
    """Enumerate the lifecycle states of a persisted transaction."""

    COMPLETED = "Completed"
    VOIDED = "Voided"


class StockDirection(str, Enum):
    """Enumerate the two ways a set of line items can move stock."""

    DEDUCT = "Deduct"
    RESTORE = "Restore"


class VoidOutcome(str, Enum):
    """Enumerate the observable results of a void request."""

    VOIDED = "VOIDED"
    ALREADY_VOID = "ALREADY_VOID"
    NOT_FOUND = "NOT_FOUND"


class StorageKey(str, Enum):
    """Enumerate the logical keys held by the key-value store."""

    SETTINGS = "settings"
    PRODUCTS = "products"
    TRANSACTIONS = "transactions"
    CUSTOMERS = "customers"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_VAT_RATE",
    "RECEIPT_PREFIX",
    "VatType",
    "PaymentMethod",
    "TransactionStatus",
    "StockDirection",
    "VoidOutcome",
    "StorageKey",
]
