"""Data access layer for the till ledger.

This module provides the low-level pieces the business layer builds on. Business
rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Storage: the :class:`KeyValueStore` contract plus an in-memory and an
   ``openpyxl`` workbook implementation. Each logical key holds one whole
   collection that is rewritten on every change.
3. Records: typed dataclasses for products, line items, customers,
   transactions, and store settings, together with the JSON codec that turns
   them into store payloads and validates them on the way back.
"""


from __future__ import annotations

import configparser
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import log
from .constants import DEFAULT_VAT_RATE, PaymentMethod, StorageKey, TransactionStatus, VatType


CONFIG_FILE_NAME = "config.ini"
PAYLOAD_HEADER = "Payload"
# Excel caps a cell at 32,767 characters; stay well below it.
PAYLOAD_CHUNK_SIZE = 30_000

RecordT = TypeVar("RecordT")
EnumT = TypeVar("EnumT", bound=Enum)


class StorageError(RuntimeError):
    """Raised when the backing store cannot complete a read or write."""


class LedgerIntegrityError(StorageError):
    """Raised when a multi-key write failed after some keys were written."""


class DecodeError(ValueError):
    """Raised when a stored payload does not describe a valid record."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_vat_rate: Decimal = DEFAULT_VAT_RATE


@dataclass(frozen=True)
class ProductRecord:
    """Catalog entry as held under the ``products`` key."""

    product_id: str
    barcode: str
    name: str
    cost_price: Decimal
    selling_price: Decimal
    stock_quantity: int
    vat_type: VatType
    is_active: bool = True
    image_url: Optional[str] = None


@dataclass(frozen=True)
class LineItemRecord:
    """Snapshot of one product sold within a transaction."""

    line_id: str
    transaction_id: str
    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    vat_type: VatType


@dataclass(frozen=True)
class CustomerRecord:
    """Customer identity used when reissuing a tax invoice."""

    customer_id: str
    name: str
    tax_id: str = ""
    branch: str = ""
    address: str = ""
    phone: str = ""


@dataclass(frozen=True)
class TransactionRecord:
    """Persisted sale as held under the ``transactions`` key."""

    transaction_id: str
    receipt_no: str
    timestamp_iso: str
    customer_id: Optional[str]
    customer_snapshot: Optional[CustomerRecord]
    gross_amount: Decimal
    discount: Decimal
    vat_amount: Decimal
    net_amount: Decimal
    vat_rate: Decimal
    payment_method: PaymentMethod
    status: TransactionStatus
    items: Tuple[LineItemRecord, ...]
    note: str = ""


@dataclass(frozen=True)
class StoreSettings:
    """Shop details printed on receipts plus the flat VAT rate."""

    company_name: str = ""
    address: str = ""
    tax_id: str = ""
    phone: str = ""
    footer_message: str = ""
    vat_rate: Decimal = DEFAULT_VAT_RATE


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains
            ``CONFIG_FILE_NAME``.
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
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile``, ``ShopName`` and ``SchemaVersion``.
    ``[Defaults] DefaultVatRate`` is optional and falls back to
    :data:`~till_ledger.constants.DEFAULT_VAT_RATE`. Relative ``DataFile``
    entries are anchored to ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings with a resolved data file path.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``DefaultVatRate`` is not a non-negative number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    default_vat_rate = parse_vat_rate(
        parser.get("Defaults", "DefaultVatRate", fallback=str(DEFAULT_VAT_RATE))
    )

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_vat_rate=default_vat_rate,
    )


def parse_vat_rate(raw: str) -> Decimal:
    """Parse a ``DefaultVatRate`` entry.

    Raises:
        ValueError: If ``raw`` is not a finite, non-negative number.
    """

    try:
        rate = Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid DefaultVatRate: {raw!r}") from exc
    if not rate.is_finite() or rate < 0:
        raise ValueError(f"DefaultVatRate must be a finite number, zero or positive: {raw!r}")
    return rate


# ---------------------------------------------------------------------------
# Key-value storage
# ---------------------------------------------------------------------------


class KeyValueStore(ABC):
    """Durable, synchronous, process-local storage addressed by string keys.

    ``read`` returns the last bytes written for a key, or ``None`` when the key
    was never written. Failures surface as :class:`StorageError`.
    """

    @abstractmethod
    def read(self, key: str) -> Optional[bytes]:
        """Return the raw payload stored under ``key``."""

    @abstractmethod
    def write(self, key: str, value: bytes) -> None:
        """Replace the payload stored under ``key``."""

    def write_many(self, entries: Mapping[str, bytes]) -> None:
        """Write several keys, one after the other.

        Subclasses that can persist a batch in one step should override this.
        A failure after at least one key has been written leaves the store in a
        mixed state and is reported as :class:`LedgerIntegrityError`.
        """

        written: List[str] = []
        for key, value in entries.items():
            try:
                self.write(key, value)
            except StorageError as exc:
                if written:
                    log.error(
                        "Write of '%s' failed after %s were already persisted",
                        key,
                        ", ".join(written),
                    )
                    raise LedgerIntegrityError(
                        f"Store left partially updated: wrote {written}, failed on '{key}'"
                    ) from exc
                raise
            written.append(key)


class MemoryStore(KeyValueStore):
    """Dictionary-backed store used by tests and throwaway sessions."""

    def __init__(self, initial: Optional[Mapping[str, bytes]] = None) -> None:
        self._data: Dict[str, bytes] = dict(initial or {})

    def read(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def write(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    def write_many(self, entries: Mapping[str, bytes]) -> None:
        staged = {key: bytes(value) for key, value in entries.items()}
        self._data.update(staged)

    def keys(self) -> List[str]:
        return list(self._data)


class WorkbookStore(KeyValueStore):
    """Store every key on its own worksheet of an ``.xlsx`` workbook.

    Payloads are UTF-8 JSON text split over consecutive rows of a single
    ``Payload`` column. Every :meth:`write` and :meth:`write_many` call saves
    the workbook before returning; if the save fails the in-memory workbook is
    reloaded from disk so unsaved edits never leak into later calls.
    """

    def __init__(self, data_file: Path) -> None:
        self.data_file = Path(data_file).expanduser().resolve()
        self.workbook = open_workbook(self.data_file)

    def read(self, key: str) -> Optional[bytes]:
        if key not in self.workbook.sheetnames:
            return None
        sheet = self.workbook[key]
        chunks = [
            str(value)
            for (value,) in sheet.iter_rows(min_row=2, max_col=1, values_only=True)
            if value is not None
        ]
        if not chunks:
            return None
        return "".join(chunks).encode("utf-8")

    def write(self, key: str, value: bytes) -> None:
        self.write_many({key: value})

    def write_many(self, entries: Mapping[str, bytes]) -> None:
        try:
            for key, value in entries.items():
                write_payload_sheet(self.workbook, key, value)
            save_workbook(self.workbook, self.data_file)
        except (OSError, ValueError) as exc:
            log.error("Failed to persist keys %s to '%s': %s", list(entries), self.data_file, exc)
            try:
                self.workbook = refresh_workbook(self.data_file)
            except (OSError, ValueError) as reload_exc:
                log.error("Could not reload workbook '%s': %s", self.data_file, reload_exc)
            raise StorageError(f"Unable to write {list(entries)} to {self.data_file}") from exc
        log.debug("Persisted keys %s to '%s'", list(entries), self.data_file)


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``.

    The file is written next to the target first and then moved over it, so a
    failed save never truncates the previous version. Parent directories are
    created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(f".{dest.name}.tmp")
    workbook.save(staging)
    staging.replace(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def write_payload_sheet(workbook: Workbook, key: str, value: bytes) -> None:
    """Replace the worksheet named ``key`` with ``value`` split into rows.

    The sheet is created when missing. Cells are forced to the string type so
    chunks that happen to start with ``=`` are never treated as formulas.
    """

    text = bytes(value).decode("utf-8")
    if key in workbook.sheetnames:
        workbook.remove(workbook[key])
    sheet = workbook.create_sheet(title=key)
    header = sheet.cell(row=1, column=1, value=PAYLOAD_HEADER)
    header.font = Font(bold=True)
    for index, start in enumerate(range(0, len(text), PAYLOAD_CHUNK_SIZE), start=2):
        cell = sheet.cell(row=index, column=1, value=text[start:start + PAYLOAD_CHUNK_SIZE])
        cell.data_type = "s"


# ---------------------------------------------------------------------------
# Record codec
# ---------------------------------------------------------------------------


def _field(payload: Mapping[str, Any], name: str) -> Any:
    if name not in payload:
        raise DecodeError(f"Missing required field '{name}'")
    return payload[name]


def _text(payload: Mapping[str, Any], name: str) -> str:
    value = _field(payload, name)
    if not isinstance(value, str):
        raise DecodeError(f"Field '{name}' must be text, got {type(value).__name__}")
    return value


def _optional_text(payload: Mapping[str, Any], name: str) -> Optional[str]:
    value = payload.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise DecodeError(f"Field '{name}' must be text, got {type(value).__name__}")
    return value


def _decimal(payload: Mapping[str, Any], name: str) -> Decimal:
    value = _field(payload, name)
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise DecodeError(f"Field '{name}' must be a decimal number, got {value!r}")
    try:
        result = Decimal(str(value))
    except InvalidOperation as exc:
        raise DecodeError(f"Field '{name}' must be a decimal number, got {value!r}") from exc
    if not result.is_finite():
        raise DecodeError(f"Field '{name}' must be finite, got {value!r}")
    return result


def _integer(payload: Mapping[str, Any], name: str) -> int:
    value = _field(payload, name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"Field '{name}' must be an integer, got {value!r}")
    return value


def _flag(payload: Mapping[str, Any], name: str) -> bool:
    value = _field(payload, name)
    if not isinstance(value, bool):
        raise DecodeError(f"Field '{name}' must be a boolean, got {value!r}")
    return value


def _member(payload: Mapping[str, Any], name: str, enum_type: Type[EnumT]) -> EnumT:
    value = _field(payload, name)
    try:
        return enum_type(value)
    except ValueError as exc:
        raise DecodeError(f"Field '{name}' has unknown value {value!r}") from exc


def _mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise DecodeError(f"{what} must be an object, got {type(value).__name__}")
    return value


def serialize_product(record: ProductRecord) -> Dict[str, Any]:
    """Convert a product dataclass into its JSON document."""

    return {
        "id": record.product_id,
        "barcode": record.barcode,
        "name": record.name,
        "cost_price": str(record.cost_price),
        "selling_price": str(record.selling_price),
        "stock_quantity": record.stock_quantity,
        "vat_type": record.vat_type.value,
        "is_active": record.is_active,
        "image_url": record.image_url,
    }


def deserialize_product(payload: Mapping[str, Any]) -> ProductRecord:
    """Validate a JSON document and build a :class:`ProductRecord`.

    Raises:
        DecodeError: If a required field is missing or has the wrong shape.
    """

    payload = _mapping(payload, "Product")
    return ProductRecord(
        product_id=_text(payload, "id"),
        barcode=_text(payload, "barcode"),
        name=_text(payload, "name"),
        cost_price=_decimal(payload, "cost_price"),
        selling_price=_decimal(payload, "selling_price"),
        stock_quantity=_integer(payload, "stock_quantity"),
        vat_type=_member(payload, "vat_type", VatType),
        is_active=_flag(payload, "is_active"),
        image_url=_optional_text(payload, "image_url"),
    )


def serialize_line_item(record: LineItemRecord) -> Dict[str, Any]:
    """Convert a line item dataclass into its JSON document."""

    return {
        "id": record.line_id,
        "transaction_id": record.transaction_id,
        "product_id": record.product_id,
        "product_name": record.product_name,
        "quantity": record.quantity,
        "unit_price": str(record.unit_price),
        "line_total": str(record.line_total),
        "vat_type": record.vat_type.value,
    }


def deserialize_line_item(payload: Mapping[str, Any]) -> LineItemRecord:
    """Validate a JSON document and build a :class:`LineItemRecord`."""

    payload = _mapping(payload, "Line item")
    quantity = _integer(payload, "quantity")
    if quantity <= 0:
        raise DecodeError(f"Field 'quantity' must be positive, got {quantity}")
    return LineItemRecord(
        line_id=_text(payload, "id"),
        transaction_id=_text(payload, "transaction_id"),
        product_id=_text(payload, "product_id"),
        product_name=_text(payload, "product_name"),
        quantity=quantity,
        unit_price=_decimal(payload, "unit_price"),
        line_total=_decimal(payload, "line_total"),
        vat_type=_member(payload, "vat_type", VatType),
    )


def serialize_customer(record: CustomerRecord) -> Dict[str, Any]:
    """Convert a customer dataclass into its JSON document."""

    return {
        "id": record.customer_id,
        "name": record.name,
        "tax_id": record.tax_id,
        "branch": record.branch,
        "address": record.address,
        "phone": record.phone,
    }


def deserialize_customer(payload: Mapping[str, Any]) -> CustomerRecord:
    """Validate a JSON document and build a :class:`CustomerRecord`."""

    payload = _mapping(payload, "Customer")
    return CustomerRecord(
        customer_id=_text(payload, "id"),
        name=_text(payload, "name"),
        tax_id=_text(payload, "tax_id"),
        branch=_text(payload, "branch"),
        address=_text(payload, "address"),
        phone=_text(payload, "phone"),
    )


def serialize_transaction(record: TransactionRecord) -> Dict[str, Any]:
    """Convert a transaction dataclass into its JSON document.

    Monetary values are written as decimal strings so no precision is lost on
    the way through JSON.
    """

    return {
        "id": record.transaction_id,
        "receipt_no": record.receipt_no,
        "timestamp": record.timestamp_iso,
        "customer_id": record.customer_id,
        "customer_snapshot": (
            serialize_customer(record.customer_snapshot)
            if record.customer_snapshot is not None
            else None
        ),
        "gross_amount": str(record.gross_amount),
        "discount": str(record.discount),
        "vat_amount": str(record.vat_amount),
        "net_amount": str(record.net_amount),
        "vat_rate": str(record.vat_rate),
        "payment_method": record.payment_method.value,
        "status": record.status.value,
        "note": record.note,
        "items": [serialize_line_item(item) for item in record.items],
    }


def deserialize_transaction(payload: Mapping[str, Any]) -> TransactionRecord:
    """Validate a JSON document and build a :class:`TransactionRecord`.

    Nested line items and the optional customer snapshot are validated with
    the same rules as top-level records.

    Raises:
        DecodeError: If any field, nested or not, is missing or malformed.
    """

    payload = _mapping(payload, "Transaction")
    raw_items = _field(payload, "items")
    if not isinstance(raw_items, list):
        raise DecodeError("Field 'items' must be a list")
    raw_snapshot = payload.get("customer_snapshot")
    return TransactionRecord(
        transaction_id=_text(payload, "id"),
        receipt_no=_text(payload, "receipt_no"),
        timestamp_iso=_text(payload, "timestamp"),
        customer_id=_optional_text(payload, "customer_id"),
        customer_snapshot=deserialize_customer(raw_snapshot) if raw_snapshot is not None else None,
        gross_amount=_decimal(payload, "gross_amount"),
        discount=_decimal(payload, "discount"),
        vat_amount=_decimal(payload, "vat_amount"),
        net_amount=_decimal(payload, "net_amount"),
        vat_rate=_decimal(payload, "vat_rate"),
        payment_method=_member(payload, "payment_method", PaymentMethod),
        status=_member(payload, "status", TransactionStatus),
        items=tuple(deserialize_line_item(item) for item in raw_items),
        note=_optional_text(payload, "note") or "",
    )


def serialize_settings(record: StoreSettings) -> Dict[str, Any]:
    """Convert store settings into their JSON document."""

    return {
        "company_name": record.company_name,
        "address": record.address,
        "tax_id": record.tax_id,
        "phone": record.phone,
        "footer_message": record.footer_message,
        "vat_rate": str(record.vat_rate),
    }


def deserialize_settings(payload: Mapping[str, Any]) -> StoreSettings:
    """Validate a JSON document and build :class:`StoreSettings`."""

    payload = _mapping(payload, "Settings")
    vat_rate = _decimal(payload, "vat_rate")
    if vat_rate < 0:
        raise DecodeError(f"Field 'vat_rate' must be zero or positive, got {vat_rate}")
    return StoreSettings(
        company_name=_text(payload, "company_name"),
        address=_text(payload, "address"),
        tax_id=_text(payload, "tax_id"),
        phone=_text(payload, "phone"),
        footer_message=_text(payload, "footer_message"),
        vat_rate=vat_rate,
    )


def encode_document(document: Any) -> bytes:
    """Render a JSON-compatible document as UTF-8 bytes."""

    return json.dumps(document, ensure_ascii=False, indent=2).encode("utf-8")


def decode_document(raw: bytes) -> Any:
    """Parse UTF-8 JSON bytes, reporting malformed input as :class:`DecodeError`."""

    try:
        return json.loads(bytes(raw).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"Stored payload is not valid JSON: {exc}") from exc


def encode_records(records: Iterable[RecordT], serializer: Callable[[RecordT], Dict[str, Any]]) -> bytes:
    """Serialize an ordered collection of records into a store payload."""

    return encode_document([serializer(record) for record in records])


def decode_records(raw: bytes, deserializer: Callable[[Mapping[str, Any]], RecordT]) -> List[RecordT]:
    """Decode a store payload into records, preserving order."""

    document = decode_document(raw)
    if not isinstance(document, list):
        raise DecodeError(f"Stored collection must be a list, got {type(document).__name__}")
    return [deserializer(item) for item in document]


def _read_collection(
    store: KeyValueStore,
    key: StorageKey,
    deserializer: Callable[[Mapping[str, Any]], RecordT],
) -> List[RecordT]:
    raw = store.read(key.value)
    if raw is None:
        return []
    return decode_records(raw, deserializer)


def iter_products(store: KeyValueStore) -> List[ProductRecord]:
    """Return the catalog in stored order (empty when never written)."""

    return _read_collection(store, StorageKey.PRODUCTS, deserialize_product)


def iter_transactions(store: KeyValueStore) -> List[TransactionRecord]:
    """Return the ledger, most recent first (empty when never written)."""

    return _read_collection(store, StorageKey.TRANSACTIONS, deserialize_transaction)


def iter_customers(store: KeyValueStore) -> List[CustomerRecord]:
    """Return the customer directory in stored order."""

    return _read_collection(store, StorageKey.CUSTOMERS, deserialize_customer)


def read_settings(store: KeyValueStore, default: StoreSettings) -> StoreSettings:
    """Return stored settings, or ``default`` when none were ever written."""

    raw = store.read(StorageKey.SETTINGS.value)
    if raw is None:
        return default
    return deserialize_settings(decode_document(raw))


def encode_products(records: Sequence[ProductRecord]) -> bytes:
    return encode_records(records, serialize_product)


def encode_transactions(records: Sequence[TransactionRecord]) -> bytes:
    return encode_records(records, serialize_transaction)


def encode_customers(records: Sequence[CustomerRecord]) -> bytes:
    return encode_records(records, serialize_customer)


def encode_settings(record: StoreSettings) -> bytes:
    return encode_document(serialize_settings(record))
