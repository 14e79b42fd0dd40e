"""Utility for initializing the till ledger store workbook.

The module doubles as a script (``python -m till_ledger.setup_excel``) and as a
library used by tests or other tooling. It creates one worksheet per storage
key and, unless asked not to, seeds the demo catalog and shop settings.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager
from .constants import DEFAULT_VAT_RATE, StorageKey, VatType

CONFIG_FILE = "config.ini"

DEMO_PRODUCTS: Sequence[data_manager.ProductRecord] = (
    data_manager.ProductRecord("1", "88500001", "Espresso", Decimal("40"), Decimal("60"), 100, VatType.INCLUDED),
    data_manager.ProductRecord("2", "88500002", "Green Tea Latte", Decimal("45"), Decimal("70"), 50, VatType.INCLUDED),
    data_manager.ProductRecord("3", "88500003", "Croissant", Decimal("20"), Decimal("85"), 20, VatType.EXCLUDED),
    data_manager.ProductRecord("4", "88500004", "Water", Decimal("5"), Decimal("15"), 200, VatType.NONE),
)


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path
    shop_name: str
    default_vat_rate: Decimal


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        KeyError: If a required ``[System]`` entry is missing.
        ValueError: If ``DefaultVatRate`` is not a finite, non-negative number.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    vat_rate = data_manager.parse_vat_rate(
        parser.get("Defaults", "DefaultVatRate", fallback=str(DEFAULT_VAT_RATE))
    )

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path, shop_name=shop_name, default_vat_rate=vat_rate)


def create_store_workbook(
    destination: Path,
    *,
    shop_name: str = "",
    vat_rate: Decimal = DEFAULT_VAT_RATE,
    seed_catalog: bool = True,
    overwrite: bool = False,
) -> Path:
    """Create the store workbook at ``destination``.

    Every :class:`~till_ledger.constants.StorageKey` gets its own worksheet
    with a bold ``Payload`` header. Settings are always written; the demo
    catalog only when ``seed_catalog`` is true. When ``overwrite`` is
    ``False`` (the default) an existing file raises ``FileExistsError``.
    """

    vat_rate = Decimal(vat_rate)
    if not vat_rate.is_finite() or vat_rate < 0:
        raise ValueError(f"VAT rate must be a finite number, zero or positive: {vat_rate}")

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing store workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for key in StorageKey:
        worksheet = workbook.create_sheet(title=key.value)
        worksheet.cell(row=1, column=1, value=data_manager.PAYLOAD_HEADER).font = bold_font

    settings = data_manager.StoreSettings(company_name=shop_name, vat_rate=vat_rate)
    data_manager.write_payload_sheet(workbook, StorageKey.SETTINGS.value, data_manager.encode_settings(settings))
    if seed_catalog:
        data_manager.write_payload_sheet(
            workbook,
            StorageKey.PRODUCTS.value,
            data_manager.encode_products(DEMO_PRODUCTS),
        )

    data_manager.save_workbook(workbook, destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False, seed_catalog: bool = True) -> Path:
    """Create the workbook named by ``config.ini``."""

    settings = load_settings(config_path)
    return create_store_workbook(
        settings.data_file,
        shop_name=settings.shop_name,
        vat_rate=settings.default_vat_rate,
        seed_catalog=seed_catalog,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the till ledger store workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    parser.add_argument(
        "--empty",
        action="store_true",
        help="Do not seed the demo product catalog.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Till Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force, seed_catalog=not args.empty)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created store workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
