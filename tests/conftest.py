"""Shared pytest fixtures and utilities for Shop Ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Iterator

import bcrypt
import openpyxl
import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from shop_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from setup_excel import SHEET_COLUMNS, create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
OWNER_EMAIL = "owner@example.com"
OWNER_PASSWORD = "correct horse battery staple"
RECEIPT_PHONE = "+62 812-3456-7890"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Store]\n"
    "OperationTimeout = 10\n"
    "MaxRetries = 3\n"
    "AutoSave = {autosave}\n\n"
    "[Auth]\n"
    "OwnerEmail = {owner_email}\n"
    "PasswordHash = {password_hash}\n\n"
    "[Receipt]\n"
    "PhoneNumber = {receipt_phone}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
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


@pytest.fixture(scope="session")
def password_hash() -> str:
    """bcrypt hash of ``OWNER_PASSWORD`` with a cheap work factor."""

    return bcrypt.hashpw(OWNER_PASSWORD.encode("utf-8"), bcrypt.gensalt(rounds=4)).decode("utf-8")


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "store.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh store workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(
    tmp_path: Path,
    workbook_factory: Callable[..., Path],
    password_hash: str,
) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        autosave: bool = True,
        receipt_phone: str = RECEIPT_PHONE,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                autosave="true" if autosave else "false",
                owner_email=OWNER_EMAIL,
                password_hash=password_hash,
                receipt_phone=receipt_phone,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def signed_in_context(runtime_context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Runtime context on disk with the owner signed in."""

    return core_logic.sign_in(runtime_context, OWNER_EMAIL, OWNER_PASSWORD)


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="shop-ledger-test", description="Shop Ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec


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


# ---------------------------------------------------------------------------
# In-memory store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store_workbook() -> openpyxl.Workbook:
    """Empty store workbook held in memory only."""

    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    for sheet_name, columns in SHEET_COLUMNS.items():
        workbook.create_sheet(title=sheet_name).append(list(columns))
    return workbook


@pytest.fixture
def settings(tmp_path: Path, password_hash: str) -> data_manager.ConfigSettings:
    """Settings for in-memory contexts; autosave is off so nothing hits disk."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "store.xlsx",
        store_name="Test Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        operation_timeout=5.0,
        max_retries=3,
        autosave=False,
        owner_email=OWNER_EMAIL,
        password_hash=password_hash,
        receipt_phone=RECEIPT_PHONE,
    )


@pytest.fixture
def anonymous_context(
    settings: data_manager.ConfigSettings, store_workbook: openpyxl.Workbook
) -> core_logic.RuntimeContext:
    """In-memory context without a session."""

    return core_logic.RuntimeContext(settings=settings, workbook=store_workbook)


@pytest.fixture
def context(anonymous_context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """In-memory context with the owner signed in."""

    session = core_logic.Session(email=OWNER_EMAIL, signed_in_at=datetime(2026, 1, 1, tzinfo=UTC))
    return core_logic.RuntimeContext(
        settings=anonymous_context.settings,
        workbook=anonymous_context.workbook,
        session=session,
    )


@pytest.fixture
def product_factory() -> Callable[..., data_manager.ProductDocument]:
    """Build product documents with sensible defaults."""

    def _make(**overrides: Any) -> data_manager.ProductDocument:
        values: dict[str, Any] = {
            "product_id": "",
            "name": "Kopi Susu",
            "category": "drinks",
            "price": 10000,
            "stock": 50,
            "is_hidden": False,
            "created_at": datetime(2026, 1, 1, tzinfo=UTC),
            "last_stock_added_at": None,
            "last_stock_added_qty": None,
            "stock_baseline": None,
            "version": 1,
        }
        values.update(overrides)
        if values["stock_baseline"] is None:
            values["stock_baseline"] = values["stock"]
        return data_manager.ProductDocument(**values)

    return _make


@pytest.fixture
def sale_factory() -> Callable[..., data_manager.SaleDocument]:
    """Build sale documents with sensible defaults."""

    def _make(**overrides: Any) -> data_manager.SaleDocument:
        values: dict[str, Any] = {
            "sale_id": "S-1",
            "product_id": "P-1",
            "product_name": "Kopi Susu",
            "product_category": "drinks",
            "qty": 1,
            "price": 10000,
            "buyer_name": "",
            "customer_type": None,
            "sold_at": datetime(2026, 10, 15, 9, 30, tzinfo=UTC),
        }
        values.update(overrides)
        return data_manager.SaleDocument(**values)

    return _make
