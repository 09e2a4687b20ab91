"""Command-line entry points for the shop ledger.

All orchestration in this module is limited to argparse wiring, signing the
owner in, translating command-line arguments into business-layer calls and
printing the results. Every error is caught here and turned into an exit
code, so a failed command never leaves a traceback behind.
"""

from __future__ import annotations

import argparse
import getpass
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log, receipts, reports
from .constants import CustomerType, Metric, TimeWindow


PASSWORD_ENV_VAR = "SHOP_LEDGER_PASSWORD"


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    requires_session: bool = True
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shop-ledger",
        description="Catalog, sales and dashboard tools for the Shop Ledger store.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--email",
        default=None,
        help="Owner e-mail used to sign in (defaults to [Auth] OwnerEmail).",
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


def _spec(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    add_arguments: Callable[[argparse.ArgumentParser], None],
    *,
    requires_session: bool = True,
    mutates: bool = False,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=execute,
        requires_session=requires_session,
        mutates=mutates,
    )


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and stock additions."""
    specs = {
        "add-product": _spec("add-product", "Add a product to the catalog.", run_add_product, _add_product_arguments, mutates=True),
        "edit-product": _spec("edit-product", "Edit catalog fields of a product.", run_edit_product, _edit_product_arguments, mutates=True),
        "add-stock": _spec("add-stock", "Record a manual stock addition.", run_add_stock, _product_qty_arguments, mutates=True),
        "hide": _spec("hide", "Hide a product from the price list and sale picker.", run_hide, _product_id_argument, mutates=True),
        "show": _spec("show", "Make a hidden product visible again.", run_show, _product_id_argument, mutates=True),
        "delete-product": _spec("delete-product", "Delete a product, keeping its sales.", run_delete_product, _delete_product_arguments, mutates=True),
        "sale": _spec("sale", "Record a sale.", run_sale, _sale_arguments, mutates=True),
        "reverse-sale": _spec("reverse-sale", "Delete a sale and restore its stock.", run_reverse_sale, _sale_id_argument, mutates=True),
        "update-sale": _spec("update-sale", "Correct buyer or category details of a sale.", run_update_sale, _update_sale_arguments, mutates=True),
        "repair-stock": _spec("repair-stock", "Rewrite drifting stock from the ledger.", run_repair_stock, _repair_arguments, mutates=True),
        "backfill-prices": _spec("backfill-prices", "Fill missing sale price snapshots.", run_backfill_prices, _no_arguments, mutates=True),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "products": _spec("products", "List the catalog.", run_products_report, _products_arguments),
        "sales": _spec("sales", "List sales, newest first.", run_sales_report, _sales_arguments),
        "dashboard": _spec("dashboard", "Show revenue, stock and top sellers.", run_dashboard_report, _dashboard_arguments),
        "price-list": _spec("price-list", "Show the public price list.", run_price_list, _price_list_arguments, requires_session=False),
        "audit-stock": _spec("audit-stock", "Report products whose stock disagrees with the ledger.", run_audit_stock, _no_arguments),
        "receipt": _spec("receipt", "Print the receipt and message link for a sale.", run_receipt, _sale_id_argument),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _no_arguments(parser: argparse.ArgumentParser) -> None:
    return None


def _product_id_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", required=True)


def _sale_id_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sale-id", required=True)


def _product_qty_arguments(parser: argparse.ArgumentParser) -> None:
    _product_id_argument(parser)
    parser.add_argument("--qty", type=int, required=True)


def _add_product_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--price", type=int, required=True)
    parser.add_argument("--stock", type=int, required=True)
    parser.add_argument("--category", default=None)
    parser.add_argument("--hidden", action="store_true", help="Create the product hidden.")


def _edit_product_arguments(parser: argparse.ArgumentParser) -> None:
    _product_id_argument(parser)
    parser.add_argument("--name", default=None)
    parser.add_argument("--price", type=int, default=None)
    parser.add_argument("--stock", type=int, default=None)
    parser.add_argument("--category", default=None)


def _delete_product_arguments(parser: argparse.ArgumentParser) -> None:
    _product_id_argument(parser)
    parser.add_argument(
        "--purge",
        action="store_true",
        help="Also delete every sale of the product. Irreversible.",
    )


def _sale_arguments(parser: argparse.ArgumentParser) -> None:
    _product_qty_arguments(parser)
    parser.add_argument("--buyer-name", default="")
    parser.add_argument(
        "--customer-type",
        choices=[member.value for member in CustomerType],
        default=None,
    )


def _update_sale_arguments(parser: argparse.ArgumentParser) -> None:
    _sale_id_argument(parser)
    parser.add_argument("--buyer-name", default=None)
    parser.add_argument(
        "--customer-type",
        choices=[member.value for member in CustomerType],
        default=None,
    )
    parser.add_argument("--category", default=None)


def _repair_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", action="append", dest="product_ids", default=None)


def _products_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--include-hidden", action="store_true")


def _window_argument(parser: argparse.ArgumentParser, default: Optional[str]) -> None:
    parser.add_argument(
        "--window",
        choices=[member.value for member in TimeWindow],
        default=default,
    )


def _sales_arguments(parser: argparse.ArgumentParser) -> None:
    _window_argument(parser, TimeWindow.ALL_TIME.value)
    parser.add_argument(
        "--customer-type",
        choices=[member.value for member in CustomerType],
        default=None,
    )
    parser.add_argument("--category", default=None)


def _dashboard_arguments(parser: argparse.ArgumentParser) -> None:
    _window_argument(parser, TimeWindow.THIS_YEAR.value)
    parser.add_argument(
        "--metric",
        choices=[member.value for member in Metric],
        default=Metric.REVENUE.value,
    )


def _price_list_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--keyword", default=None)
    parser.add_argument("--sort", choices=["asc", "desc"], default=None)


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
    """Build an index of command descriptors keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def resolve_password() -> str:
    """Read the owner password from the environment or prompt for it."""
    password = os.environ.get(PASSWORD_ENV_VAR)
    if password:
        return password
    return getpass.getpass("Owner password: ")


def authenticate(context: core_logic.RuntimeContext, email: Optional[str]) -> core_logic.RuntimeContext:
    """Sign the owner in for a gated command."""
    login = email or context.settings.owner_email or ""
    return core_logic.sign_in(context, login, resolve_password())


def translate_buyer(args: argparse.Namespace) -> core_logic.BuyerInfo:
    """Translate CLI args into buyer metadata."""
    customer_type = getattr(args, "customer_type", None)
    return core_logic.BuyerInfo(
        buyer_name=getattr(args, "buyer_name", "") or "",
        customer_type=CustomerType(customer_type) if customer_type else None,
    )


def translate_product_fields(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into keyword arguments for add/edit product."""
    fields = {
        "name": args.name,
        "price": args.price,
        "stock": args.stock,
        "category": args.category,
    }
    if hasattr(args, "hidden"):
        fields["is_hidden"] = args.hidden
    return fields


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.add_product(context, **translate_product_fields(args))
    print(f"Added product {product.product_id}: {product.name}")
    return 0


def run_edit_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.edit_product(context, args.product_id, **translate_product_fields(args))
    print(f"Updated product {product.product_id}: {product.name} (stock {product.stock}, price {product.price})")
    return 0


def run_add_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.add_stock(context, args.product_id, args.qty)
    print(f"Stock of {product.name} is now {product.stock}")
    return 0


def run_hide(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.set_product_visibility(context, args.product_id, hidden=True)
    print(f"{product.name} is hidden")
    return 0


def run_show(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.set_product_visibility(context, args.product_id, hidden=False)
    print(f"{product.name} is visible")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if args.purge:
        removed = core_logic.purge_product(context, args.product_id)
        print(f"Purged product {args.product_id} and {removed} sales")
    else:
        core_logic.delete_product(context, args.product_id)
        print(f"Deleted product {args.product_id}; its sales were kept")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    sale = core_logic.record_sale(context, args.product_id, args.qty, translate_buyer(args))
    print(f"Recorded sale {sale.sale_id}: {sale.qty} x {sale.product_name}")
    _print_receipt(context, sale)
    return 0


def run_reverse_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.reverse_sale(context, args.sale_id)
    print(f"Reversed sale {args.sale_id}")
    return 0


def run_update_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    customer_type = CustomerType(args.customer_type) if args.customer_type else None
    sale = core_logic.update_sale_details(
        context,
        args.sale_id,
        buyer_name=args.buyer_name,
        customer_type=customer_type,
        product_category=args.category,
    )
    print(f"Updated sale {sale.sale_id}")
    return 0


def run_repair_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    repaired = core_logic.repair_stock(context, args.product_ids)
    if not repaired:
        print("No stock drift found.")
    for drift in repaired:
        print(f"{drift.product_id} {drift.product_name}: {drift.recorded} -> {max(drift.expected, 0)}")
    return 0


def run_backfill_prices(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    updated = core_logic.backfill_sale_prices(context)
    print(f"Backfilled {updated} sales")
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product in core_logic.list_products(context, include_hidden=args.include_hidden):
        hidden = " (hidden)" if product.is_hidden else ""
        print(
            f"{product.product_id}  {product.name}{hidden}  "
            f"[{core_logic.display_category(product.category)}]  "
            f"{receipts.format_rupiah(product.price)}  stock {product.stock}"
        )
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    window = TimeWindow(args.window)
    customer_type = CustomerType(args.customer_type) if args.customer_type else None
    since = reports.window_start(window, data_manager.server_timestamp())
    products = core_logic.list_products(context, include_hidden=True)
    lookup = reports.index_products(products)
    for sale in core_logic.list_sales(
        context,
        since=since,
        customer_type=customer_type,
        product_category=args.category,
    ):
        print(
            f"{sale.sale_id}  {receipts.format_timestamp(sale.sold_at)}  {sale.product_name}  "
            f"x{sale.qty}  {receipts.format_rupiah(reports.sale_revenue(sale, lookup))}  "
            f"{sale.buyer_name or '-'}"
        )
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    products = core_logic.list_products(context, include_hidden=True)
    sales = core_logic.list_sales(context)
    metric = Metric(args.metric)
    summary = reports.dashboard_summary(products, sales, TimeWindow(args.window), metric=metric)

    def show(value: int) -> str:
        return receipts.format_rupiah(value) if metric is Metric.REVENUE else str(value)

    print(f"Products: {summary.product_count}")
    print(f"Total stock: {summary.total_stock}")
    print(f"Revenue: {receipts.format_rupiah(summary.total_revenue)}")
    print(f"Units sold: {summary.total_quantity}")
    print("Per period:")
    for label, value in summary.buckets:
        print(f"  {label}: {show(value)}")
    print("Top products:")
    for name, value in summary.top_products:
        print(f"  {name}: {show(value)}")
    print("Categories:")
    for name, value in summary.categories:
        print(f"  {core_logic.display_category(name)}: {show(value)}")
    print("Low stock:")
    for product in summary.low_stock:
        print(f"  {product.name}: {product.stock}")
    return 0


def run_price_list(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product in core_logic.public_price_list(context, keyword=args.keyword, sort=args.sort):
        print(f"{product.name}  {receipts.format_rupiah(product.price)}")
    return 0


def run_audit_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    drifts = core_logic.audit_stock(context)
    if not drifts:
        print("No stock drift found.")
    for drift in drifts:
        print(f"{drift.product_id} {drift.product_name}: recorded {drift.recorded}, expected {drift.expected}")
    return 0


def run_receipt(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.require_session(context)
    _print_receipt(context, core_logic.get_sale(context, args.sale_id))
    return 0


def _print_receipt(context: core_logic.RuntimeContext, sale: data_manager.SaleDocument) -> None:
    text = receipts.format_receipt(sale, context.settings.store_name)
    print(text)
    if context.settings.receipt_phone:
        print(receipts.build_message_link(context.settings.receipt_phone, text))


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, core_logic.RemoteFailure):
        log.error("%s%s", error, " (retry later)" if error.retryable else "")
        return 4
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    spec = command_table[args.command]
    try:
        context = load_runtime_context(getattr(args, "config", None))
        if spec.requires_session:
            context = authenticate(context, getattr(args, "email", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and spec.mutates and not context.settings.autosave:
            core_logic.persist_context(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
