"""Command-line entry points for the pet shop sales toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into calls on the business layer. Keeping the CLI thin
ensures the same parser configuration can be reused by tests, scripts, or any
alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import DeletePolicy, PaymentMethod
from .errors import BusinessRuleViolation, StoreIOError


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def parse_item(raw: str) -> tuple[str, int]:
    """Parse a ``PRODUCT_ID:QTY`` argument."""
    product_id, sep, quantity = raw.rpartition(":")
    if not sep or not product_id:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:QTY, got '{raw}'")
    try:
        return product_id, int(quantity)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be an integer in '{raw}'") from exc


def parse_timestamp(raw: str) -> datetime:
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected an ISO-8601 timestamp, got '{raw}'") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="petshop-cli",
        description="Command-line tools for pet shop sales and stock.",
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
    """Declare mutating CLI commands such as sales and edits."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "sale": register_sale_command(subparsers),
        "edit-sale": register_edit_sale_command(subparsers),
        "delete-sale": register_delete_sale_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "stock": register_stock_command(subparsers),
        "sales": register_sales_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product with its opening stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--unit-price", required=True)
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--category", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a new sale and take its stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            required=True,
            metavar="PRODUCT_ID:QTY",
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CREDIT_CARD.value,
        )
        parser.add_argument("--timestamp", type=parse_timestamp, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_edit_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-sale``."""
    name = "edit-sale"
    help_text = "Change the line items of a recorded sale and reconcile stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument(
            "--remove-line",
            dest="remove_lines",
            action="append",
            type=int,
            default=[],
            metavar="INDEX",
            help="0-based position of a line to drop, as numbered before the edit.",
        )
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            default=[],
            metavar="PRODUCT_ID:QTY",
        )
        parser.add_argument("--customer-id", default=None)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=None,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_sale)


def register_delete_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-sale``."""
    name = "delete-sale"
    help_text = "Delete a sale record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument(
            "--policy",
            choices=[member.value for member in DeletePolicy],
            default=None,
            help="Override the configured delete policy.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_sale)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List recorded sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


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


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    core_logic.add_product(
        context,
        product_id=args.product_id,
        product_name=args.product_name,
        unit_price=Decimal(args.unit_price),
        stock_quantity=args.stock,
        category=args.category,
    )
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Fill a cart from ``--item`` arguments and commit it."""
    cart = core_logic.new_cart(context)
    for product_id, quantity in args.items:
        cart.add_item(product_id, quantity)
    sale = core_logic.create_sale(
        context,
        cart,
        customer_id=args.customer_id,
        payment_method=PaymentMethod(args.payment_method),
        timestamp=args.timestamp,
    )
    print(f"Recorded sale {sale.sale_id} (total {sale.total})")
    return 0


def run_edit_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Open an edit session, apply the requested changes and commit."""
    session = core_logic.open_edit_session(context, args.sale_id)
    # Highest index first so the remaining positions still match the sale.
    for index in sorted(set(args.remove_lines), reverse=True):
        session.cart.remove_item(index)
    for product_id, quantity in args.items:
        session.cart.add_item(product_id, quantity)
    payment = PaymentMethod(args.payment_method) if args.payment_method else None
    sale = core_logic.commit_edit(context, session, customer_id=args.customer_id, payment_method=payment)
    print(f"Updated sale {sale.sale_id} (total {sale.total})")
    return 0


def run_delete_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete workflow via the BLL."""
    policy = DeletePolicy(args.policy) if args.policy else None
    core_logic.delete_sale(context, args.sale_id, policy=policy)
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one ``product_id<TAB>stock`` line per product."""
    for product_id, quantity in core_logic.stock_levels(context).items():
        print(f"{product_id}\t{quantity}")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one summary line per sale."""
    for sale in core_logic.list_sales(context):
        print(
            f"{sale.sale_id}\t{sale.timestamp.isoformat()}\t{sale.customer_id}\t"
            f"{sale.payment_method.value}\t{len(sale.line_items)} line(s)\t{sale.total}"
        )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, BusinessRuleViolation):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    if isinstance(error, StoreIOError):
        return 4
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
    try:
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            core_logic.persist_context(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
    finally:
        core_logic.close_context(context)
