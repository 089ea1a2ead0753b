"""Command-line entry points for the IML operations toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the requests consumed by the business layer, and
printing the resulting views. Keeping the CLI thin ensures the same parser
configuration can be reused by tests or scripts.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import DesignStatus, StorageKey
from .facets import FilterSpec
from .hierarchy import GroupNode
from .ledger import INVENTORY_VERIFICATION, PRODUCTION, PURCHASE_LABEL, PURCHASE_TRACKING, LedgerPolicy
from .models import Record


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


@dataclass(frozen=True)
class LedgerTarget:
    """Where a follow-up ledger lives and which records it consumes."""

    key: StorageKey
    policy: LedgerPolicy
    lookup: Callable[[core_logic.RuntimeContext, str], Record]


LEDGER_TARGETS: Dict[str, LedgerTarget] = {
    "purchase-tracking": LedgerTarget(
        StorageKey.PURCHASE_TRACKING_FOLLOWUPS, PURCHASE_TRACKING, core_logic.get_purchase_record
    ),
    "purchase-label": LedgerTarget(
        StorageKey.PURCHASE_LABEL_FOLLOWUPS, PURCHASE_LABEL, core_logic.get_purchase_record
    ),
    "production": LedgerTarget(StorageKey.PRODUCTION_FOLLOWUPS, PRODUCTION, core_logic.get_production_record),
    "inventory": LedgerTarget(
        StorageKey.INVENTORY_FOLLOWUPS, INVENTORY_VERIFICATION, core_logic.get_production_record
    ),
}


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="iml-ops",
        description="Command-line tools for the IML operations store.",
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
    """Declare mutating CLI commands such as follow-ups and migrations."""
    specs = {
        "followup": register_followup_command(subparsers),
        "move-to-purchase": register_move_to_purchase_command(subparsers),
        "delete-order": register_delete_order_command(subparsers),
        "migrate": register_migrate_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as grouped views."""
    specs = {
        "orders": register_orders_command(subparsers),
        "purchases": register_purchases_command(subparsers),
        "production": register_production_command(subparsers),
        "remaining": register_remaining_command(subparsers),
        "stats": register_stats_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--search", default=None, help="Case-insensitive free-text search.")
    parser.add_argument("--from", dest="date_from", default=None, help="First day included (YYYY-MM-DD).")
    parser.add_argument("--to", dest="date_to", default=None, help="Last day included (YYYY-MM-DD).")


def _add_ledger_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--ledger", choices=sorted(LEDGER_TARGETS), required=True)
    parser.add_argument("--record-id", required=True)


def register_followup_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``followup``."""
    name = "followup"
    help_text = "Append a follow-up against a purchase or production record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_ledger_arguments(parser)
        parser.add_argument(
            "--set",
            dest="fields",
            action="append",
            default=[],
            metavar="FIELD=VALUE",
            help="Follow-up form field, e.g. quantity=2,000 or comment='first lot'.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_followup)


def register_move_to_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``move-to-purchase``."""
    name = "move-to-purchase"
    help_text = "Hand every product of an order over to purchasing."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_move_to_purchase)


def register_delete_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-order``."""
    name = "delete-order"
    help_text = "Delete an order from the store."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_order)


def register_migrate_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``migrate``."""
    name = "migrate"
    help_text = "Upgrade every stored collection to the current payload version."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_migrate)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "Display orders grouped by company and order number."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_filter_arguments(parser)
        parser.add_argument("--artwork-status", choices=[member.value for member in DesignStatus], default=None)
        parser.add_argument("--product", default=None)
        parser.add_argument("--size", default=None)
        parser.add_argument(
            "--remaining-only",
            action="store_true",
            help="Only show orders that still have labels to produce.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders_report)


def register_purchases_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchases``."""
    name = "purchases"
    help_text = "Display purchase entries grouped by product and size."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_filter_arguments(parser)
        parser.add_argument("--product", default=None)
        parser.add_argument("--size", default=None)
        parser.add_argument("--supplier", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchases_report)


def register_production_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``production``."""
    name = "production"
    help_text = "Display production jobs grouped by product and size."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_filter_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_production_report)


def register_remaining_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remaining``."""
    name = "remaining"
    help_text = "Display the remaining balance of a record's ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_ledger_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remaining_report)


def register_stats_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stats``."""
    name = "stats"
    help_text = "Display order dashboard counts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stats_report)


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


def translate_filter(args: argparse.Namespace, *selects: str) -> FilterSpec:
    """Translate shared filter args (and named selects) into a :class:`FilterSpec`."""
    return FilterSpec(
        search_text=getattr(args, "search", None),
        exact_match={select: getattr(args, select, None) for select in selects},
        date_from=getattr(args, "date_from", None),
        date_to=getattr(args, "date_to", None),
    )


def translate_order_query(args: argparse.Namespace) -> core_logic.OrderQuery:
    """Translate CLI args into an order view query."""
    return core_logic.OrderQuery(
        spec=translate_filter(args),
        artwork_status=args.artwork_status,
        product=args.product,
        size=args.size,
        remaining_only=bool(args.remaining_only),
    )


def translate_followup(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate repeated ``--set FIELD=VALUE`` pairs into a follow-up row."""
    row: Dict[str, Any] = {}
    for item in args.fields:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"Expected FIELD=VALUE, got {item!r}")
        row[name.strip()] = value
    return row


def _emit(line: str) -> None:
    print(line, file=sys.stdout)


def _render_tree(node: GroupNode, describe: Callable[[Record], str], indent: int = 0) -> None:
    for key, child in node.children.items():
        _emit(f"{'  ' * indent}{key} ({child.count()})")
        if child.is_leaf:
            for record in child.records:
                _emit(f"{'  ' * (indent + 1)}- {describe(record)}")
        else:
            _render_tree(child, describe, indent + 1)


def _describe_order(record: Record) -> str:
    status = core_logic.order_artwork_status(record)
    return f"{record.record_id} artwork={status} labels={record.quantity_total}"


def _describe_entry(record: Record) -> str:
    company = record.attributes.get("company") or "-"
    return f"{record.record_id} {company} qty={record.quantity_total}"


def run_followup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the follow-up append workflow via the BLL."""
    target = LEDGER_TARGETS[args.ledger]
    record = target.lookup(context, args.record_id)
    balance = core_logic.record_followup(context, target.key, record, translate_followup(args), target.policy)
    _emit(f"{record.record_id}: remaining {balance.remaining} of {record.quantity_total}")
    return 0


def run_move_to_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the move-to-purchase workflow via the BLL."""
    core_logic.move_order_to_purchase(context, args.order_id)
    _emit(f"Order {args.order_id} moved to purchase")
    return 0


def run_delete_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order deletion workflow via the BLL."""
    core_logic.delete_order(context, args.order_id)
    return 0


def run_migrate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the store migration workflow via the BLL."""
    versions = core_logic.migrate_all(context)
    for key, version in versions.items():
        _emit(f"{key}: store version {version}")
    return 0


def run_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the grouped order reporting workflow."""
    tree = core_logic.order_view(context, translate_order_query(args))
    _render_tree(tree, _describe_order)
    return 0


def run_purchases_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the grouped purchase reporting workflow."""
    tree = core_logic.purchase_view(context, translate_filter(args, "product", "size", "supplier"))
    _render_tree(tree, _describe_entry)
    return 0


def run_production_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the grouped production reporting workflow."""
    tree = core_logic.production_view(context, translate_filter(args))
    _render_tree(tree, _describe_entry)
    return 0


def run_remaining_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the remaining balance reporting workflow."""
    target = LEDGER_TARGETS[args.ledger]
    record = target.lookup(context, args.record_id)
    balance = core_logic.remaining_for(context, target.key, record, target.policy)
    _emit(f"{record.record_id}: remaining {balance} of {record.quantity_total}")
    return 0


def run_stats_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dashboard statistics workflow."""
    for name, value in core_logic.dashboard_stats(context).items():
        _emit(f"{name}: {value}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
