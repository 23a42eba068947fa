"""Command-line entry points for farm operators.

The CLI only wires argparse onto the weekly lifecycle, harvest lists, order
history, confirmation emails and the HTTP server. Commands that change the
workbook set ``persist`` so :func:`main` saves it after a successful run.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import admin, core_logic, data_manager, log, notifications


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


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
        prog="csa-orders",
        description="Operator tools for the CSA ordering workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    week_specs = register_week_commands(subparsers)
    member_specs = register_member_commands(subparsers)
    return build_command_table([*week_specs.values(), *member_specs.values()])


def register_week_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare the weekly lifecycle and harvest commands."""
    specs = {
        "prepare-week": register_prepare_week_command(),
        "open-orders": register_open_orders_command(),
        "close-orders": register_close_orders_command(),
        "harvest-lists": register_harvest_lists_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_member_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that look at or talk to members."""
    specs = {
        "past-orders": register_past_orders_command(),
        "send-confirmations": register_send_confirmations_command(),
        "serve": register_serve_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_prepare_week_command() -> CommandSpec:
    """Register the parser and executor for ``prepare-week``."""
    name = "prepare-week"
    help_text = "Copy the template into a new pending week."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name, persist=True)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_prepare_week)


def register_open_orders_command() -> CommandSpec:
    """Register the parser and executor for ``open-orders``."""
    name = "open-orders"
    help_text = "Open the pending week for ordering."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name, persist=True)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_open_orders)


def register_close_orders_command() -> CommandSpec:
    """Register the parser and executor for ``close-orders``."""
    name = "close-orders"
    help_text = "Close the open week and record member spend."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name, persist=True)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_close_orders)


def register_harvest_lists_command() -> CommandSpec:
    """Register the parser and executor for ``harvest-lists``."""
    name = "harvest-lists"
    help_text = "Summarise a week's orders per harvest day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet-id", type=int, default=None, help="Ledger id (defaults to the open week).")
        parser.add_argument(
            "--write",
            dest="persist",
            action="store_true",
            help="Also write each list onto a new sheet of the workbook.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_harvest_lists)


def register_past_orders_command() -> CommandSpec:
    """Register the parser and executor for ``past-orders``."""
    name = "past-orders"
    help_text = "List the past weeks a member ordered in."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user", required=True, help="Member email.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_past_orders)


def register_send_confirmations_command() -> CommandSpec:
    """Register the parser and executor for ``send-confirmations``."""
    name = "send-confirmations"
    help_text = "Email an order confirmation to every member who ordered."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet-id", type=int, required=True, help="Ledger id to confirm.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_send_confirmations)


def register_serve_command() -> CommandSpec:
    """Register the parser and executor for ``serve``."""
    name = "serve"
    help_text = "Serve the member ordering API."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--host", default=DEFAULT_HOST)
        parser.add_argument("--port", type=int, default=DEFAULT_PORT)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_serve)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path)


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


def resolve_ledger(context: core_logic.RuntimeContext, sheet_id: Optional[int]) -> core_logic.LedgerRef:
    """Map an optional ``--sheet-id`` to a ledger, the open week by default.

    Raises:
        LookupError: If ``sheet_id`` does not name a ledger.
    """
    if sheet_id is None:
        return core_logic.LedgerRef.current()
    ledger = core_logic.get_ledger_by_id(context, sheet_id)
    if ledger is None:
        raise LookupError(f"Sheet id {sheet_id} is not an orders sheet")
    return ledger


def run_prepare_week(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    sheet_id = admin.prepare_new_week(context)
    print(f"Prepared pending week (sheet id {sheet_id}). Fill in prices and limits, then run open-orders.")
    return 0


def run_open_orders(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    hidden = admin.open_orders(context)
    print(f"Orders are open ({len(hidden)} products hidden).")
    return 0


def run_close_orders(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    title = admin.close_orders(context)
    print(f"Orders closed; the week is now '{title}'.")
    return 0


def run_harvest_lists(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print harvest lists and optionally write them to the workbook."""
    ledger = resolve_ledger(context, args.sheet_id)
    harvest_lists = admin.build_harvest_lists(context, ledger)
    if not harvest_lists:
        print(f"No orders to harvest in '{ledger.title}'.")
        return 0

    for harvest_list in harvest_lists:
        print(f"== {harvest_list.harvest_day}: {', '.join(harvest_list.locations)}")
        for name, total in harvest_list.products:
            print(f"{total:>5}  {name}")
        for slip in harvest_list.packing_slips:
            print()
            print(slip.render())
        print()
        if args.persist:
            title = admin.default_harvest_list_title(harvest_list, ledger)
            admin.write_harvest_list(context, harvest_list, title)
            print(f"Wrote '{title}'.")
    return 0


def run_past_orders(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    orders = sorted(core_logic.list_past_orders(context, args.user), key=lambda order: order.date, reverse=True)
    if not orders:
        print(f"No past orders for {args.user}.")
    for order in orders:
        print(f"{order.id}\t{order.date.isoformat()}")
    return 0


def run_send_confirmations(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Send confirmations; a non-zero exit code signals failed sends."""
    ledger = resolve_ledger(context, args.sheet_id)
    users = core_logic.get_users(context, core_logic.get_users_with_orders(context, ledger))
    failed = notifications.send_confirmation_emails(
        notifications.create_ses_client(context.settings.email),
        context.settings.email,
        users,
        core_logic.get_locations(context),
    )
    print(f"Sent {len(users) - len(failed)} of {len(users)} confirmations.")
    for email in failed:
        print(f"[FAILED] {email}")
    return 1 if failed else 0


def run_serve(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    import uvicorn

    from .api import build_app

    uvicorn.run(build_app(context), host=args.host, port=args.port)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (core_logic.BusinessRuleViolation, core_logic.MalformedLedgerError)):
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
        if exit_code == 0 and getattr(args, "persist", False):
            persist_workbook(context)
        return exit_code
    except (data_manager.SheetExistsError, data_manager.SheetNotFoundError) as error:
        log.error("%s", error)
        return 2
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
