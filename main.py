"""
Command line entry point for the budget ledger.

Each command opens the ledger, performs one intent and prints the resulting
view-models as tables:
1. Loads configuration and sets up logging
2. Opens storage and loads categories, transactions and the budget
3. Runs the requested command
4. Closes storage
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from tabulate import tabulate

from config_manager import load_config
from exceptions import FinanceAppError
from financial_app import BudgetApp
from transaction_store import ALL_CATEGORIES, DateRange
from utils import resolve_log_path

# Configure module-level logger
logger = logging.getLogger(__name__)

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: dict) -> None:
    """
    Configure logging based on config settings.

    Args:
        config: Configuration dictionary with logging settings
    """
    log_config = config.get("logging", {}) or {}
    level_name = str(log_config.get("level") or "INFO").upper()
    log_level = getattr(logging, level_name, None)
    log_format = log_config.get("format") or DEFAULT_FORMAT
    log_file = log_config.get("file")

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    file_error: Optional[OSError] = None
    if log_file:
        try:
            handlers.append(logging.FileHandler(resolve_log_path(log_file)))
        except OSError as exc:
            file_error = exc

    invalid_level = not isinstance(log_level, int)
    logging.basicConfig(
        level=logging.INFO if invalid_level else log_level,
        format=log_format,
        handlers=handlers,
        force=True
    )
    if invalid_level:
        logger.warning(f"Invalid log level '{level_name}'; defaulting to INFO")
    if file_error is not None:
        logger.warning(f"Unable to open log file '{log_file}': {file_error}; logging to console only")


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        description="Personal budget ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Transaction commands
    tx_parser = subparsers.add_parser("tx", help="Record and list transactions")
    tx_subparsers = tx_parser.add_subparsers(dest="tx_action", help="Transaction actions")

    tx_add = tx_subparsers.add_parser("add", help="Add a transaction")
    tx_add.add_argument("--description", "-d", required=True, help="What the money was spent on")
    tx_add.add_argument("--amount", "-a", required=True, help="Amount spent")
    tx_add.add_argument("--category", help="Category name (defaults to the first category)")
    tx_add.add_argument("--date", help="ISO date (defaults to now)")

    tx_edit = tx_subparsers.add_parser("edit", help="Edit a transaction")
    tx_edit.add_argument("--id", type=int, required=True, help="Transaction ID")
    tx_edit.add_argument("--description", "-d", help="New description")
    tx_edit.add_argument("--amount", "-a", help="New amount")
    tx_edit.add_argument("--category", help="New category name")
    tx_edit.add_argument("--date", help="New ISO date")

    tx_delete = tx_subparsers.add_parser("delete", help="Delete a transaction")
    tx_delete.add_argument("--id", type=int, required=True, help="Transaction ID")

    tx_list = tx_subparsers.add_parser("list", help="List transactions")
    tx_list.add_argument("--category", default=ALL_CATEGORIES, help="Category name or 'All'")
    tx_list.add_argument(
        "--range",
        default=DateRange.MONTH.value,
        choices=[value.value for value in DateRange],
        help="Date window (default: month)"
    )

    # Category commands
    cat_parser = subparsers.add_parser("category", aliases=["cat"], help="Manage categories")
    cat_subparsers = cat_parser.add_subparsers(dest="category_action", help="Category actions")
    cat_subparsers.add_parser("list", help="List categories")

    cat_add = cat_subparsers.add_parser("add", help="Add a custom category")
    cat_add.add_argument("--name", "-n", required=True, help="Category name")

    cat_remove = cat_subparsers.add_parser("remove", help="Remove a category")
    cat_remove.add_argument("--id", required=True, help="Category ID")

    cat_reorder = cat_subparsers.add_parser("reorder", help="Move a category to a new position")
    cat_reorder.add_argument("--id", required=True, help="Category ID")
    cat_reorder.add_argument("--index", type=int, required=True, help="New position (0-based)")

    # Allocation command
    allocate_parser = subparsers.add_parser("allocate", help="Set a category allocation")
    allocate_parser.add_argument("--id", required=True, help="Category ID")
    allocate_parser.add_argument("--amount", "-a", required=True, help="Whole-number allocation")

    # Budget commands
    budget_parser = subparsers.add_parser("budget", aliases=["bud"], help="Income and pay period")
    budget_subparsers = budget_parser.add_subparsers(dest="budget_action", help="Budget actions")
    budget_subparsers.add_parser("show", help="Show budget summary and suggestions")

    bud_set = budget_subparsers.add_parser("set", help="Set income and pay period")
    bud_set.add_argument("--income", required=True, help="Income per pay period")
    bud_set.add_argument("--period", choices=["monthly", "biweekly"], help="Pay period")

    subparsers.add_parser("reconcile", help="Recompute category spent totals from transactions")

    return parser


def _print_transactions(rows: List[Dict[str, Any]]) -> None:
    if not rows:
        print("No transactions found.")
        return
    table = [
        [row["id"], row["date"], row["description"], row["category"], f"${row['amount']:,.2f}"]
        for row in rows
    ]
    print(tabulate(table, headers=["ID", "Date", "Description", "Category", "Amount"], tablefmt="grid"))


def _print_categories(app: BudgetApp) -> None:
    categories = app.views.categories
    if not categories:
        print("No categories found.")
        return
    table = [
        [c.order, c.id, c.name, c.type.value, f"${c.allocated:,.2f}", f"${c.spent:,.2f}"]
        for c in categories
    ]
    print(tabulate(
        table,
        headers=["Order", "ID", "Name", "Type", "Allocated", "Spent"],
        tablefmt="grid"
    ))


def _print_budget(app: BudgetApp) -> None:
    views = app.views
    print(tabulate(
        [
            ["Income", f"${views.income:,.2f} ({views.pay_period})"],
            ["Allocated", f"${views.income - views.remaining:,.2f}"],
            ["Remaining", f"${views.remaining:,.2f}"],
            ["Unspent", f"${views.unspent:,.2f}"],
        ],
        tablefmt="simple"
    ))
    if views.category_breakdown:
        print("\nSpending by category:")
        print(tabulate(
            [[row["category"], f"${row['amount']:,.2f}"] for row in views.category_breakdown],
            headers=["Category", "Spent"],
            tablefmt="simple"
        ))
    for name in views.allocation_warnings:
        print(f"Warning: '{name}' is allocated more than "
              f"{app.planner.allocation_warning_ratio:.0%} of income")
    for suggestion in views.suggestions:
        print(f"Suggestion: {suggestion}")


async def handle_tx_command(args: argparse.Namespace, app: BudgetApp) -> int:
    """Handle the tx command."""
    if args.tx_action == "add":
        tx = await app.add_transaction({
            "description": args.description,
            "amount": args.amount,
            "category": args.category,
            "date": args.date,
        })
        print(f"Added transaction {tx.id}: {tx.description} ${tx.amount:,.2f} ({tx.category})")
    elif args.tx_action == "edit":
        current = app.store.get(args.id)
        entry = current.to_record()
        for key in ("description", "amount", "category", "date"):
            value = getattr(args, key)
            if value is not None:
                entry[key] = value
        tx = await app.edit_transaction(entry)
        print(f"Updated transaction {tx.id}: {tx.description} ${tx.amount:,.2f} ({tx.category})")
    elif args.tx_action == "delete":
        tx = await app.delete_transaction(args.id)
        print(f"Deleted transaction {tx.id}")
    elif args.tx_action == "list":
        await app.set_category_filter(args.category)
        await app.set_date_range(args.range)
        _print_transactions(app.views.transactions)
    else:
        print("Invalid transaction action", file=sys.stderr)
        return 1
    return 0


async def handle_category_command(args: argparse.Namespace, app: BudgetApp) -> int:
    """Handle the category command."""
    if args.category_action == "list":
        _print_categories(app)
    elif args.category_action == "add":
        category = await app.add_category(args.name)
        print(f"Created category '{category.name}' ({category.id})")
    elif args.category_action == "remove":
        category = await app.remove_category(args.id)
        print(f"Removed category '{category.name}'")
    elif args.category_action == "reorder":
        await app.reorder_category(args.id, args.index)
        _print_categories(app)
    else:
        print("Invalid category action", file=sys.stderr)
        return 1
    return 0


async def handle_allocate_command(args: argparse.Namespace, app: BudgetApp) -> int:
    """Handle the allocate command."""
    task = await app.set_allocation(args.id, args.amount)
    result = await task
    category = app.ledger.get(args.id)
    if not result.ok:
        print(f"Allocation for '{category.name}' was not saved: {result.error}", file=sys.stderr)
        return 1
    print(f"Allocated ${category.allocated:,.2f} to '{category.name}'")
    print(f"Remaining: ${app.views.remaining:,.2f}")
    return 0


async def handle_budget_command(args: argparse.Namespace, app: BudgetApp) -> int:
    """Handle the budget command."""
    if args.budget_action == "show":
        _print_budget(app)
    elif args.budget_action == "set":
        await app.stage_income(args.income)
        if args.period:
            await app.stage_pay_period(args.period)
        budget = await app.commit_budget()
        print(f"Saved income ${budget.income:,.2f} ({budget.pay_period.value})")
        _print_budget(app)
    else:
        print("Invalid budget action", file=sys.stderr)
        return 1
    return 0


async def handle_reconcile_command(args: argparse.Namespace, app: BudgetApp) -> int:
    """Handle the reconcile command."""
    totals = await app.reconcile()
    print(tabulate(
        [[name, f"${spent:,.2f}"] for name, spent in totals.items()],
        headers=["Category", "Spent"],
        tablefmt="grid"
    ))
    return 0


COMMAND_HANDLERS = {
    "tx": handle_tx_command,
    "category": handle_category_command,
    "cat": handle_category_command,
    "allocate": handle_allocate_command,
    "budget": handle_budget_command,
    "bud": handle_budget_command,
    "reconcile": handle_reconcile_command,
}


async def run_command(args: argparse.Namespace, config: dict) -> int:
    """Open the ledger, run one command and close it again."""
    app = await BudgetApp.open(config)
    try:
        return await COMMAND_HANDLERS[args.command](args, app)
    finally:
        await app.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle case where no command is provided
    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config(Path(args.config))
    except FinanceAppError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    setup_logging(config)

    try:
        return asyncio.run(run_command(args, config))
    except FinanceAppError as e:
        logger.error(f"Command failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
