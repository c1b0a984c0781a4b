"""Console interface for Foresight."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

from foresight.budgets import calculate_budget_allocation, format_budget_amount, validate_budget_percentages
from foresight.config import Settings
from foresight.exceptions import PersistenceError, RecordNotFoundError, ValidationError
from foresight.market_data import MarketDataService
from foresight.price_cache import PriceCacheStore
from foresight.services import ExpenseService, IncomeSourceService, ProfileService
from foresight.storage import JSONStorage
from foresight.validators import EXPENSE_CATEGORIES, INCOME_FREQUENCIES, INCOME_SOURCE_TYPES, PRICE_TYPES

DEFAULT_USER = "local"


def _parse_amount(value: str) -> str:
    try:
        amount = Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError("Amount must be a numeric value") from exc
    if amount <= 0:
        raise argparse.ArgumentTypeError("Amount must be greater than zero")
    return value


def _parse_percentage(value: str) -> Decimal:
    try:
        percentage = Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError("Percentage must be a numeric value") from exc
    if not 0 <= percentage <= 100:
        raise argparse.ArgumentTypeError("Percentage must be between 0 and 100")
    return percentage


def _format_expense(expense: Dict[str, Any]) -> str:
    recurring = expense.get("recurring_frequency") or "no"
    return (
        f"[{expense['id']}] {expense['date']} {expense['currency']} {expense['amount']}\n"
        f"  Category: {expense['category']} | Subcategory: {expense.get('subcategory') or '-'}"
        f" | Recurring: {recurring}\n"
        f"  Description: {expense.get('description') or '-'}\n"
    )


def _format_income(source: Dict[str, Any]) -> str:
    status = "active" if source["is_active"] else "inactive"
    return (
        f"[{source['id']}] {source['name']} ({source['type']}, {status})\n"
        f"  {source['currency']} {source['amount']} {source['frequency']} since {source['start_date']}\n"
    )


def handle_budget(args: argparse.Namespace) -> None:
    custom = {
        "essentials": args.essentials,
        "lifestyle": args.lifestyle,
        "savingsFuture": args.savings,
        "sinkingFund": args.sinking,
    }
    custom = {k: v for k, v in custom.items() if v is not None}
    calculation = calculate_budget_allocation(Decimal(args.gross_income), args.tax_rate, custom)
    print(f"Gross income: {format_budget_amount(calculation.gross_income, args.currency)}")
    print(f"Tax: {format_budget_amount(calculation.tax_amount, args.currency)}")
    print(f"Net income: {format_budget_amount(calculation.net_income, args.currency)}")
    for name, values in calculation.categories.items():
        amount = format_budget_amount(values["amount"], args.currency)
        print(f"  {name:<14} {values['percentage']:>6}%  {amount}")
    percentages = {name: values["percentage"] for name, values in calculation.categories.items()}
    for warning in validate_budget_percentages(percentages):
        print(f"Warning: {warning}")


def handle_prices(args: argparse.Namespace, market_data: MarketDataService) -> None:
    prices = market_data.search_prices(args.symbols, args.type)
    if not prices:
        print("No price data available.")
        return
    for symbol, quote in prices.items():
        print(f"{symbol:<8} {quote['price']:>12,.4f}  {quote['change']:+.2f} ({quote['change_percent']:+.2f}%)")


def handle_expense(args: argparse.Namespace, service: ExpenseService) -> None:
    if args.command == "add":
        payload = {
            "amount": args.amount,
            "currency": args.currency,
            "category": args.category,
            "date": args.date,
            "description": args.description,
            "subcategory": args.subcategory,
            "is_recurring": args.recurring is not None,
            "recurring_frequency": args.recurring,
            "bucket_id": args.bucket,
        }
        expense = service.add(args.user, payload)
        print("Expense added:\n" + _format_expense(expense.to_dict()))
    elif args.command == "list":
        filters = {
            "category": args.category,
            "bucket_id": args.bucket,
            "start": args.start,
            "end": args.end,
        }
        applied = {k: v for k, v in filters.items() if v is not None}
        expenses = service.list(args.user, **applied)
        if not expenses:
            print("No expenses found.")
            return
        total = service.total(args.user, **applied)
        print(f"Found {len(expenses)} expenses (total {total:.2f}):")
        for expense in expenses:
            print(_format_expense(expense.to_dict()))


def handle_income(args: argparse.Namespace, service: IncomeSourceService) -> None:
    if args.command == "add":
        payload = {
            "amount": args.amount,
            "currency": args.currency,
            "type": args.type,
            "name": args.name,
            "frequency": args.frequency,
            "start_date": args.start_date,
            "is_active": not args.inactive,
        }
        source = service.add(args.user, payload)
        print("Income source added:\n" + _format_income(source.to_dict()))
    elif args.command == "list":
        filters = {"type": args.type, "is_active": args.active}
        sources = service.list(args.user, **{k: v for k, v in filters.items() if v is not None})
        if not sources:
            print("No income sources found.")
            return
        print(f"Found {len(sources)} income sources:")
        for source in sources:
            print(_format_income(source.to_dict()))


def handle_profile(args: argparse.Namespace, service: ProfileService) -> None:
    if args.command == "set-currency":
        profile = service.update(args.user, {"primary_currency": args.currency})
        print(f"Primary currency set to {profile.primary_currency}")
        return
    profile = service.get(args.user).to_dict()
    print(f"User: {profile['id']}")
    print(f"Primary currency: {profile['primary_currency']}")
    for key, value in sorted(profile["preferences"].items()):
        print(f"  {key}: {value}")


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Foresight personal finance CLI")
    parser.add_argument(
        "--data-dir",
        default=settings.data_dir,
        type=Path,
        help=f"Directory to store JSON data (default: {settings.data_dir})",
    )
    parser.add_argument(
        "--user",
        default=os.getenv("FORESIGHT_USER", DEFAULT_USER),
        help="User id that owns the records (default: $FORESIGHT_USER or 'local')",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="entity", required=True)

    budget_parser = subparsers.add_parser("budget", help="Budget allocation tools")
    budget_sub = budget_parser.add_subparsers(dest="command", required=True)
    budget_calc = budget_sub.add_parser("calculate", help="Split income across budget categories")
    budget_calc.add_argument("gross_income", type=_parse_amount)
    budget_calc.add_argument("tax_rate", type=_parse_percentage)
    budget_calc.add_argument("--currency", default="USD")
    budget_calc.add_argument("--essentials", type=_parse_percentage)
    budget_calc.add_argument("--lifestyle", type=_parse_percentage)
    budget_calc.add_argument("--savings", type=_parse_percentage)
    budget_calc.add_argument("--sinking", type=_parse_percentage)

    prices_parser = subparsers.add_parser("prices", help="Look up market prices")
    prices_sub = prices_parser.add_subparsers(dest="command", required=True)
    prices_search = prices_sub.add_parser("search", help="Search current prices")
    prices_search.add_argument("symbols", nargs="+")
    prices_search.add_argument("--type", choices=sorted(PRICE_TYPES), default="stock")

    expense_parser = subparsers.add_parser("expense", help="Manage expenses")
    expense_sub = expense_parser.add_subparsers(dest="command", required=True)

    expense_add = expense_sub.add_parser("add", help="Add a new expense")
    expense_add.add_argument("amount", type=_parse_amount)
    expense_add.add_argument("currency")
    expense_add.add_argument("category", choices=sorted(EXPENSE_CATEGORIES))
    expense_add.add_argument("date", help="ISO 8601 date or datetime")
    expense_add.add_argument("--description")
    expense_add.add_argument("--subcategory")
    expense_add.add_argument("--recurring", metavar="FREQUENCY")
    expense_add.add_argument("--bucket")

    expense_list = expense_sub.add_parser("list", help="List expenses")
    expense_list.add_argument("--category")
    expense_list.add_argument("--bucket")
    expense_list.add_argument("--start")
    expense_list.add_argument("--end")

    income_parser = subparsers.add_parser("income", help="Manage recurring income sources")
    income_sub = income_parser.add_subparsers(dest="command", required=True)

    income_add = income_sub.add_parser("add", help="Add an income source")
    income_add.add_argument("amount", type=_parse_amount)
    income_add.add_argument("currency")
    income_add.add_argument("type", choices=sorted(INCOME_SOURCE_TYPES))
    income_add.add_argument("name")
    income_add.add_argument("frequency", choices=sorted(INCOME_FREQUENCIES))
    income_add.add_argument("start_date", help="ISO 8601 date or datetime")
    income_add.add_argument("--inactive", action="store_true")

    income_list = income_sub.add_parser("list", help="List income sources")
    income_list.add_argument("--type")
    income_list.add_argument("--active", choices=["true", "false"])

    profile_parser = subparsers.add_parser("profile", help="Show or change the user profile")
    profile_sub = profile_parser.add_subparsers(dest="command", required=True)
    profile_sub.add_parser("show", help="Show the profile")
    profile_currency = profile_sub.add_parser("set-currency", help="Change the primary currency")
    profile_currency.add_argument("currency")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    settings = Settings.from_env()
    parser = build_parser(settings)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        storage = JSONStorage(args.data_dir)
        if args.entity == "budget":
            handle_budget(args)
        elif args.entity == "prices":
            market_data = MarketDataService.from_keys(
                settings.finnhub_api_key, settings.alpha_vantage_api_key, PriceCacheStore(storage)
            )
            handle_prices(args, market_data)
        elif args.entity == "expense":
            handle_expense(args, ExpenseService(storage))
        elif args.entity == "income":
            handle_income(args, IncomeSourceService(storage))
        elif args.entity == "profile":
            handle_profile(args, ProfileService(storage))
        else:  # pragma: no cover - argparse should prevent this
            parser.error(f"Unknown entity: {args.entity}")
            return 2
    except ValidationError as exc:
        print(f"Validation error: {exc}", file=sys.stderr)
        return 1
    except RecordNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except PersistenceError as exc:
        print(f"Storage error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
