"""Flask REST API exposing the Foresight services."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from foresight.budgets import BUCKET_EXAMPLES, CATEGORY_COLORS, validate_budget_percentages
from foresight.config import Settings
from foresight.currency import SUPPORTED_CURRENCIES, ExchangeRateService, format_currency
from foresight.exceptions import (
    AuthenticationError,
    PersistenceError,
    RecordNotFoundError,
    ValidationError,
)
from foresight.income import IncomeCalculator
from foresight.insights import InsightsService
from foresight.market_data import MarketDataService
from foresight.price_cache import PriceCacheManager, PriceCacheStore
from foresight.services import (
    BucketService,
    BudgetService,
    ExpenseService,
    IncomeSourceService,
    InvestmentService,
    LoanService,
    OneTimeIncomeService,
    PotService,
    ProfileService,
    UserScopedService,
)
from foresight.storage import JSONStorage
from foresight.validators import parse_decimal, validate_int


def create_app(
    data_dir: Optional[Path] = None,
    *,
    settings: Optional[Settings] = None,
    market_data: Optional[MarketDataService] = None,
    exchange_rates: Optional[ExchangeRateService] = None,
) -> Flask:
    settings = settings or Settings.from_env()
    app = Flask(__name__)
    app.logger.setLevel(settings.log_level)

    if settings.is_dev:
        CORS(app, resources={r"/api/*": {"origins": "*"}}, supports_credentials=True)
    elif settings.allowed_origins:
        CORS(app, resources={r"/api/*": {"origins": settings.allowed_origins}}, supports_credentials=True)
    else:
        CORS(app)

    storage = JSONStorage(Path(data_dir or settings.data_dir))
    profiles = ProfileService(storage)
    income_sources = IncomeSourceService(storage)
    one_time_incomes = OneTimeIncomeService(storage)
    expenses = ExpenseService(storage)
    investments = InvestmentService(storage)
    loans = LoanService(storage)
    pots = PotService(storage)
    buckets = BucketService(storage)
    budgets = BudgetService(storage)

    cache_store = PriceCacheStore(storage)
    market_data = market_data or MarketDataService.from_keys(
        settings.finnhub_api_key, settings.alpha_vantage_api_key, cache_store
    )
    exchange_rates = exchange_rates or ExchangeRateService(settings.exchange_rate_api_key)
    cache_manager = PriceCacheManager(
        storage, cache_store, market_data, investments, ttl_minutes=settings.price_ttl_minutes
    )
    income_calculator = IncomeCalculator(exchange_rates)
    insights = InsightsService(
        profiles,
        income_sources,
        one_time_incomes,
        expenses,
        investments,
        budgets,
        exchange_rates,
        market_data,
    )

    def _success(payload: Any, status: int = 200):
        if status == 204:
            return ("", status)
        return jsonify(payload), status

    def _handle_error(exc: Exception, status: int, message: str):
        app.logger.error("%s: %s", message, exc)
        return jsonify({"error": message, "details": str(exc)}), status

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError):
        return _handle_error(exc, 400, "Validation error")

    @app.errorhandler(AuthenticationError)
    def handle_authentication_error(exc: AuthenticationError):
        return _handle_error(exc, 401, "Unauthorized")

    @app.errorhandler(RecordNotFoundError)
    def handle_not_found(exc: RecordNotFoundError):
        return _handle_error(exc, 404, "Record not found")

    @app.errorhandler(PersistenceError)
    def handle_persistence_error(exc: PersistenceError):
        return _handle_error(exc, 500, "Persistence error")

    def _current_user() -> str:
        user_id = (request.headers.get(settings.user_header) or "").strip()
        if not user_id:
            raise AuthenticationError("Authentication required")
        return user_id

    def _json_body() -> Dict[str, Any]:
        if not request.is_json:
            raise ValidationError("Request content must be application/json")
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Malformed JSON body")
        return data

    def _clean_filters(raw: Dict[str, Optional[str]]) -> Dict[str, str]:
        return {k: v for k, v in raw.items() if v not in (None, "")}

    def _register_collection(name: str, service: UserScopedService) -> None:
        """List/create/read/update/delete routes for one user-scoped collection."""
        endpoint = name.replace("-", "_")

        def list_records():
            user_id = _current_user()
            filters = service.check_filters(_clean_filters(request.args.to_dict()))
            records = service.list(user_id, **filters)
            payload: Dict[str, Any] = {"items": [record.to_dict() for record in records]}
            if isinstance(service, ExpenseService):
                payload["total"] = f"{service.total(user_id, **filters):.2f}"
            return _success(payload)

        def create_record():
            user_id = _current_user()
            record = service.add(user_id, _json_body())
            return _success(record.to_dict(), 201)

        def get_record(record_id: str):
            return _success(service.get(_current_user(), record_id).to_dict())

        def update_record(record_id: str):
            user_id = _current_user()
            record = service.update(user_id, record_id, _json_body())
            return _success(record.to_dict())

        def delete_record(record_id: str):
            service.delete(_current_user(), record_id)
            return _success({}, 204)

        app.add_url_rule(f"/api/{name}", f"list_{endpoint}", list_records, methods=["GET"])
        app.add_url_rule(f"/api/{name}", f"create_{endpoint}", create_record, methods=["POST"])
        app.add_url_rule(f"/api/{name}/<record_id>", f"get_{endpoint}", get_record, methods=["GET"])
        app.add_url_rule(f"/api/{name}/<record_id>", f"update_{endpoint}", update_record, methods=["PATCH"])
        app.add_url_rule(f"/api/{name}/<record_id>", f"delete_{endpoint}", delete_record, methods=["DELETE"])

    _register_collection("income-sources", income_sources)
    _register_collection("one-time-incomes", one_time_incomes)
    _register_collection("expenses", expenses)
    _register_collection("investments", investments)
    _register_collection("loans", loans)
    _register_collection("pots", pots)
    _register_collection("buckets", buckets)

    @app.get("/api/health")
    def health():
        return _success({"status": "ok"})

    # Profile ----------------------------------------------------------------
    @app.get("/api/user/profile")
    def get_profile():
        return _success(profiles.get(_current_user()).to_dict())

    @app.patch("/api/user/profile")
    def update_profile():
        user_id = _current_user()
        profile = profiles.update(user_id, _json_body())
        return _success(profile.to_dict())

    # Prices -----------------------------------------------------------------
    @app.post("/api/investments/search-prices")
    def search_prices():
        try:
            payload = _json_body()
            prices = market_data.search_prices(payload.get("symbols"), payload.get("type"))
        except ValidationError as exc:
            app.logger.warning("Rejected price search: %s", exc)
            return jsonify({"error": str(exc)}), 400
        except Exception as exc:
            app.logger.exception("Search prices API error: %s", exc)
            return jsonify({"error": "Failed to fetch price data"}), 500
        return _success(prices)

    def _price_update_response(success: bool, message: str, status: int, data: Optional[Dict[str, Any]] = None):
        body: Dict[str, Any] = {"success": success, "message": message}
        if data is not None:
            body["data"] = data
        return jsonify(body), status

    @app.post("/api/investments/update-prices")
    def update_prices():
        try:
            user_id = _current_user()
        except AuthenticationError:
            return _price_update_response(False, "Unauthorized", 401)

        payload = request.get_json(silent=True) or {}
        symbols = payload.get("symbols") if isinstance(payload, dict) else None
        if not isinstance(symbols, dict):
            return _price_update_response(False, "Invalid request: symbols are required", 400)

        def sanitize(raw: Any):
            if not isinstance(raw, list):
                return []
            cleaned = []
            for item in raw:
                if isinstance(item, str) and item.strip() and item.strip().upper() not in cleaned:
                    cleaned.append(item.strip().upper())
            return cleaned

        stocks = sanitize(symbols.get("stocks"))
        crypto = sanitize(symbols.get("crypto"))
        if not stocks and not crypto:
            return _price_update_response(False, "No valid symbols provided", 400)

        try:
            result = cache_manager.request_update(
                user_id, stocks, crypto, force=bool(payload.get("force_update"))
            )
        except Exception as exc:
            app.logger.exception("Error in update-prices API: %s", exc)
            return _price_update_response(
                False,
                "Internal server error",
                500,
                {
                    "updated_symbols": [],
                    "failed_symbols": [],
                    "cache_hits": [],
                    "api_calls": 0,
                    "source": "cache",
                    "errors": [str(exc)],
                },
            )

        message = (
            f"Successfully updated {len(result.updated_symbols)} symbols"
            if result.success
            else "Failed to update investment prices"
        )
        return _price_update_response(result.success, message, 200 if result.success else 207, result.to_dict())

    @app.get("/api/investments/update-prices")
    def price_provider_status():
        try:
            user_id = _current_user()
        except AuthenticationError:
            return _price_update_response(False, "Unauthorized", 401)
        connections = market_data.test_connections()
        return _price_update_response(
            bool(connections["overall"]["success"]),
            "API connection status",
            200,
            {
                "connections": connections,
                "usage": market_data.usage_stats(),
                "cache": cache_manager.cache_status(user_id),
            },
        )

    @app.post("/api/investments/cache/cleanup")
    def cleanup_price_cache():
        _current_user()
        return _success(cache_manager.cleanup())

    @app.get("/api/investments/portfolio")
    def portfolio():
        return _success(insights.portfolio(_current_user()))

    # Pots, buckets, loans ---------------------------------------------------
    @app.post("/api/pots/<pot_id>/contributions")
    def contribute_to_pot(pot_id: str):
        user_id = _current_user()
        payload = _json_body()
        pot = pots.contribute(user_id, pot_id, payload.get("category_id"), payload.get("amount"))
        return _success(pot.to_dict())

    @app.post("/api/buckets/renew")
    def renew_buckets():
        user_id = _current_user()
        renewed = buckets.renew_due(user_id, budgets.find(user_id))
        return _success({"items": [bucket.to_dict() for bucket in renewed]})

    @app.get("/api/loans/<loan_id>/schedule")
    def loan_schedule(loan_id: str):
        loan = loans.get(_current_user(), loan_id)
        return _success(loans.schedule(loan).to_dict())

    # Budgets ----------------------------------------------------------------
    def _warnings(categories: Dict[str, Dict[str, Any]]):
        return validate_budget_percentages(
            {name: values["percentage"] for name, values in categories.items()}
        )

    @app.get("/api/budgets/allocation")
    def get_budget_allocation():
        return _success(budgets.get(_current_user()).to_dict())

    @app.put("/api/budgets/allocation")
    def save_budget_allocation():
        user_id = _current_user()
        allocation = budgets.save(user_id, _json_body())
        return _success({"allocation": allocation.to_dict(), "warnings": _warnings(allocation.categories)})

    @app.post("/api/budgets/calculate")
    def calculate_budget():
        _current_user()
        calculation = budgets.calculate(_json_body())
        return _success({**calculation.to_dict(), "warnings": _warnings(calculation.categories)})

    @app.post("/api/budgets/income-increase")
    def budget_income_increase():
        user_id = _current_user()
        payload = _json_body()
        allocation = budgets.increase_income(user_id, payload.get("additional_income"))
        return _success(allocation.to_dict())

    @app.get("/api/budgets/bucket-examples")
    def bucket_examples():
        return _success({"examples": BUCKET_EXAMPLES, "colors": CATEGORY_COLORS})

    # Aggregates -------------------------------------------------------------
    @app.get("/api/income/summary")
    def income_summary():
        user_id = _current_user()
        summary = income_calculator.summarize(
            income_sources.list(user_id),
            one_time_incomes.list(user_id),
            profiles.get(user_id).primary_currency,
        )
        return _success(summary.to_dict())

    @app.get("/api/insights/overview")
    def insights_overview():
        return _success(insights.overview(_current_user()))

    @app.get("/api/insights/cashflow")
    def insights_cashflow():
        user_id = _current_user()
        months = validate_int(request.args.get("months", 6), "months")
        if months > 24:
            raise ValidationError("months must be at most 24")
        return _success(insights.cashflow(user_id, months))

    # Currencies -------------------------------------------------------------
    @app.get("/api/currencies")
    def list_currencies():
        return _success(
            {
                "items": [
                    {"code": c.code, "name": c.name, "symbol": c.symbol, "decimals": c.decimals}
                    for c in SUPPORTED_CURRENCIES
                ]
            }
        )

    @app.get("/api/currencies/convert")
    def convert_currency():
        amount = parse_decimal(request.args.get("amount"), "amount")
        source = (request.args.get("from") or "").strip().upper()
        target = (request.args.get("to") or "").strip().upper()
        conversion = exchange_rates.convert(amount, source, target)
        return _success(
            {**conversion.to_dict(), "formatted": format_currency(conversion.converted_amount, target)}
        )

    return app
