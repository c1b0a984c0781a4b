import pytest

from foresight_cli.cli import main


@pytest.fixture
def run(tmp_path, monkeypatch):
    monkeypatch.delenv("FINNHUB_API_KEY", raising=False)
    monkeypatch.delenv("ALPHA_VANTAGE_API_KEY", raising=False)

    def _run(*args):
        return main(["--data-dir", str(tmp_path), "--user", "alice", *args])

    return _run


def test_budget_calculate(run, capsys):
    assert run("budget", "calculate", "5000", "20", "--savings", "5") == 0

    out = capsys.readouterr().out
    assert "Net income: $4,000.00" in out
    assert "savingsFuture" in out
    assert "Warning: Savings allocation below 10%" in out


def test_expense_add_and_list(run, capsys):
    assert run("expense", "add", "12.5", "usd", "groceries", "2024-06-01", "--description", "Market") == 0
    assert run("expense", "add", "900", "USD", "rent", "2024-06-02") == 0
    capsys.readouterr()

    assert run("expense", "list", "--category", "groceries") == 0
    out = capsys.readouterr().out
    assert "Found 1 expenses (total 12.50):" in out
    assert "Description: Market" in out


def test_expense_validation_error(run, capsys):
    assert run("expense", "add", "10", "US", "rent", "2024-06-01") == 1
    assert "Validation error" in capsys.readouterr().err


def test_invalid_amount_is_rejected_by_parser(run):
    with pytest.raises(SystemExit) as excinfo:
        run("expense", "add", "-4", "USD", "rent", "2024-06-01")
    assert excinfo.value.code == 2


def test_income_add_and_list(run, capsys):
    assert run("income", "add", "4000", "EUR", "salary", "Day job", "monthly", "2024-01-01") == 0
    assert run("income", "add", "500", "EUR", "rental", "Flat", "monthly", "2024-01-01", "--inactive") == 0
    capsys.readouterr()

    assert run("income", "list", "--active", "true") == 0
    out = capsys.readouterr().out
    assert "Found 1 income sources:" in out
    assert "Day job (salary, active)" in out


def test_profile_currency(run, capsys):
    assert run("profile", "set-currency", "gbp") == 0
    assert run("profile", "show") == 0
    out = capsys.readouterr().out
    assert "Primary currency set to GBP" in out
    assert "Primary currency: GBP" in out

    assert run("profile", "set-currency", "XYZ") == 1


def test_crypto_price_search_falls_back_to_mock_prices(run, capsys):
    assert run("prices", "search", "btc", "--type", "crypto") == 0
    out = capsys.readouterr().out
    assert "BTC" in out
    assert "43,250.0000" in out


def test_stock_price_search_without_providers(run, capsys):
    assert run("prices", "search", "AAPL") == 0
    assert "No price data available." in capsys.readouterr().out
