"""Core business logic package for the Foresight finance dashboard."""

from .models import (
    BudgetAllocation,
    Bucket,
    Expense,
    IncomeSource,
    Investment,
    Loan,
    OneTimeIncome,
    Pot,
    UserProfile,
)
from .services import (
    BucketService,
    BudgetService,
    ExpenseService,
    IncomeSourceService,
    InvestmentService,
    LoanService,
    OneTimeIncomeService,
    PotService,
    ProfileService,
)
from .storage import JSONStorage
from .exceptions import (
    AuthenticationError,
    MarketDataError,
    PersistenceError,
    RecordNotFoundError,
    ValidationError,
)

__all__ = [
    "BudgetAllocation",
    "Bucket",
    "Expense",
    "IncomeSource",
    "Investment",
    "Loan",
    "OneTimeIncome",
    "Pot",
    "UserProfile",
    "BucketService",
    "BudgetService",
    "ExpenseService",
    "IncomeSourceService",
    "InvestmentService",
    "LoanService",
    "OneTimeIncomeService",
    "PotService",
    "ProfileService",
    "JSONStorage",
    "AuthenticationError",
    "MarketDataError",
    "PersistenceError",
    "RecordNotFoundError",
    "ValidationError",
]
