from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from functools import lru_cache
from typing import Iterable, List, Mapping, Optional, Sequence, Union

from backend.periods import (
    day_before,
    inclusive_days,
    month_bounds,
    month_key,
    shift_month,
    year_bounds,
)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
DAYS_PER_YEAR = Decimal("365.25")
MAIN_BUDGET_SHARE = Decimal("0.8")

ALL = "all"
CATEGORY_SEPARATOR = " - "
OTHERS_LABEL = "Autres"
REVENUE_TOP_N = 7
FALLBACK_MAX_CATEGORIES = 7
FALLBACK_TOP_N = 6

YearOrAll = Union[int, str]


class TransactionType(str, Enum):
    REVENUE = "Revenu"
    EXPENSE = "Dépense"
    OUTFLOW = "Sorties"


class InvalidTransactionError(ValueError):
    """Raised when a transaction breaks the engine's arithmetic invariants."""


@dataclass(frozen=True)
class Transaction:
    date: date
    description: str
    amount: Decimal
    type: TransactionType
    account: str = ""

    def __post_init__(self) -> None:
        if isinstance(self.date, datetime):
            object.__setattr__(self, "date", self.date.date())
        if self.amount is not None:
            object.__setattr__(self, "amount", _coerce_amount(self.amount))
        if not isinstance(self.type, TransactionType):
            try:
                object.__setattr__(self, "type", TransactionType(self.type))
            except ValueError as exc:
                raise InvalidTransactionError(
                    f"Unsupported transaction type: {self.type}"
                ) from exc


@dataclass(frozen=True)
class DateRange:
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def __post_init__(self) -> None:
        if isinstance(self.start_date, datetime):
            object.__setattr__(self, "start_date", self.start_date.date())
        if isinstance(self.end_date, datetime):
            object.__setattr__(self, "end_date", self.end_date.date())

    @property
    def is_active(self) -> bool:
        return self.start_date is not None or self.end_date is not None


@dataclass(frozen=True)
class FilterState:
    """Active dashboard filter.

    A date range with either bound set overrides year and month.
    """

    year: YearOrAll = ALL
    month: YearOrAll = ALL
    date_range: DateRange = field(default_factory=DateRange)

    @classmethod
    def default(cls, today: Optional[date] = None) -> "FilterState":
        today = today or date.today()
        return cls(year=today.year)


@dataclass(frozen=True)
class PeriodBounds:
    start_date: Optional[date]
    end_date: Optional[date]

    @property
    def is_resolved(self) -> bool:
        return self.start_date is not None and self.end_date is not None


@dataclass(frozen=True)
class FilterPeriod:
    days: int
    start_date: Optional[date] = None
    end_date: Optional[date] = None


@dataclass(frozen=True)
class PeriodTotals:
    total_revenue: Decimal
    total_expenses: Decimal
    total_savings: Decimal


@dataclass(frozen=True)
class Kpis:
    total_revenue: Decimal
    total_expenses: Decimal
    total_savings: Decimal
    net_balance: Decimal
    savings_rate: Decimal


@dataclass(frozen=True)
class MonthlyRecord:
    name: str
    revenus: Decimal
    depenses: Decimal
    epargne: Decimal


@dataclass(frozen=True)
class CategoryPoint:
    name: str
    value: Decimal


@dataclass(frozen=True)
class BudgetRow:
    category: str
    actual_amount: Decimal
    prorated_budget: Decimal
    difference: Decimal


@dataclass(frozen=True)
class FinanceView:
    filtered_transactions: tuple[Transaction, ...]
    kpis: Kpis
    previous_kpis: PeriodTotals
    monthly_chart_data: tuple[MonthlyRecord, ...]
    category_chart_data: tuple[CategoryPoint, ...]
    revenue_by_category_data: tuple[CategoryPoint, ...]
    savings_distribution_data: tuple[CategoryPoint, ...]
    expense_summary_data: tuple[BudgetRow, ...]
    filter_period: FilterPeriod
    expense_categories: tuple[str, ...]
    revenue_categories: tuple[str, ...]
    savings_categories: tuple[str, ...]
    available_years: tuple[int, ...]


def category_key(description: str) -> str:
    return description.split(CATEGORY_SEPARATOR)[0] or description


def filter_transactions(
    transactions: Iterable[Transaction],
    filters: FilterState,
) -> List[Transaction]:
    date_range = filters.date_range
    if date_range.is_active:
        matches = [txn for txn in transactions if _in_date_range(txn.date, date_range)]
    else:
        matches = [
            txn
            for txn in transactions
            if _matches_year_month(txn.date, filters.year, filters.month)
        ]
    return sorted(matches, key=lambda txn: txn.date, reverse=True)


def period_bounds(transactions: Sequence[Transaction]) -> PeriodBounds:
    if not transactions:
        return PeriodBounds(start_date=None, end_date=None)
    dates = [txn.date for txn in transactions]
    return PeriodBounds(start_date=min(dates), end_date=max(dates))


def filter_period_days(bounds: PeriodBounds) -> int:
    if not bounds.is_resolved:
        return 0
    return inclusive_days(bounds.start_date, bounds.end_date)


def compute_kpis(transactions: Iterable[Transaction]) -> Kpis:
    totals = _period_totals(transactions)
    net_balance = totals.total_revenue - totals.total_expenses - totals.total_savings
    savings_rate = ZERO
    if totals.total_revenue > ZERO:
        savings_rate = (totals.total_savings / totals.total_revenue) * HUNDRED
    return Kpis(
        total_revenue=totals.total_revenue,
        total_expenses=totals.total_expenses,
        total_savings=totals.total_savings,
        net_balance=net_balance,
        savings_rate=savings_rate,
    )


def previous_period(filters: FilterState, current: PeriodBounds) -> Optional[PeriodBounds]:
    """Infer the comparison window from the kind of filter that is active.

    A custom range maps to the window of the same length ending the day before
    the current one, a year+month to the previous calendar month and a year
    alone to the previous calendar year. Month without year has no baseline.
    """
    year_selected = not _is_all(filters.year)
    month_selected = not _is_all(filters.month)

    if filters.date_range.is_active and current.is_resolved:
        duration = current.end_date - current.start_date
        previous_end = day_before(current.start_date)
        return PeriodBounds(start_date=previous_end - duration, end_date=previous_end)
    if year_selected and month_selected:
        previous_month = shift_month(date(int(filters.year), int(filters.month), 1), -1)
        start_date, end_date = month_bounds(previous_month.year, previous_month.month)
        return PeriodBounds(start_date=start_date, end_date=end_date)
    if year_selected and not filters.date_range.is_active:
        start_date, end_date = year_bounds(int(filters.year) - 1)
        return PeriodBounds(start_date=start_date, end_date=end_date)
    return None


def compute_previous_kpis(
    transactions: Iterable[Transaction],
    filters: FilterState,
    current: PeriodBounds,
) -> PeriodTotals:
    window = previous_period(filters, current)
    if window is None:
        return PeriodTotals(total_revenue=ZERO, total_expenses=ZERO, total_savings=ZERO)
    in_window = [
        txn for txn in transactions if window.start_date <= txn.date <= window.end_date
    ]
    return _period_totals(in_window)


def monthly_series(transactions: Iterable[Transaction]) -> List[MonthlyRecord]:
    by_month: dict[str, list[Transaction]] = {}
    for txn in transactions:
        by_month.setdefault(month_key(txn.date), []).append(txn)

    records: List[MonthlyRecord] = []
    for name in sorted(by_month):
        totals = _period_totals(by_month[name])
        records.append(
            MonthlyRecord(
                name=name,
                revenus=totals.total_revenue,
                depenses=totals.total_expenses,
                epargne=totals.total_savings,
            )
        )
    return records


def category_totals(
    transactions: Iterable[Transaction],
    txn_type: TransactionType,
) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = {}
    for txn in transactions:
        if txn.type is not txn_type:
            continue
        key = category_key(txn.description)
        totals[key] = totals.get(key, ZERO) + txn.amount
    return totals


def expense_by_category(transactions: Iterable[Transaction]) -> List[CategoryPoint]:
    return _sorted_points(category_totals(transactions, TransactionType.EXPENSE))


def revenue_by_category(transactions: Iterable[Transaction]) -> List[CategoryPoint]:
    points = _sorted_points(category_totals(transactions, TransactionType.REVENUE))
    return points[:REVENUE_TOP_N]


def savings_distribution(transactions: Iterable[Transaction]) -> List[CategoryPoint]:
    return _sorted_points(category_totals(transactions, TransactionType.OUTFLOW))


def prorate_budget(annual_budget: Decimal, period_days: Union[int, Decimal]) -> Decimal:
    days = _coerce_amount(period_days)
    if days <= ZERO:
        return ZERO
    return _coerce_amount(annual_budget) * (days / DAYS_PER_YEAR)


def expense_summary(
    transactions: Iterable[Transaction],
    budget: Mapping[str, Decimal],
    period_days: Union[int, Decimal],
) -> List[BudgetRow]:
    actuals = category_totals(transactions, TransactionType.EXPENSE)
    categories = dict.fromkeys([*budget.keys(), *actuals.keys()])

    rows: List[BudgetRow] = []
    for category in categories:
        actual_amount = actuals.get(category, ZERO)
        prorated = prorate_budget(budget.get(category, ZERO), period_days)
        rows.append(
            BudgetRow(
                category=category,
                actual_amount=actual_amount,
                prorated_budget=prorated,
                difference=prorated - actual_amount,
            )
        )
    return sorted(rows, key=lambda row: row.actual_amount, reverse=True)


def category_chart_data(
    expenses: Sequence[CategoryPoint],
    summary: Sequence[BudgetRow],
) -> List[CategoryPoint]:
    """Pick the categories to chart by budget weight, display them by actual spend.

    Without any prorated budget the biggest spenders are kept instead: all of
    them up to seven, otherwise six plus an "Autres" bucket.
    """
    total_prorated = sum((row.prorated_budget for row in summary), ZERO)

    if total_prorated <= ZERO:
        if len(expenses) <= FALLBACK_MAX_CATEGORIES:
            return list(expenses)
        top = list(expenses[:FALLBACK_TOP_N])
        others_value = sum((point.value for point in expenses[FALLBACK_TOP_N:]), ZERO)
        if others_value > ZERO:
            top.append(CategoryPoint(name=OTHERS_LABEL, value=others_value))
        return top

    threshold = total_prorated * MAIN_BUDGET_SHARE
    main_categories: set[str] = set()
    cumulative = ZERO
    for row in sorted(summary, key=lambda item: item.prorated_budget, reverse=True):
        main_categories.add(row.category)
        cumulative += row.prorated_budget
        if cumulative >= threshold:
            break

    chart: List[CategoryPoint] = []
    others_value = ZERO
    for point in expenses:
        if point.name in main_categories:
            chart.append(point)
        else:
            others_value += point.value
    if others_value > ZERO:
        chart.append(CategoryPoint(name=OTHERS_LABEL, value=others_value))
    return chart


def distinct_categories(
    transactions: Iterable[Transaction],
    txn_type: TransactionType,
) -> List[str]:
    return sorted({category_key(txn.description) for txn in transactions if txn.type is txn_type})


def available_years(transactions: Iterable[Transaction]) -> List[int]:
    return sorted({txn.date.year for txn in transactions}, reverse=True)


def percent_change(current: Decimal, previous: Decimal) -> Optional[Decimal]:
    if previous == ZERO:
        return None
    return ((current - previous) / abs(previous)) * HUNDRED


def kpi_changes(kpis: Kpis, previous: PeriodTotals) -> dict[str, Optional[Decimal]]:
    return {
        "total_revenue": percent_change(kpis.total_revenue, previous.total_revenue),
        "total_expenses": percent_change(kpis.total_expenses, previous.total_expenses),
        "total_savings": percent_change(kpis.total_savings, previous.total_savings),
    }


def validate_transactions(transactions: Iterable[Transaction]) -> None:
    for index, txn in enumerate(transactions):
        if not isinstance(txn.date, date):
            raise InvalidTransactionError(f"Transaction {index} has no date.")
        if txn.amount is None or not txn.amount.is_finite():
            raise InvalidTransactionError(f"Transaction {index} has a non-finite amount.")
        if txn.amount < ZERO:
            raise InvalidTransactionError(f"Transaction {index} has a negative amount.")


def compute_finance_view(
    transactions: Sequence[Transaction],
    budget: Mapping[str, Decimal],
    filters: Optional[FilterState] = None,
) -> FinanceView:
    filters = filters or FilterState()
    validate_transactions(transactions)

    filtered = filter_transactions(transactions, filters)
    bounds = period_bounds(filtered)
    days = filter_period_days(bounds)

    expenses = expense_by_category(filtered)
    summary = expense_summary(filtered, budget, days)

    return FinanceView(
        filtered_transactions=tuple(filtered),
        kpis=compute_kpis(filtered),
        previous_kpis=compute_previous_kpis(transactions, filters, bounds),
        monthly_chart_data=tuple(monthly_series(filtered)),
        category_chart_data=tuple(category_chart_data(expenses, summary)),
        revenue_by_category_data=tuple(revenue_by_category(filtered)),
        savings_distribution_data=tuple(savings_distribution(filtered)),
        expense_summary_data=tuple(summary),
        filter_period=FilterPeriod(
            days=days,
            start_date=bounds.start_date,
            end_date=bounds.end_date,
        ),
        expense_categories=tuple(distinct_categories(transactions, TransactionType.EXPENSE)),
        revenue_categories=tuple(distinct_categories(transactions, TransactionType.REVENUE)),
        savings_categories=tuple(distinct_categories(transactions, TransactionType.OUTFLOW)),
        available_years=tuple(available_years(transactions)),
    )


def compute_finance_view_cached(
    transactions: Iterable[Transaction],
    budget: Mapping[str, Decimal],
    filters: Optional[FilterState] = None,
) -> FinanceView:
    budget_items = tuple((key, _coerce_amount(value)) for key, value in budget.items())
    return _cached_finance_view(tuple(transactions), budget_items, filters or FilterState())


@lru_cache(maxsize=32)
def _cached_finance_view(
    transactions: tuple[Transaction, ...],
    budget_items: tuple[tuple[str, Decimal], ...],
    filters: FilterState,
) -> FinanceView:
    return compute_finance_view(transactions, dict(budget_items), filters)


def _period_totals(transactions: Iterable[Transaction]) -> PeriodTotals:
    totals = {txn_type: ZERO for txn_type in TransactionType}
    for txn in transactions:
        totals[txn.type] += txn.amount
    return PeriodTotals(
        total_revenue=totals[TransactionType.REVENUE],
        total_expenses=totals[TransactionType.EXPENSE],
        total_savings=totals[TransactionType.OUTFLOW],
    )


def _sorted_points(totals: Mapping[str, Decimal]) -> List[CategoryPoint]:
    points = [CategoryPoint(name=name, value=value) for name, value in totals.items()]
    return sorted(points, key=lambda point: point.value, reverse=True)


def _in_date_range(value: date, date_range: DateRange) -> bool:
    if date_range.start_date is not None and value < date_range.start_date:
        return False
    if date_range.end_date is not None and value > date_range.end_date:
        return False
    return True


def _matches_year_month(value: date, year: YearOrAll, month: YearOrAll) -> bool:
    if not _is_all(year) and value.year != int(year):
        return False
    if not _is_all(month) and value.month != int(month):
        return False
    return True


def _is_all(value: YearOrAll) -> bool:
    return isinstance(value, str) and value.strip().lower() == ALL


def _coerce_amount(amount: Union[Decimal, int, float, str]) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
