import base64
import binascii
import logging
import os
from dataclasses import asdict
from datetime import date
from decimal import Decimal
from typing import Literal, Union

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, Field

from backend.finance_engine import (
    ALL,
    DateRange,
    FilterState,
    FinanceView,
    TransactionType,
    compute_finance_view_cached,
    kpi_changes,
)
from backend.reporting import (
    DEFAULT_REPORT_TITLE,
    build_budget_workbook,
    build_report_pdf,
    build_report_workbook,
)
from backend.spreadsheet_parser import (
    BudgetParseResult,
    ParsedTransaction,
    TransactionParseResult,
    parse_budget_file,
    parse_transactions_file,
)


def get_log_level() -> str:
    raw = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    return raw if raw in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO"


def get_report_currency() -> str:
    raw = os.getenv("REPORT_CURRENCY", "MAD").strip().upper()
    if len(raw) != 3 or not raw.isalpha():
        return "MAD"
    return raw


logging.basicConfig(
    level=get_log_level(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

REPORT_CURRENCY = get_report_currency()
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
PDF_MEDIA_TYPE = "application/pdf"

YearOrAll = Union[int, Literal["all"]]


class DateRangePayload(BaseModel):
    start_date: date | None = None
    end_date: date | None = None


class FiltersPayload(BaseModel):
    year: YearOrAll = Field(default_factory=lambda: date.today().year)
    month: YearOrAll = ALL
    date_range: DateRangePayload = Field(default_factory=DateRangePayload)

    @classmethod
    def validate_payload(cls, payload: "FiltersPayload") -> "FiltersPayload":
        if payload.month != ALL and not 1 <= payload.month <= 12:
            raise ValueError("Month must be between 1 and 12.")
        start_date = payload.date_range.start_date
        end_date = payload.date_range.end_date
        if start_date and end_date and start_date > end_date:
            raise ValueError("Start date must be on or before end date.")
        return payload

    def to_filter_state(self) -> FilterState:
        return FilterState(
            year=self.year,
            month=self.month,
            date_range=DateRange(
                start_date=self.date_range.start_date,
                end_date=self.date_range.end_date,
            ),
        )


class DashboardPayload(BaseModel):
    transactions: list[ParsedTransaction]
    budget: dict[str, Decimal] = Field(default_factory=dict)
    filters: FiltersPayload = Field(default_factory=FiltersPayload)


class ChartImagesPayload(BaseModel):
    monthly: str | None = None
    savings: str | None = None
    expenses: str | None = None
    revenues: str | None = None


class ReportPdfPayload(DashboardPayload):
    chart_images: ChartImagesPayload = Field(default_factory=ChartImagesPayload)
    title: str = DEFAULT_REPORT_TITLE


class TransactionResponse(BaseModel):
    date: date
    description: str
    amount: Decimal
    type: TransactionType
    account: str


class KpiResponse(BaseModel):
    total_revenue: Decimal
    total_expenses: Decimal
    total_savings: Decimal
    net_balance: Decimal
    savings_rate: Decimal


class PeriodTotalsResponse(BaseModel):
    total_revenue: Decimal
    total_expenses: Decimal
    total_savings: Decimal


class KpiChangesResponse(BaseModel):
    total_revenue: Decimal | None = None
    total_expenses: Decimal | None = None
    total_savings: Decimal | None = None


class MonthlyRecordResponse(BaseModel):
    name: str
    revenus: Decimal
    depenses: Decimal
    epargne: Decimal


class CategoryPointResponse(BaseModel):
    name: str
    value: Decimal


class BudgetRowResponse(BaseModel):
    category: str
    actual_amount: Decimal
    prorated_budget: Decimal
    difference: Decimal


class FilterPeriodResponse(BaseModel):
    days: int
    start_date: date | None = None
    end_date: date | None = None


class FinanceViewResponse(BaseModel):
    filtered_transactions: list[TransactionResponse]
    kpis: KpiResponse
    previous_kpis: PeriodTotalsResponse
    kpi_changes: KpiChangesResponse
    monthly_chart_data: list[MonthlyRecordResponse]
    category_chart_data: list[CategoryPointResponse]
    revenue_by_category_data: list[CategoryPointResponse]
    savings_distribution_data: list[CategoryPointResponse]
    expense_summary_data: list[BudgetRowResponse]
    filter_period: FilterPeriodResponse
    expense_categories: list[str]
    revenue_categories: list[str]
    savings_categories: list[str]
    available_years: list[int]


def build_view(payload: DashboardPayload) -> FinanceView:
    try:
        filters = FiltersPayload.validate_payload(payload.filters).to_filter_state()
        transactions = [row.to_transaction() for row in payload.transactions]
        return compute_finance_view_cached(transactions, payload.budget, filters)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def decode_chart_image(value: str | None) -> bytes | None:
    if not value:
        return None
    encoded = value.split(",", 1)[1] if value.startswith("data:") else value
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Invalid chart image encoding.") from exc


def attachment(content: bytes, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/transactions/parse", response_model=TransactionParseResult)
async def parse_transactions(file: UploadFile = File(...)) -> TransactionParseResult:
    contents = await file.read()
    try:
        return parse_transactions_file(contents, file.filename or "")
    except ValueError as exc:
        logger.warning("Rejected transaction file %s: %s", file.filename, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/budget/parse", response_model=BudgetParseResult)
async def parse_budget(file: UploadFile = File(...)) -> BudgetParseResult:
    contents = await file.read()
    try:
        return parse_budget_file(contents, file.filename or "")
    except ValueError as exc:
        logger.warning("Rejected budget file %s: %s", file.filename, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/dashboard/view", response_model=FinanceViewResponse)
def dashboard_view(payload: DashboardPayload) -> FinanceViewResponse:
    view = build_view(payload)
    return FinanceViewResponse(
        **asdict(view),
        kpi_changes=KpiChangesResponse(**kpi_changes(view.kpis, view.previous_kpis)),
    )


@app.post("/reports/excel")
def export_report_excel(payload: DashboardPayload) -> Response:
    view = build_view(payload)
    content = build_report_workbook(
        view.filtered_transactions,
        view.kpis,
        view.expense_summary_data,
        currency=REPORT_CURRENCY,
    )
    return attachment(content, XLSX_MEDIA_TYPE, "rapport_financier_complet.xlsx")


@app.post("/reports/budget-excel")
def export_budget_excel(payload: DashboardPayload) -> Response:
    view = build_view(payload)
    content = build_budget_workbook(view.expense_summary_data, currency=REPORT_CURRENCY)
    return attachment(content, XLSX_MEDIA_TYPE, "analyse_budgetaire.xlsx")


@app.post("/reports/pdf")
def export_report_pdf(payload: ReportPdfPayload) -> Response:
    view = build_view(payload)
    chart_images = {
        slot: decode_chart_image(value)
        for slot, value in payload.chart_images.model_dump().items()
    }
    content = build_report_pdf(
        view.filtered_transactions,
        view.kpis,
        view.expense_summary_data,
        chart_images=chart_images,
        title=payload.title,
        currency=REPORT_CURRENCY,
    )
    return attachment(content, PDF_MEDIA_TYPE, "rapport_financier.pdf")
