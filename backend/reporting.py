from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Optional, Sequence
from xml.sax.saxutils import escape

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.worksheet.worksheet import Worksheet
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.lib.utils import ImageReader
from reportlab.platypus import (
    Image,
    PageBreak,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from backend.finance_engine import BudgetRow, Kpis, Transaction, TransactionType

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "MAD"
DEFAULT_REPORT_TITLE = "Rapport Financier Complet"
OUTFLOW_LABEL = "Epargne/Invest."
PERCENT_FORMAT = "0.00%"
DATE_FORMAT = "yyyy-mm-dd"
CENTS = Decimal("0.01")

CHART_SLOTS = ("monthly", "savings", "expenses", "revenues")
CHART_MISSING_TEXT = "Graphique non disponible"
CHART_ERROR_TEXT = "Erreur graphique"

BUDGET_SHEET_TITLE = "Analyse Budgétaire"
SUMMARY_SHEET_TITLE = "Résumé et Totaux"
TRANSACTIONS_SHEET_TITLE = "Transactions"
BUDGET_HEADERS = ["Catégorie", "Dépenses Réelles", "Budget (Période)", "Écart"]
TRANSACTION_HEADERS = ["Date", "Description", "Montant", "Type", "Compte"]

TABLE_HEADER_COLOR = colors.HexColor("#4B5563")


@dataclass(frozen=True)
class BudgetTotals:
    actual_amount: Decimal
    prorated_budget: Decimal
    difference: Decimal


def budget_totals(rows: Iterable[BudgetRow]) -> BudgetTotals:
    actual = prorated = difference = Decimal("0")
    for row in rows:
        actual += row.actual_amount
        prorated += row.prorated_budget
        difference += row.difference
    return BudgetTotals(actual_amount=actual, prorated_budget=prorated, difference=difference)


def signed_amount(txn: Transaction) -> Decimal:
    return txn.amount if txn.type is TransactionType.REVENUE else -txn.amount


def type_label(txn: Transaction) -> str:
    return OUTFLOW_LABEL if txn.type is TransactionType.OUTFLOW else txn.type.value


def format_currency(value: Decimal, currency: str = DEFAULT_CURRENCY) -> str:
    quantized = Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    formatted = f"{quantized:,.2f}".replace(",", " ").replace(".", ",")
    return f"{formatted} {currency}"


def format_percent(value: Decimal) -> str:
    quantized = Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    return f"{quantized:.2f} %".replace(".", ",")


def currency_number_format(currency: str = DEFAULT_CURRENCY) -> str:
    return f'#,##0.00 "{currency}";[Red]-#,##0.00 "{currency}"'


def build_budget_workbook(rows: Sequence[BudgetRow], currency: str = DEFAULT_CURRENCY) -> bytes:
    workbook = Workbook()
    worksheet = workbook.active
    worksheet.title = BUDGET_SHEET_TITLE
    _write_budget_sheet(worksheet, rows, currency)
    return _workbook_bytes(workbook)


def build_report_workbook(
    transactions: Sequence[Transaction],
    kpis: Kpis,
    rows: Sequence[BudgetRow],
    currency: str = DEFAULT_CURRENCY,
) -> bytes:
    workbook = Workbook()
    money = currency_number_format(currency)
    totals = budget_totals(rows)

    summary = workbook.active
    summary.title = SUMMARY_SHEET_TITLE
    summary.append(["Rapport Financier - Résumé"])
    summary.append([])
    summary.append(["Indicateurs Clés de Performance (KPIs)"])
    summary.append(["Total Revenus", kpis.total_revenue])
    summary.append(["Total Dépenses", kpis.total_expenses])
    summary.append(["Total Épargne", kpis.total_savings])
    summary.append(["Solde Net", kpis.net_balance])
    summary.append(["Taux d'Épargne", kpis.savings_rate / Decimal("100")])
    summary.append([])
    summary.append(["Totaux de l'Analyse Budgétaire"])
    summary.append(["Dépenses Réelles (Total)", totals.actual_amount])
    summary.append(["Budget Période (Total)", totals.prorated_budget])
    summary.append(["Écart (Total)", totals.difference])
    for cell_ref in ("B4", "B5", "B6", "B7", "B11", "B12", "B13"):
        summary[cell_ref].number_format = money
    summary["B8"].number_format = PERCENT_FORMAT
    for cell_ref in ("A1", "A3", "A10"):
        summary[cell_ref].font = Font(bold=True)
    _set_column_widths(summary, [30, 20])

    _write_budget_sheet(workbook.create_sheet(BUDGET_SHEET_TITLE), rows, currency)

    ledger = workbook.create_sheet(TRANSACTIONS_SHEET_TITLE)
    ledger.append(TRANSACTION_HEADERS)
    for txn in transactions:
        ledger.append([txn.date, txn.description, signed_amount(txn), type_label(txn), txn.account])
    for row in ledger.iter_rows(min_row=2):
        row[0].number_format = DATE_FORMAT
        row[2].number_format = money
    _set_column_widths(ledger, [12, 40, 20, 15, 20])

    return _workbook_bytes(workbook)


def build_report_pdf(
    transactions: Sequence[Transaction],
    kpis: Kpis,
    rows: Sequence[BudgetRow],
    chart_images: Optional[Mapping[str, Optional[bytes]]] = None,
    title: str = DEFAULT_REPORT_TITLE,
    currency: str = DEFAULT_CURRENCY,
) -> bytes:
    """Render the KPI summary, the four charts and the detail tables as a PDF.

    chart_images maps the slots in CHART_SLOTS to PNG bytes; a missing slot is
    drawn as a placeholder.
    """
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=1.5 * cm,
        leftMargin=1.5 * cm,
        topMargin=1.5 * cm,
        bottomMargin=1.5 * cm,
        title=title,
    )
    styles = getSampleStyleSheet()
    chart_images = chart_images or {}

    elements = [
        Paragraph(escape(title), styles["Title"]),
        Spacer(1, 0.5 * cm),
        Paragraph("Résumé Financier", styles["Heading2"]),
    ]
    kpi_table = Table(
        [
            ["Total Revenus", format_currency(kpis.total_revenue, currency)],
            ["Total Dépenses", format_currency(kpis.total_expenses, currency)],
            ["Total Épargne", format_currency(kpis.total_savings, currency)],
            ["Solde Net", format_currency(kpis.net_balance, currency)],
            ["Taux d'Épargne", format_percent(kpis.savings_rate)],
        ],
        colWidths=[doc.width / 2] * 2,
    )
    kpi_table.setStyle(
        TableStyle(
            [
                ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                ("ALIGN", (1, 0), (1, -1), "RIGHT"),
            ]
        )
    )
    elements.append(kpi_table)

    elements.append(PageBreak())
    elements.append(Paragraph("Visualisations Graphiques", styles["Heading2"]))
    chart_width = (doc.width - 0.5 * cm) / 2
    chart_height = chart_width * 0.6
    cells = [
        _chart_flowable(chart_images.get(slot), chart_width, chart_height, styles)
        for slot in CHART_SLOTS
    ]
    chart_grid = Table([cells[:2], cells[2:]], colWidths=[chart_width + 0.25 * cm] * 2)
    chart_grid.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "MIDDLE")]))
    elements.append(chart_grid)

    elements.append(PageBreak())
    elements.append(Paragraph("Analyse Budgétaire des Dépenses", styles["Heading2"]))
    totals = budget_totals(rows)
    budget_data = [["Catégorie", "Dépenses", "Budget Période", "Écart"]]
    budget_data.extend(
        [
            row.category,
            format_currency(row.actual_amount, currency),
            format_currency(row.prorated_budget, currency),
            format_currency(row.difference, currency),
        ]
        for row in rows
    )
    budget_data.append(
        [
            "Total",
            format_currency(totals.actual_amount, currency),
            format_currency(totals.prorated_budget, currency),
            format_currency(totals.difference, currency),
        ]
    )
    budget_table = Table(budget_data, colWidths=[doc.width * 0.34] + [doc.width * 0.22] * 3, repeatRows=1)
    budget_table.setStyle(
        TableStyle(
            _base_table_style()
            + [
                ("BACKGROUND", (0, -1), (-1, -1), TABLE_HEADER_COLOR),
                ("TEXTCOLOR", (0, -1), (-1, -1), colors.whitesmoke),
                ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
                ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
            ]
        )
    )
    elements.append(budget_table)

    elements.append(Spacer(1, 0.8 * cm))
    elements.append(Paragraph("Historique des Transactions", styles["Heading2"]))
    cell_style = styles["BodyText"]
    ledger_data = [TRANSACTION_HEADERS]
    ledger_data.extend(
        [
            txn.date.isoformat(),
            Paragraph(escape(txn.description), cell_style),
            format_currency(signed_amount(txn), currency),
            type_label(txn),
            txn.account,
        ]
        for txn in transactions
    )
    ledger_table = Table(
        ledger_data,
        colWidths=[2.2 * cm, doc.width - 11.2 * cm, 3.4 * cm, 2.8 * cm, 2.8 * cm],
        repeatRows=1,
    )
    ledger_table.setStyle(TableStyle(_base_table_style() + [("ALIGN", (2, 1), (2, -1), "RIGHT")]))
    elements.append(ledger_table)

    doc.build(elements)
    return buffer.getvalue()


def _write_budget_sheet(worksheet: Worksheet, rows: Sequence[BudgetRow], currency: str) -> None:
    totals = budget_totals(rows)
    worksheet.append(BUDGET_HEADERS)
    for row in rows:
        worksheet.append([row.category, row.actual_amount, row.prorated_budget, row.difference])
    worksheet.append(["Total", totals.actual_amount, totals.prorated_budget, totals.difference])

    money = currency_number_format(currency)
    for cells in worksheet.iter_rows(min_row=2, min_col=2, max_col=4):
        for cell in cells:
            cell.number_format = money
    for cell in worksheet[1]:
        cell.font = Font(bold=True)
    for cell in worksheet[worksheet.max_row]:
        cell.font = Font(bold=True)
    _set_column_widths(worksheet, [30, 20, 20, 20])


def _set_column_widths(worksheet: Worksheet, widths: Sequence[int]) -> None:
    for index, width in enumerate(widths):
        worksheet.column_dimensions[chr(ord("A") + index)].width = width


def _workbook_bytes(workbook: Workbook) -> bytes:
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _chart_flowable(data: Optional[bytes], width: float, height: float, styles):
    if not data:
        return Paragraph(CHART_MISSING_TEXT, styles["Normal"])
    try:
        ImageReader(io.BytesIO(data)).getSize()
    except OSError:
        logger.warning("Skipping unreadable chart image (%d bytes)", len(data))
        return Paragraph(CHART_ERROR_TEXT, styles["Normal"])
    return Image(io.BytesIO(data), width=width, height=height)


def _base_table_style() -> list:
    return [
        ("BACKGROUND", (0, 0), (-1, 0), TABLE_HEADER_COLOR),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 8),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ]
