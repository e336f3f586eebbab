import io
import unittest
from datetime import date, datetime
from decimal import Decimal

from openpyxl import Workbook

from backend.finance_engine import Transaction, TransactionType
from backend.spreadsheet_parser import parse_budget_file, parse_transactions_file

HEADER = ["Date", "Compte", "Catégorie", "Sous-catégories", "Note", "MAD", "Revenu/dépense"]


def make_xlsx(rows: list[list[object]]) -> bytes:
    workbook = Workbook()
    worksheet = workbook.active
    for row in rows:
        worksheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class TransactionFileTests(unittest.TestCase):
    def test_parses_xlsx_rows(self) -> None:
        contents = make_xlsx(
            [
                HEADER,
                [datetime(2024, 3, 5), "Banque", "Alimentation", "Supermarché", None, -250.5, "Dépense"],
                [datetime(2024, 3, 1), "Banque", "Salaire", None, "Mars", 12000, "Revenu"],
                [datetime(2024, 3, 2), "Courtier", "Bourse", "ETF", None, 1500, "Sorties"],
                [datetime(2024, 3, 3), "Banque", "Virement", None, None, 80, "Autre"],
            ]
        )

        result = parse_transactions_file(contents, "transactions.xlsx")

        self.assertEqual(len(result.rows), 4)
        first = result.rows[0]
        self.assertEqual(first.date, date(2024, 3, 5))
        self.assertEqual(first.description, "Alimentation - Supermarché")
        self.assertEqual(first.amount, Decimal("250.5"))
        self.assertEqual(first.type, TransactionType.EXPENSE)
        self.assertEqual(first.account, "Banque")
        self.assertEqual(result.rows[1].description, "Salaire - Mars")
        self.assertEqual(result.rows[1].type, TransactionType.REVENUE)
        self.assertEqual(result.rows[2].type, TransactionType.OUTFLOW)
        self.assertEqual(result.rows[3].type, TransactionType.EXPENSE)

    def test_converts_to_engine_transactions(self) -> None:
        contents = make_xlsx(
            [HEADER, [datetime(2024, 3, 5), "Banque", "Loyer", None, None, 3000, "Dépense"]]
        )

        transactions = parse_transactions_file(contents, "transactions.xlsx").to_transactions()

        self.assertEqual(
            transactions,
            [
                Transaction(
                    date=date(2024, 3, 5),
                    description="Loyer",
                    amount=Decimal("3000"),
                    type=TransactionType.EXPENSE,
                    account="Banque",
                )
            ],
        )

    def test_parses_csv_and_skips_blank_rows(self) -> None:
        contents = (
            "Date,Compte,Catégorie,Sous-catégories,Note,MAD,Revenu/dépense\n"
            '05/03/2024,Banque,Loyer,,,"1 234,50",Dépense\n'
            ",,,,,,\n"
            "2024-03-07,Banque,Transport,Taxi,,45,Dépense\n"
        ).encode("utf-8")

        result = parse_transactions_file(contents, "export.csv")

        self.assertEqual(len(result.rows), 2)
        self.assertEqual(result.rows[0].date, date(2024, 3, 5))
        self.assertEqual(result.rows[0].amount, Decimal("1234.50"))
        self.assertEqual(result.rows[1].description, "Transport - Taxi")

    def test_missing_columns_are_reported(self) -> None:
        contents = make_xlsx(
            [["Date", "Compte", "Catégorie"], [datetime(2024, 3, 5), "Banque", "Loyer"]]
        )

        with self.assertRaises(ValueError) as ctx:
            parse_transactions_file(contents, "transactions.xlsx")

        self.assertIn("MAD", str(ctx.exception))
        self.assertIn("Revenu/dépense", str(ctx.exception))

    def test_row_with_missing_value_names_its_line(self) -> None:
        contents = make_xlsx(
            [
                HEADER,
                [datetime(2024, 3, 5), "Banque", "Loyer", None, None, 3000, "Dépense"],
                [datetime(2024, 3, 6), None, "Loyer", None, None, 3000, "Dépense"],
            ]
        )

        with self.assertRaises(ValueError) as ctx:
            parse_transactions_file(contents, "transactions.xlsx")

        self.assertIn("Line 3", str(ctx.exception))

    def test_invalid_date_names_its_line(self) -> None:
        contents = make_xlsx([HEADER, ["pas une date", "Banque", "Loyer", None, None, 3000, "Dépense"]])

        with self.assertRaises(ValueError) as ctx:
            parse_transactions_file(contents, "transactions.xlsx")

        self.assertIn("line 2", str(ctx.exception))

    def test_invalid_amount_names_its_line(self) -> None:
        contents = make_xlsx(
            [HEADER, [datetime(2024, 3, 5), "Banque", "Loyer", None, None, "beaucoup", "Dépense"]]
        )

        with self.assertRaises(ValueError) as ctx:
            parse_transactions_file(contents, "transactions.xlsx")

        self.assertIn("Invalid amount on line 2", str(ctx.exception))

    def test_empty_file_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            parse_transactions_file(make_xlsx([HEADER]), "transactions.xlsx")

    def test_unsupported_extension_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            parse_transactions_file(b"whatever", "transactions.pdf")

    def test_corrupt_workbook_is_rejected(self) -> None:
        with self.assertRaises(ValueError) as ctx:
            parse_transactions_file(b"not a zip archive", "transactions.xlsx")

        self.assertIn("Unable to read", str(ctx.exception))


class BudgetFileTests(unittest.TestCase):
    def test_parses_budget_rows(self) -> None:
        contents = make_xlsx(
            [
                ["Catégorie", "Budget annuel"],
                [" Alimentation ", 9600],
                ["Loyer", "36000"],
                [None, 100],
                ["Divers", "n/a"],
            ]
        )

        result = parse_budget_file(contents, "budget.xlsx")

        self.assertEqual(
            result.budget,
            {"Alimentation": Decimal("9600"), "Loyer": Decimal("36000")},
        )

    def test_header_match_is_case_insensitive(self) -> None:
        contents = "CATÉGORIE,BUDGET\nLoyer,36000\n".encode("utf-8")

        result = parse_budget_file(contents, "budget.csv")

        self.assertEqual(result.budget, {"Loyer": Decimal("36000")})

    def test_missing_columns_are_rejected(self) -> None:
        contents = make_xlsx([["Poste", "Montant"], ["Loyer", 36000]])

        with self.assertRaises(ValueError):
            parse_budget_file(contents, "budget.xlsx")

    def test_empty_budget_is_rejected(self) -> None:
        with self.assertRaises(ValueError) as ctx:
            parse_budget_file(make_xlsx([["Catégorie", "Budget"]]), "budget.xlsx")

        self.assertIn("empty", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
