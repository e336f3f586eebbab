import base64
import io
import unittest
from decimal import Decimal

from fastapi.testclient import TestClient
from openpyxl import Workbook, load_workbook
from PIL import Image as PILImage

from backend.main import app


def transaction(day: str, description: str, amount: str, txn_type: str = "Dépense") -> dict:
    return {
        "date": day,
        "description": description,
        "amount": amount,
        "type": txn_type,
        "account": "Banque",
    }


class DashboardApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TestClient(app)
        self.payload = {
            "transactions": [
                transaction("2024-03-01", "Salaire - Mars", "10000", "Revenu"),
                transaction("2024-03-05", "Loyer", "3000"),
                transaction("2024-03-20", "Alimentation - Marché", "800"),
                transaction("2024-03-21", "Bourse - ETF", "1000", "Sorties"),
                transaction("2024-02-01", "Salaire - Février", "8000", "Revenu"),
            ],
            "budget": {"Loyer": "36000", "Alimentation": "9600"},
            "filters": {"year": 2024, "month": 3},
        }

    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_dashboard_view(self) -> None:
        response = self.client.post("/dashboard/view", json=self.payload)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(
            [row["date"] for row in body["filtered_transactions"]],
            ["2024-03-21", "2024-03-20", "2024-03-05", "2024-03-01"],
        )
        self.assertEqual(Decimal(body["kpis"]["total_revenue"]), Decimal("10000"))
        self.assertEqual(Decimal(body["kpis"]["net_balance"]), Decimal("5200"))
        self.assertEqual(Decimal(body["previous_kpis"]["total_revenue"]), Decimal("8000"))
        self.assertEqual(Decimal(body["kpi_changes"]["total_revenue"]), Decimal("25"))
        self.assertIsNone(body["kpi_changes"]["total_expenses"])
        self.assertEqual(body["filter_period"]["days"], 21)
        self.assertEqual([row["name"] for row in body["monthly_chart_data"]], ["2024-03"])
        self.assertEqual(
            [point["name"] for point in body["category_chart_data"]],
            ["Loyer", "Alimentation"],
        )
        self.assertEqual(body["expense_categories"], ["Alimentation", "Loyer"])
        self.assertEqual(body["available_years"], [2024])

    def test_all_filters(self) -> None:
        self.payload["filters"] = {"year": "all", "month": "all"}

        response = self.client.post("/dashboard/view", json=self.payload)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()["filtered_transactions"]), 5)

    def test_invalid_month_is_rejected(self) -> None:
        self.payload["filters"] = {"year": 2024, "month": 13}

        response = self.client.post("/dashboard/view", json=self.payload)

        self.assertEqual(response.status_code, 400)

    def test_inverted_range_is_rejected(self) -> None:
        self.payload["filters"] = {
            "date_range": {"start_date": "2024-03-10", "end_date": "2024-03-01"},
        }

        response = self.client.post("/dashboard/view", json=self.payload)

        self.assertEqual(response.status_code, 400)

    def test_negative_amount_is_rejected(self) -> None:
        self.payload["transactions"].append(transaction("2024-03-02", "Loyer", "-10"))

        response = self.client.post("/dashboard/view", json=self.payload)

        self.assertEqual(response.status_code, 400)


class UploadApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TestClient(app)

    def test_parse_transactions_csv(self) -> None:
        contents = (
            "Date,Compte,Catégorie,Sous-catégories,Note,MAD,Revenu/dépense\n"
            "2024-03-05,Banque,Loyer,,,3000,Dépense\n"
        ).encode("utf-8")

        response = self.client.post(
            "/transactions/parse",
            files={"file": ("transactions.csv", contents, "text/csv")},
        )

        self.assertEqual(response.status_code, 200)
        rows = response.json()["rows"]
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["type"], "Dépense")
        self.assertEqual(rows[0]["date"], "2024-03-05")

    def test_parse_transactions_rejects_bad_file(self) -> None:
        response = self.client.post(
            "/transactions/parse",
            files={"file": ("transactions.txt", b"hello", "text/plain")},
        )

        self.assertEqual(response.status_code, 400)

    def test_parse_budget_xlsx(self) -> None:
        workbook = Workbook()
        workbook.active.append(["Catégorie", "Budget"])
        workbook.active.append(["Loyer", 36000])
        buffer = io.BytesIO()
        workbook.save(buffer)

        response = self.client.post(
            "/budget/parse",
            files={"file": ("budget.xlsx", buffer.getvalue(), "application/octet-stream")},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(Decimal(response.json()["budget"]["Loyer"]), Decimal("36000"))


class ReportApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TestClient(app)
        self.payload = {
            "transactions": [
                transaction("2024-03-01", "Salaire", "10000", "Revenu"),
                transaction("2024-03-05", "Loyer", "3000"),
            ],
            "budget": {"Loyer": "36000"},
            "filters": {"year": 2024, "month": "all"},
        }

    def test_excel_report(self) -> None:
        response = self.client.post("/reports/excel", json=self.payload)

        self.assertEqual(response.status_code, 200)
        self.assertIn("rapport_financier_complet.xlsx", response.headers["content-disposition"])
        workbook = load_workbook(io.BytesIO(response.content))
        self.assertEqual(len(workbook.sheetnames), 3)

    def test_budget_excel_report(self) -> None:
        response = self.client.post("/reports/budget-excel", json=self.payload)

        self.assertEqual(response.status_code, 200)
        workbook = load_workbook(io.BytesIO(response.content))
        self.assertEqual(workbook.active["A2"].value, "Loyer")

    def test_pdf_report_with_data_url_chart(self) -> None:
        buffer = io.BytesIO()
        PILImage.new("RGB", (20, 12), "white").save(buffer, format="PNG")
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        self.payload["chart_images"] = {"monthly": f"data:image/png;base64,{encoded}"}

        response = self.client.post("/reports/pdf", json=self.payload)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["content-type"], "application/pdf")
        self.assertTrue(response.content.startswith(b"%PDF"))

    def test_pdf_report_rejects_bad_chart_encoding(self) -> None:
        self.payload["chart_images"] = {"savings": "not base64!"}

        response = self.client.post("/reports/pdf", json=self.payload)

        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
