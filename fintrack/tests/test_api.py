import unittest
from datetime import date
from decimal import Decimal
from unittest import mock

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, update
from sqlalchemy.pool import StaticPool

from fintrack import main
from fintrack.blob_store import StoredBlob
from fintrack.schema import accounts, metadata

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata.create_all(engine)
    return engine


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages = []

    def broadcast(self, event, payload) -> None:
        self.messages.append(payload["message"])


class FakeBlobStore:
    def __init__(self) -> None:
        self.uploaded = []
        self.deleted = []

    def upload(self, data: bytes, folder: str) -> StoredBlob:
        blob_id = f"{folder}/{len(self.uploaded) + 1}"
        self.uploaded.append(blob_id)
        return StoredBlob(id=blob_id, url=f"https://cdn.test/{blob_id}.png")

    def delete(self, blob_id: str) -> None:
        self.deleted.append(blob_id)


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        patcher = mock.patch.object(main, "engine", self.engine)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.notifier = RecordingNotifier()
        self.blob_store = FakeBlobStore()
        main.app.dependency_overrides[main.get_notifier] = lambda: self.notifier
        main.app.dependency_overrides[main.get_blob_store] = lambda: self.blob_store
        self.addCleanup(main.app.dependency_overrides.clear)

        self.client = TestClient(main.app)
        self.headers = self.register("owner@example.com")

    def register(self, email: str, password: str = "pass1234") -> dict:
        response = self.client.post(
            "/users/register",
            json={"email": email, "password": password, "name": "Test User"},
        )
        self.assertEqual(response.status_code, 201, response.text)
        return {"Authorization": f"Bearer {response.json()['access_token']}"}

    def create_account(self, number: str = "001", balance: str = "50", headers=None) -> dict:
        response = self.client.post(
            "/accounts",
            json={
                "account_type": "savings",
                "branch_name": "Main",
                "account_number": number,
                "bank_name": "Test Bank",
                "balance": balance,
            },
            headers=headers or self.headers,
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def create_transaction(self, account_id: int, txn_type: str, amount: str, headers=None) -> dict:
        response = self.client.post(
            "/transactions",
            json={
                "account_id": account_id,
                "type": txn_type,
                "amount": amount,
                "title": "Groceries",
                "date": "2025-01-10",
                "method": "cash",
            },
            headers=headers or self.headers,
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def balance(self, account_id: int) -> Decimal:
        response = self.client.get(f"/accounts/{account_id}", headers=self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        return Decimal(response.json()["balance"])


class IdentityApiTests(ApiTestCase):
    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})

    def test_login_returns_token_for_valid_credentials(self) -> None:
        response = self.client.post(
            "/users/login", json={"email": "OWNER@example.com", "password": "pass1234"}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["user"]["email"], "owner@example.com")
        me = self.client.get(
            "/users/me", headers={"Authorization": f"Bearer {response.json()['access_token']}"}
        )
        self.assertEqual(me.json()["name"], "Test User")

    def test_login_with_wrong_password_is_unauthorized(self) -> None:
        response = self.client.post(
            "/users/login", json={"email": "owner@example.com", "password": "nope"}
        )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"detail": "Invalid credentials."})

    def test_duplicate_registration_conflicts(self) -> None:
        response = self.client.post(
            "/users/register", json={"email": "owner@example.com", "password": "x"}
        )

        self.assertEqual(response.status_code, 409)

    def test_protected_routes_require_a_token(self) -> None:
        response = self.client.get("/accounts")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"detail": "Please login to continue."})

        bad = self.client.get("/accounts", headers={"Authorization": "Bearer not-a-jwt"})
        self.assertEqual(bad.status_code, 401)

    def test_change_password_checks_old_password(self) -> None:
        wrong = self.client.put(
            "/users/me/password",
            json={"old_password": "bad", "new_password": "fresh-pass"},
            headers=self.headers,
        )
        right = self.client.put(
            "/users/me/password",
            json={"old_password": "pass1234", "new_password": "fresh-pass"},
            headers=self.headers,
        )
        login = self.client.post(
            "/users/login", json={"email": "owner@example.com", "password": "fresh-pass"}
        )

        self.assertEqual(wrong.status_code, 400)
        self.assertEqual(right.status_code, 200)
        self.assertEqual(login.status_code, 200)

    def test_avatar_upload_replaces_previous_blob(self) -> None:
        files = {"file": ("me.png", PNG_BYTES, "image/png")}
        first = self.client.put("/users/me/avatar", files=files, headers=self.headers)
        second = self.client.put("/users/me/avatar", files=files, headers=self.headers)

        self.assertEqual(first.status_code, 200, first.text)
        self.assertEqual(second.json()["avatar_url"], "https://cdn.test/avatars/2.png")
        self.assertEqual(self.blob_store.deleted, ["avatars/1"])


class AccountApiTests(ApiTestCase):
    def test_create_and_fetch_account_with_transactions(self) -> None:
        account = self.create_account()
        self.create_transaction(account["id"], "income", "25")

        response = self.client.get(f"/accounts/{account['id']}", headers=self.headers)

        body = response.json()
        self.assertEqual(Decimal(body["balance"]), Decimal("75"))
        self.assertEqual(Decimal(body["opening_balance"]), Decimal("50"))
        self.assertEqual(len(body["transactions"]), 1)
        self.assertIn("New account created: Test Bank (savings)", self.notifier.messages)

    def test_duplicate_account_number_conflicts(self) -> None:
        self.create_account(number="777")

        response = self.client.post(
            "/accounts",
            json={
                "account_type": "current",
                "branch_name": "Other",
                "account_number": "777",
                "bank_name": "Other Bank",
                "balance": "0",
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 409)

    def test_missing_fields_are_rejected(self) -> None:
        response = self.client.post(
            "/accounts", json={"account_type": "savings"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"detail": "All fields are required."})

    def test_stale_expected_version_conflicts(self) -> None:
        account = self.create_account()
        self.create_transaction(account["id"], "expense", "5")

        response = self.client.put(
            f"/accounts/{account['id']}",
            json={"balance": "10", "expected_version": account["version"]},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(self.balance(account["id"]), Decimal("45"))

    def test_recreated_account_starts_with_empty_ledger(self) -> None:
        old = self.create_account(number="001", balance="0")
        orphan = self.create_transaction(old["id"], "income", "100")
        self.client.delete(f"/accounts/{old['id']}", headers=self.headers)

        new = self.create_account(number="002", balance="0")
        self.client.delete(f"/transactions/{orphan['id']}", headers=self.headers)

        detail = self.client.get(f"/accounts/{new['id']}", headers=self.headers).json()
        self.assertNotEqual(new["id"], old["id"])
        self.assertEqual(detail["transactions"], [])
        self.assertEqual(Decimal(detail["balance"]), Decimal("0"))

    def test_reconcile_endpoint_repairs_drift(self) -> None:
        account = self.create_account()
        self.create_transaction(account["id"], "income", "20")
        with self.engine.begin() as conn:
            conn.execute(
                update(accounts).where(accounts.c.id == account["id"]).values(balance=Decimal("0"))
            )

        response = self.client.post(f"/accounts/{account['id']}/reconcile", headers=self.headers)

        body = response.json()
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(Decimal(body["drift"]), Decimal("70"))
        self.assertEqual(Decimal(body["account"]["balance"]), Decimal("70"))


class TransactionApiTests(ApiTestCase):
    def test_create_update_delete_keeps_balance_consistent(self) -> None:
        account = self.create_account(balance="50")

        created = self.create_transaction(account["id"], "income", "100")
        self.assertEqual(self.balance(account["id"]), Decimal("150"))

        updated = self.client.put(
            f"/transactions/{created['id']}",
            json={"type": "expense", "amount": "30"},
            headers=self.headers,
        )
        self.assertEqual(updated.status_code, 200, updated.text)
        self.assertEqual(self.balance(account["id"]), Decimal("20"))

        deleted = self.client.delete(f"/transactions/{created['id']}", headers=self.headers)
        self.assertEqual(deleted.json(), {"status": "deleted"})
        self.assertEqual(self.balance(account["id"]), Decimal("50"))

    def test_invalid_amounts_and_types_are_rejected(self) -> None:
        account = self.create_account()
        for body in (
            {"account_id": account["id"], "type": "income", "amount": "-5"},
            {"account_id": account["id"], "type": "gift", "amount": "5"},
            {"account_id": account["id"], "type": "income"},
        ):
            with self.subTest(body=body):
                response = self.client.post("/transactions", json=body, headers=self.headers)
                self.assertEqual(response.status_code, 400)
        self.assertEqual(self.balance(account["id"]), Decimal("50"))

    def test_sub_cent_amounts_are_rejected(self) -> None:
        account = self.create_account()
        created = self.create_transaction(account["id"], "income", "10")

        new = self.client.post(
            "/transactions",
            json={"account_id": account["id"], "type": "income", "amount": "0.001"},
            headers=self.headers,
        )
        edited = self.client.put(
            f"/transactions/{created['id']}", json={"amount": "9.999"}, headers=self.headers
        )

        self.assertEqual(new.status_code, 400)
        self.assertEqual(edited.status_code, 400)
        self.assertEqual(self.balance(account["id"]), Decimal("60"))

    def test_failed_receipt_write_discards_new_blob(self) -> None:
        account = self.create_account()
        created = self.create_transaction(account["id"], "expense", "10")

        with mock.patch.object(main, "update", side_effect=RuntimeError("db down")):
            with self.assertRaises(RuntimeError):
                self.client.put(
                    f"/transactions/{created['id']}/receipt",
                    files={"file": ("r.png", PNG_BYTES, "image/png")},
                    headers=self.headers,
                )

        self.assertEqual(self.blob_store.uploaded, ["receipts/1"])
        self.assertEqual(self.blob_store.deleted, ["receipts/1"])

    def test_summary_totals_balances_and_flows(self) -> None:
        first = self.create_account(number="001", balance="50")
        self.create_account(number="002", balance="25")
        self.create_transaction(first["id"], "income", "200")
        self.create_transaction(first["id"], "expense", "80")

        body = self.client.get("/transactions/summary", headers=self.headers).json()

        self.assertEqual(Decimal(body["total_balance"]), Decimal("195"))
        self.assertEqual(Decimal(body["revenues"]), Decimal("200"))
        self.assertEqual(Decimal(body["expenses"]), Decimal("80"))

    def test_transaction_survives_account_deletion(self) -> None:
        account = self.create_account()
        created = self.create_transaction(account["id"], "expense", "10")
        self.client.delete(f"/accounts/{account['id']}", headers=self.headers)

        response = self.client.delete(f"/transactions/{created['id']}", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            self.client.get(f"/transactions/{created['id']}", headers=self.headers).status_code,
            404,
        )

    def test_receipt_upload_and_cleanup(self) -> None:
        account = self.create_account()
        created = self.create_transaction(account["id"], "expense", "10")
        url = f"/transactions/{created['id']}/receipt"

        first = self.client.put(
            url, files={"file": ("r.png", PNG_BYTES, "image/png")}, headers=self.headers
        )
        second = self.client.put(
            url, files={"file": ("r.png", PNG_BYTES, "image/png")}, headers=self.headers
        )
        self.client.delete(f"/transactions/{created['id']}", headers=self.headers)

        self.assertEqual(first.json()["receipt_url"], "https://cdn.test/receipts/1.png")
        self.assertEqual(second.json()["receipt_url"], "https://cdn.test/receipts/2.png")
        self.assertEqual(self.blob_store.deleted, ["receipts/1", "receipts/2"])

    def test_receipt_upload_rejects_non_images(self) -> None:
        account = self.create_account()
        created = self.create_transaction(account["id"], "expense", "10")

        response = self.client.put(
            f"/transactions/{created['id']}/receipt",
            files={"file": ("notes.txt", b"hello", "text/plain")},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.blob_store.uploaded, [])


class OwnershipApiTests(ApiTestCase):
    def test_other_users_records_are_not_found(self) -> None:
        account = self.create_account()
        transaction = self.create_transaction(account["id"], "income", "10")
        bill = self.client.post(
            "/bills",
            json={"vendor": "Netflix", "plan": "Basic", "due_date": "2025-02-01", "amount": "199"},
            headers=self.headers,
        ).json()
        goal = self.client.post(
            "/goals",
            json={"title": "Car", "target_amount": "500000", "deadline": "2027-01-01"},
            headers=self.headers,
        ).json()
        expense = self.client.post(
            "/expenses",
            json={"title": "Lunch", "category": "Food", "amount": "120", "date": "2025-01-02"},
            headers=self.headers,
        ).json()

        intruder = self.register("intruder@example.com")

        for path in (
            f"/accounts/{account['id']}",
            f"/transactions/{transaction['id']}",
            f"/bills/{bill['id']}",
            f"/goals/{goal['id']}",
            f"/expenses/{expense['id']}",
        ):
            with self.subTest(path=path):
                self.assertEqual(self.client.get(path, headers=intruder).status_code, 404)
                self.assertEqual(self.client.delete(path, headers=intruder).status_code, 404)
        self.assertEqual(self.client.get("/transactions", headers=intruder).json(), [])

    def test_expense_cannot_reference_foreign_account(self) -> None:
        foreign = self.create_account()
        intruder = self.register("intruder@example.com")
        own = self.create_account(number="900", headers=intruder)
        body = {"title": "Lunch", "category": "Food", "amount": "120", "date": "2025-01-02"}

        rejected = self.client.post(
            "/expenses", json={**body, "account_id": foreign["id"]}, headers=intruder
        )
        accepted = self.client.post(
            "/expenses", json={**body, "account_id": own["id"]}, headers=intruder
        )
        moved = self.client.put(
            f"/expenses/{accepted.json()['id']}",
            json={"account_id": foreign["id"]},
            headers=intruder,
        )

        self.assertEqual(rejected.status_code, 404)
        self.assertEqual(accepted.status_code, 201, accepted.text)
        self.assertEqual(moved.status_code, 404)

    def test_transaction_against_foreign_account_is_not_found(self) -> None:
        account = self.create_account()
        intruder = self.register("intruder@example.com")

        response = self.client.post(
            "/transactions",
            json={"account_id": account["id"], "type": "expense", "amount": "10"},
            headers=intruder,
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.balance(account["id"]), Decimal("50"))


class BillAndGoalApiTests(ApiTestCase):
    def test_bill_lifecycle_with_logo(self) -> None:
        created = self.client.post(
            "/bills",
            json={"vendor": "Spotify", "plan": "Family", "due_date": "2025-03-05", "amount": "179"},
            headers=self.headers,
        )
        bill_id = created.json()["id"]

        updated = self.client.put(
            f"/bills/{bill_id}", json={"amount": "199"}, headers=self.headers
        )
        logo = self.client.put(
            f"/bills/{bill_id}/logo",
            files={"file": ("logo.png", PNG_BYTES, "image/png")},
            headers=self.headers,
        )
        deleted = self.client.delete(f"/bills/{bill_id}", headers=self.headers)

        self.assertEqual(created.status_code, 201, created.text)
        self.assertEqual(Decimal(updated.json()["amount"]), Decimal("199"))
        self.assertEqual(logo.json()["logo_url"], "https://cdn.test/bill-logos/1.png")
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(self.blob_store.deleted, ["bill-logos/1"])
        self.assertEqual(
            self.notifier.messages,
            [
                "New bill created: Spotify - Family",
                "Bill updated: Spotify - Family",
                "Bill deleted: Spotify - Family",
            ],
        )

    def test_bill_requires_vendor(self) -> None:
        response = self.client.post(
            "/bills", json={"due_date": "2025-03-05", "amount": "10"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 400)

    def test_goal_progress_update(self) -> None:
        goal = self.client.post(
            "/goals",
            json={"title": "Trip", "target_amount": "1000", "deadline": "2026-06-01"},
            headers=self.headers,
        ).json()

        response = self.client.put(
            f"/goals/{goal['id']}", json={"current_amount": "250"}, headers=self.headers
        )

        self.assertEqual(Decimal(goal["current_amount"]), Decimal("0"))
        self.assertEqual(Decimal(response.json()["current_amount"]), Decimal("250"))
        self.assertEqual(len(self.client.get("/goals", headers=self.headers).json()), 1)

    def test_goal_deadline_cannot_be_cleared(self) -> None:
        goal = self.client.post(
            "/goals",
            json={"title": "Trip", "target_amount": "1000", "deadline": "2026-06-01"},
            headers=self.headers,
        ).json()

        response = self.client.put(
            f"/goals/{goal['id']}", json={"deadline": None}, headers=self.headers
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"detail": "Deadline is required."})
        fetched = self.client.get(f"/goals/{goal['id']}", headers=self.headers).json()
        self.assertEqual(fetched["deadline"], "2026-06-01")

    def test_bill_and_expense_amounts_are_limited_to_cents(self) -> None:
        bill = self.client.post(
            "/bills",
            json={"vendor": "Netflix", "due_date": "2025-02-01", "amount": "0.005"},
            headers=self.headers,
        )
        expense = self.client.post(
            "/expenses",
            json={"title": "Tea", "category": "Food", "amount": "1.999"},
            headers=self.headers,
        )

        self.assertEqual(bill.status_code, 400)
        self.assertEqual(expense.status_code, 400)

    def test_empty_update_is_rejected(self) -> None:
        goal = self.client.post(
            "/goals",
            json={"title": "Trip", "target_amount": "1000", "deadline": "2026-06-01"},
            headers=self.headers,
        ).json()

        response = self.client.put(f"/goals/{goal['id']}", json={}, headers=self.headers)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"detail": "No fields to update."})


class ExpenseAnalyticsApiTests(ApiTestCase):
    def add_expense(self, title: str, category: str, amount: str, on: date) -> dict:
        response = self.client.post(
            "/expenses",
            json={"title": title, "category": category, "amount": amount, "date": on.isoformat()},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def test_monthly_comparison_has_twelve_months(self) -> None:
        today = date.today()
        self.add_expense("Lunch", "Food", "120", today)
        self.add_expense("Bus", "Travel", "30", today)

        response = self.client.get(
            "/expenses/analytics/comparison", params={"filter": "monthly"}, headers=self.headers
        )

        series = response.json()
        self.assertEqual(len(series), 12)
        self.assertEqual(series[0]["label"], "Jan")
        self.assertEqual(Decimal(series[today.month - 1]["total"]), Decimal("150"))

    def test_comparison_defaults_to_monthly(self) -> None:
        response = self.client.get("/expenses/analytics/comparison", headers=self.headers)

        self.assertEqual(len(response.json()), 12)

    def test_yearly_comparison_has_five_years(self) -> None:
        today = date.today()

        series = self.client.get(
            "/expenses/analytics/comparison", params={"filter": "yearly"}, headers=self.headers
        ).json()

        self.assertEqual([point["label"] for point in series], [
            str(year) for year in range(today.year - 4, today.year + 1)
        ])

    def test_unknown_filter_is_rejected(self) -> None:
        response = self.client.get(
            "/expenses/analytics/comparison", params={"filter": "hourly"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 400)

    def test_breakdown_groups_by_category(self) -> None:
        self.add_expense("Lunch", "Food", "120", date(2025, 1, 2))
        self.add_expense("Dinner", "Food", "80.50", date(2025, 1, 5))
        self.add_expense("Bus", "Travel", "30", date(2025, 1, 3))

        body = self.client.get("/expenses/analytics/breakdown", headers=self.headers).json()

        self.assertEqual([entry["category"] for entry in body], ["Food", "Travel"])
        self.assertEqual(Decimal(body[0]["total"]), Decimal("200.50"))
        self.assertEqual([item["title"] for item in body[0]["items"]], ["Dinner", "Lunch"])
        self.assertEqual(Decimal(body[0]["change_percent"]), Decimal("0"))

    def test_expense_notifications_include_currency(self) -> None:
        self.add_expense("Lunch", "Food", "120", date(2025, 1, 2))

        self.assertEqual(self.notifier.messages, ["New expense added: Lunch - ₹120.00"])


if __name__ == "__main__":
    unittest.main()
