import sys
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parent))

from _support import ADMIN_HEADERS, FakePaymentProvider, wipe_db

import backend_app


class PricingApiTests(unittest.TestCase):
    def setUp(self) -> None:
        wipe_db()
        self.client = TestClient(backend_app.app)

    def tearDown(self) -> None:
        self.client.close()

    def test_defaults_are_seeded(self) -> None:
        resp = self.client.get("/pricing/skip_line")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(
            resp.json(),
            {
                "configType": "skip_line",
                "minAmountCents": 500,
                "maxAmountCents": 10000,
                "stepCents": 50,
                "isActive": True,
            },
        )

        bid = self.client.get("/pricing/bid_increment").json()
        self.assertEqual(bid["percentage"], 10)

    def test_unknown_config_type_is_not_found(self) -> None:
        resp = self.client.get("/pricing/tip_jar")
        self.assertEqual(resp.status_code, 404)
        self.assertIn("error", resp.json())

    def test_update_requires_admin_token(self) -> None:
        resp = self.client.put("/pricing/skip_line", json={"minAmountCents": 700})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json(), {"error": "invalid admin token"})

    def test_update_rejects_invalid_values(self) -> None:
        resp = self.client.put(
            "/pricing/bid_increment", json={"percentage": 150}, headers=ADMIN_HEADERS
        )
        self.assertEqual(resp.status_code, 400)

        resp = self.client.put(
            "/pricing/skip_line", json={"minAmountCents": 20000}, headers=ADMIN_HEADERS
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.client.get("/pricing/skip_line").json()["minAmountCents"], 500)

        resp = self.client.put(
            "/pricing/skip_line", json={"percentage": 20}, headers=ADMIN_HEADERS
        )
        self.assertEqual(resp.status_code, 400)

    def test_priority_floor_follows_updated_config(self) -> None:
        resp = self.client.put(
            "/pricing/skip_line", json={"minAmountCents": 700}, headers=ADMIN_HEADERS
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["minAmountCents"], 700)

        fake = FakePaymentProvider()
        with patch.object(backend_app, "payments", fake):
            resp = self.client.post(
                "/payments/priority", json={"amount": 6, "songUrl": "https://example.com/a"}
            )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"error": "Minimum priority payment is 7.00"})
        self.assertEqual(fake.created, [])

    def test_inactive_skip_line_blocks_priority_checkout(self) -> None:
        self.client.put("/pricing/skip_line", json={"isActive": False}, headers=ADMIN_HEADERS)
        with patch.object(backend_app, "payments", FakePaymentProvider()):
            resp = self.client.post(
                "/payments/priority", json={"amount": 50, "songUrl": "https://example.com/a"}
            )
        self.assertEqual(resp.status_code, 400)

    def test_bid_increment_percentage_update(self) -> None:
        resp = self.client.put(
            "/pricing/bid_increment", json={"percentage": 25}, headers=ADMIN_HEADERS
        )
        self.assertEqual(resp.status_code, 200)
        db = backend_app.SessionLocal()
        try:
            self.assertEqual(backend_app.bid_increment_percent(db), 25)
        finally:
            db.close()

    def test_missing_bid_increment_row_falls_back_to_default(self) -> None:
        db = backend_app.SessionLocal()
        try:
            db.query(backend_app.PricingConfig).filter(
                backend_app.PricingConfig.config_type == "bid_increment"
            ).delete()
            db.commit()
            self.assertEqual(backend_app.bid_increment_percent(db), 10)
        finally:
            db.close()


class CentsConversionTests(unittest.TestCase):
    def test_half_up_rounding(self) -> None:
        self.assertEqual(backend_app._to_cents(5), 500)
        self.assertEqual(backend_app._to_cents(5.005), 501)
        self.assertEqual(backend_app._to_cents("19.995"), 2000)
        self.assertEqual(backend_app._to_cents(0.1), 10)

    def test_rejects_non_numbers(self) -> None:
        for value in ("abc", float("nan"), float("inf"), -1):
            with self.assertRaises(backend_app.InvalidInput):
                backend_app._to_cents(value)


if __name__ == "__main__":
    unittest.main()
