import sys
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parent))

from _support import FakePaymentProvider, wipe_db

import backend_app


class PriorityPaymentTests(unittest.TestCase):
    def setUp(self) -> None:
        wipe_db()
        self.fake = FakePaymentProvider()
        self._payments_patch = patch.object(backend_app, "payments", self.fake)
        self._payments_patch.start()
        self.client = TestClient(backend_app.app)

    def tearDown(self) -> None:
        self.client.close()
        self._payments_patch.stop()

    def _checkout(self, **overrides) -> str:
        payload = {
            "amount": 7.5,
            "songUrl": "https://youtu.be/abcdefghijk",
            "artistName": "Band",
            "songTitle": "Tune",
            "email": "fan@example.com",
        }
        payload.update(overrides)
        resp = self.client.post("/payments/priority", json=payload, headers={"Origin": "https://queue.example.com"})
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()["sessionId"]

    def _submission_count(self) -> int:
        db = backend_app.SessionLocal()
        try:
            return db.query(backend_app.Submission).count()
        finally:
            db.close()

    def test_checkout_carries_metadata_and_amount(self) -> None:
        session_id = self._checkout()

        created = self.fake.created[-1]
        self.assertEqual(created["amount_cents"], 750)
        self.assertTrue(created["success_url"].startswith("https://queue.example.com/"))
        metadata = self.fake.sessions[session_id].metadata
        self.assertEqual(metadata["type"], "priority")
        self.assertEqual(metadata["amount_cents"], "750")
        self.assertEqual(metadata["song_url"], "https://youtu.be/abcdefghijk")
        self.assertEqual(metadata["email"], "fan@example.com")

    def test_defaults_for_missing_song_fields(self) -> None:
        session_id = self._checkout(artistName=None, songTitle="  ")
        metadata = self.fake.sessions[session_id].metadata
        self.assertEqual(metadata["artist_name"], "Unknown Artist")
        self.assertEqual(metadata["song_title"], "Untitled")

    def test_amount_below_floor_is_rejected(self) -> None:
        resp = self.client.post(
            "/payments/priority", json={"amount": 4.99, "songUrl": "https://example.com/a"}
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"error": "Minimum priority payment is 5.00"})
        self.assertEqual(self.fake.sessions, {})

    def test_song_url_is_required(self) -> None:
        resp = self.client.post("/payments/priority", json={"amount": 10})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"error": "Song URL is required"})

    def test_malformed_body_renders_error_envelope(self) -> None:
        resp = self.client.post("/payments/priority", json={"songUrl": "https://example.com/a"})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("error", resp.json())

    def test_unpaid_session_is_rejected(self) -> None:
        session_id = self._checkout()
        resp = self.client.post("/payments/priority/verify", json={"sessionId": session_id})
        self.assertEqual(resp.status_code, 402)
        self.assertEqual(resp.json(), {"error": "Payment not completed"})
        self.assertEqual(self._submission_count(), 0)

    def test_verify_creates_priority_submission_once(self) -> None:
        session_id = self._checkout()
        self.fake.mark_paid(session_id)

        first = self.client.post("/payments/priority/verify", json={"sessionId": session_id})
        self.assertEqual(first.status_code, 200, first.text)
        body = first.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["message"], "Your priority submission has been added to the queue!")
        self.assertTrue(body["submission"]["isPriority"])
        self.assertEqual(body["submission"]["amountPaidCents"], 750)
        self.assertEqual(body["submission"]["songTitle"], "Tune")

        second = self.client.post("/payments/priority/verify", json={"sessionId": session_id})
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.json()["submission"]["id"], body["submission"]["id"])
        self.assertEqual(self._submission_count(), 1)

    def test_verify_uses_session_metadata_not_request(self) -> None:
        session_id = self.fake.paid_session(
            {"type": "priority", "song_url": "https://example.com/stored", "amount_cents": "900"},
            900,
        )
        resp = self.client.post(
            "/payments/priority/verify",
            json={"sessionId": session_id, "songUrl": "https://example.com/forged", "amount": 1},
        )
        self.assertEqual(resp.status_code, 200)
        submission = resp.json()["submission"]
        self.assertEqual(submission["songUrl"], "https://example.com/stored")
        self.assertEqual(submission["amountPaidCents"], 900)

    def test_session_of_another_type_is_rejected(self) -> None:
        session_id = self.fake.paid_session({"type": "bid", "submission_id": "x"}, 500)
        resp = self.client.post("/payments/priority/verify", json={"sessionId": session_id})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"error": "Invalid session type"})

    def test_unknown_session_is_rejected(self) -> None:
        resp = self.client.post("/payments/priority/verify", json={"sessionId": "cs_missing"})
        self.assertEqual(resp.status_code, 400)

    def test_provider_failure_is_upstream_error(self) -> None:
        with patch.object(
            self.fake,
            "create_checkout_session",
            side_effect=backend_app.UpstreamFailure("could not create checkout session"),
        ):
            resp = self.client.post(
                "/payments/priority", json={"amount": 10, "songUrl": "https://example.com/a"}
            )
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json(), {"error": "could not create checkout session"})


class PaidSubmissionTests(unittest.TestCase):
    def setUp(self) -> None:
        wipe_db()
        self.fake = FakePaymentProvider()
        self._payments_patch = patch.object(backend_app, "payments", self.fake)
        self._payments_patch.start()
        self.client = TestClient(backend_app.app)

    def tearDown(self) -> None:
        self.client.close()
        self._payments_patch.stop()

    def test_amount_must_be_within_submission_range(self) -> None:
        low = self.client.post(
            "/payments/submission", json={"amount": 0.25, "songUrl": "https://example.com/a"}
        )
        self.assertEqual(low.status_code, 400)
        self.assertEqual(low.json(), {"error": "Amount must be between 0.50 and 100.00"})

        high = self.client.post(
            "/payments/submission", json={"amount": 150, "songUrl": "https://example.com/a"}
        )
        self.assertEqual(high.status_code, 400)

    def test_verify_inserts_standard_submission(self) -> None:
        resp = self.client.post(
            "/payments/submission",
            json={"amount": 2, "songUrl": "https://example.com/a", "songTitle": "Paid"},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        session_id = self.fake.last_session_id()
        self.fake.mark_paid(session_id)

        first = self.client.post("/payments/submission/verify", json={"sessionId": session_id})
        second = self.client.post("/payments/submission/verify", json={"sessionId": session_id})
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["message"], 'Your song "Paid" has been submitted!')
        self.assertEqual(first.json()["submissionId"], second.json()["submissionId"])

        detail = self.client.get(f"/submissions/{first.json()['submissionId']}").json()
        self.assertFalse(detail["isPriority"])
        self.assertEqual(detail["amountPaidCents"], 200)


class AuthCollaboratorTests(unittest.TestCase):
    def test_missing_header_is_anonymous(self) -> None:
        self.assertIsNone(backend_app.resolve_bearer_user(None))
        self.assertIsNone(backend_app.resolve_bearer_user("Basic abc"))

    def test_valid_token_resolves_user(self) -> None:
        class _Resp:
            status_code = 200

            def json(self):
                return {"id": "user-1", "email": "u@example.com"}

        with patch.object(backend_app, "AUTH_USER_URL", "https://auth.example.com/user"), patch(
            "backend_app.requests.get", return_value=_Resp()
        ) as mocked:
            user = backend_app.resolve_bearer_user("Bearer tok")

        self.assertEqual(user, backend_app.AuthUser(id="user-1", email="u@example.com"))
        self.assertEqual(mocked.call_args.kwargs["headers"]["Authorization"], "Bearer tok")
        self.assertEqual(mocked.call_args.kwargs["timeout"], backend_app.AUTH_TIMEOUT_SECONDS)

    def test_unreachable_auth_service_is_anonymous(self) -> None:
        with patch.object(backend_app, "AUTH_USER_URL", "https://auth.example.com/user"), patch(
            "backend_app.requests.get",
            side_effect=backend_app.requests.ConnectionError("down"),
        ):
            self.assertIsNone(backend_app.resolve_bearer_user("Bearer tok"))


if __name__ == "__main__":
    unittest.main()
