import re
import sys
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parent))

from _support import FakePaymentProvider, wipe_db

import backend_app


class CorsConfigTests(unittest.TestCase):
    def test_wildcard_origins_expand_to_regex(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env(
            {"CORS_ALLOW_ORIGINS": "https://*.songqueue.example"}
        )

        self.assertEqual(allow_origins, [])
        self.assertIsNotNone(allow_regex)

        pattern = re.compile(allow_regex or "")
        self.assertIsNotNone(pattern.fullmatch("https://stream.songqueue.example"))
        self.assertIsNone(pattern.fullmatch("https://songqueue.example"))
        self.assertIsNone(pattern.fullmatch("https://example.com"))

    def test_mixed_wildcard_and_explicit_origins(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env(
            {"CORS_ALLOW_ORIGINS": "https://app.songqueue.example, https://*.songqueue.example"}
        )

        self.assertEqual(allow_origins, ["https://app.songqueue.example"])
        pattern = re.compile(allow_regex or "")
        self.assertIsNotNone(pattern.fullmatch("https://dashboard.songqueue.example"))
        self.assertIsNone(pattern.fullmatch("https://example.com"))

    def test_trailing_slash_is_ignored(self) -> None:
        allow_origins, _ = backend_app._cors_settings_from_env(
            {"CORS_ALLOW_ORIGINS": "https://app.songqueue.example/"}
        )
        self.assertEqual(allow_origins, ["https://app.songqueue.example"])

    def test_explicit_regex_is_kept(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env(
            {"CORS_ALLOW_ORIGIN_REGEX": r"https://preview-\d+\.example\.dev"}
        )
        self.assertEqual(allow_origins, [])
        pattern = re.compile(allow_regex or "")
        self.assertIsNotNone(pattern.fullmatch("https://preview-42.example.dev"))
        self.assertIsNone(pattern.fullmatch("https://anywhere.example"))

    def test_default_regex_retained_when_no_overrides(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env({})

        self.assertEqual(allow_origins, [])
        pattern = re.compile(allow_regex or "")
        self.assertIsNotNone(pattern.fullmatch("https://anywhere.example"))


class CheckoutCorsTests(unittest.TestCase):
    def setUp(self) -> None:
        wipe_db()
        self.client = TestClient(backend_app.app)

    def tearDown(self) -> None:
        self.client.close()

    def test_error_responses_carry_cors_headers(self) -> None:
        origin = "https://app.songqueue.example"
        with patch.object(backend_app, "payments", FakePaymentProvider()):
            response = self.client.post(
                "/payments/priority",
                json={"amount": 1, "songUrl": "https://example.com/a"},
                headers={"Origin": origin},
            )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.headers.get("access-control-allow-origin"), origin)
        self.assertEqual(response.headers.get("access-control-allow-credentials"), "true")

    def test_preflight_is_answered(self) -> None:
        origin = "https://app.songqueue.example"
        response = self.client.options(
            "/payments/bid",
            headers={
                "Origin": origin,
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "content-type,authorization",
            },
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers.get("access-control-allow-origin"), origin)


if __name__ == "__main__":
    unittest.main()
