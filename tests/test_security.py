import base64
import unittest

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from app.security import (
    BasicAuthMiddleware,
    _parse_basic_auth_header,
    request_actor,
    verify_webhook_signature,
    webhook_signature,
)


def _basic(user, password):
    token = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {token}"}


class BasicAuthParsingTests(unittest.TestCase):
    def test_parse_basic_auth_header_valid(self):
        token = base64.b64encode(b"user:pa:ss").decode("ascii")
        creds = _parse_basic_auth_header(f"Basic {token}")
        self.assertIsNotNone(creds)
        self.assertEqual(creds.username, "user")
        self.assertEqual(creds.password, "pa:ss")

    def test_parse_basic_auth_header_rejects_malformed_values(self):
        token = base64.b64encode(b"userpass").decode("ascii")
        for header in ("", f"Bearer {token}", "Basic !!!notbase64!!!", f"Basic {token}"):
            with self.subTest(header=header):
                self.assertIsNone(_parse_basic_auth_header(header))


class BasicAuthMiddlewareTests(unittest.TestCase):
    def setUp(self):
        app = FastAPI()
        app.add_middleware(
            BasicAuthMiddleware,
            username="admin",
            password="s3cret",
            allow_paths={"/health", "/api/webhooks/jira"},
        )

        @app.get("/health")
        def health():
            return {"status": "healthy"}

        @app.get("/whoami")
        def whoami(request: Request):
            return {"actor": request_actor(request)}

        @app.post("/api/webhooks/jira")
        def webhook():
            return {"success": True}

        self.client = TestClient(app)

    def test_allowlisted_paths_are_open(self):
        self.assertEqual(self.client.get("/health").status_code, 200)
        self.assertEqual(self.client.post("/api/webhooks/jira", json={}).status_code, 200)

    def test_missing_or_wrong_credentials_are_challenged(self):
        for headers in ({}, _basic("admin", "nope")):
            with self.subTest(headers=headers):
                response = self.client.get("/whoami", headers=headers)
                self.assertEqual(response.status_code, 401)
                self.assertIn("Basic", response.headers["WWW-Authenticate"])

    def test_authenticated_user_becomes_the_actor(self):
        response = self.client.get("/whoami", headers=_basic("admin", "s3cret"))

        self.assertEqual(response.json(), {"actor": "admin"})


class WebhookSignatureTests(unittest.TestCase):
    body = b'{"webhookEvent":"jira:issue_updated"}'

    def test_signature_matches_body_and_secret(self):
        header = webhook_signature(self.body, "s3cret")

        self.assertTrue(header.startswith("sha256="))
        self.assertTrue(verify_webhook_signature(self.body, header, "s3cret"))
        self.assertTrue(verify_webhook_signature(self.body, header.upper().replace("SHA256", "sha256"), "s3cret"))

    def test_tampered_body_or_wrong_secret_fails(self):
        header = webhook_signature(self.body, "s3cret")

        self.assertFalse(verify_webhook_signature(self.body + b" ", header, "s3cret"))
        self.assertFalse(verify_webhook_signature(self.body, header, "other"))

    def test_missing_or_unsupported_header_fails(self):
        self.assertFalse(verify_webhook_signature(self.body, None, "s3cret"))
        self.assertFalse(verify_webhook_signature(self.body, "md5=abc", "s3cret"))
        self.assertFalse(verify_webhook_signature(self.body, "garbage", "s3cret"))


if __name__ == "__main__":
    unittest.main()
