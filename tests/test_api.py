"""End-to-end tests for the users HTTP API."""

from __future__ import annotations

import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from usersvc.api import create_app
from usersvc.config import Settings
from usersvc.database import Database


class UsersAPITests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        url = f"sqlite:///{Path(self._tempdir.name) / 'users.sqlite3'}"
        self.database = Database(url)
        self.app = create_app(database=self.database, settings=Settings(database_url=url))

    def tearDown(self) -> None:
        self.database.dispose()
        self._tempdir.cleanup()

    def test_create_user_returns_created_record(self) -> None:
        with TestClient(self.app) as client:
            response = client.post("/users", json={"name": "Alice", "email": "alice@example.com"})

        self.assertEqual(response.status_code, 201, response.text)
        payload = response.json()
        self.assertEqual(set(payload), {"id", "name", "email", "created_at"})
        self.assertEqual(payload["name"], "Alice")
        self.assertEqual(payload["email"], "alice@example.com")
        self.assertIsInstance(payload["id"], int)
        self.assertTrue(payload["created_at"])

    def test_created_ids_are_increasing_and_listed_in_order(self) -> None:
        emails = [f"user{index}@example.com" for index in range(4)]
        with TestClient(self.app) as client:
            ids = []
            for index, email in enumerate(emails):
                created = client.post("/users", json={"name": f"User {index}", "email": email})
                self.assertEqual(created.status_code, 201, created.text)
                new_id = created.json()["id"]
                self.assertTrue(all(new_id > previous for previous in ids))
                ids.append(new_id)

            listing = client.get("/users")

        self.assertEqual(listing.status_code, 200, listing.text)
        users = listing.json()["users"]
        self.assertEqual(len(users), len(emails))
        self.assertEqual([user["id"] for user in users], ids)
        self.assertEqual([user["email"] for user in users], emails)

    def test_list_users_when_empty(self) -> None:
        with TestClient(self.app) as client:
            response = client.get("/users")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"users": []})

    def test_duplicate_email_returns_conflict(self) -> None:
        body = {"name": "Bob", "email": "bob@example.com"}
        with TestClient(self.app) as client:
            first = client.post("/users", json=body)
            second = client.post("/users", json={**body, "name": "Robert"})

        self.assertEqual(first.status_code, 201, first.text)
        self.assertEqual(second.status_code, 409, second.text)
        self.assertEqual(
            second.json(),
            {"error": "Conflict", "message": "A user with this email already exists"},
        )
        self.assertEqual(self.database.count_users(), 1)

    def test_missing_email_is_rejected_before_database_write(self) -> None:
        with mock.patch.object(self.database, "create_user", wraps=self.database.create_user) as spy:
            with TestClient(self.app) as client:
                response = client.post("/users", json={"name": "No Email"})

        self.assertEqual(response.status_code, 400, response.text)
        payload = response.json()
        self.assertEqual(payload["error"], "Bad Request")
        self.assertIn("email", payload["message"])
        spy.assert_not_called()
        self.assertEqual(self.database.count_users(), 0)

    def test_malformed_email_is_rejected(self) -> None:
        with TestClient(self.app) as client:
            response = client.post("/users", json={"name": "Typo", "email": "not-an-email"})

        self.assertEqual(response.status_code, 400, response.text)
        self.assertEqual(self.database.count_users(), 0)

    def test_email_is_stored_exactly_as_submitted(self) -> None:
        with TestClient(self.app) as client:
            mixed = client.post("/users", json={"name": "Alice", "email": "Alice@Example.COM"})
            lower = client.post("/users", json={"name": "Alice 2", "email": "Alice@example.com"})
            listing = client.get("/users")

        self.assertEqual(mixed.status_code, 201, mixed.text)
        self.assertEqual(mixed.json()["email"], "Alice@Example.COM")
        self.assertEqual(lower.status_code, 201, lower.text)
        self.assertEqual(
            [user["email"] for user in listing.json()["users"]],
            ["Alice@Example.COM", "Alice@example.com"],
        )

    def test_special_use_domain_is_accepted(self) -> None:
        with TestClient(self.app) as client:
            response = client.post("/users", json={"name": "Dev", "email": "dev@service.local"})

        self.assertEqual(response.status_code, 201, response.text)
        self.assertEqual(response.json()["email"], "dev@service.local")

    def test_overlong_name_is_rejected(self) -> None:
        with TestClient(self.app) as client:
            response = client.post("/users", json={"name": "x" * 101, "email": "long@example.com"})

        self.assertEqual(response.status_code, 400, response.text)

    def test_health_and_time_endpoints(self) -> None:
        with TestClient(self.app) as client:
            health = client.get("/health")
            probe = client.get("/test")

        self.assertEqual(health.status_code, 200)
        self.assertEqual(health.json(), {"status": "healthy"})
        self.assertEqual(probe.status_code, 200, probe.text)
        self.assertEqual(probe.json()["status"], "success")
        self.assertTrue(probe.json()["time"])


class UnreachableDatabaseTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        url = f"sqlite:///{Path(self._tempdir.name) / 'missing' / 'users.sqlite3'}"
        self.database = Database(url)
        settings = Settings(database_url=url, schema_fail_fast=False)
        self.app = create_app(database=self.database, settings=settings)

    def tearDown(self) -> None:
        self.database.dispose()
        self._tempdir.cleanup()

    def test_health_reports_unhealthy(self) -> None:
        with TestClient(self.app) as client:
            response = client.get("/health")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json(), {"status": "unhealthy"})

    def test_time_endpoint_reports_failure(self) -> None:
        with TestClient(self.app) as client:
            response = client.get("/test")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "Database connection failed"})

    def test_user_endpoints_report_internal_errors(self) -> None:
        with TestClient(self.app) as client:
            created = client.post("/users", json={"name": "Carol", "email": "carol@example.com"})
            listing = client.get("/users")

        self.assertEqual(created.status_code, 500)
        self.assertEqual(
            created.json(),
            {"error": "Internal Server Error", "message": "Failed to create user"},
        )
        self.assertEqual(listing.status_code, 500)
        self.assertEqual(
            listing.json(),
            {"error": "Internal Server Error", "message": "Failed to retrieve users"},
        )


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
