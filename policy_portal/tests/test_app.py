import unittest
from datetime import date, timedelta

from fastapi.testclient import TestClient

from policy_portal.app import create_app
from policy_portal.auth import InMemoryAuthAdminClient
from policy_portal.db import ROLE_ADMIN, ROLE_CLIENT, AccessProfile, InMemoryDbClient
from policy_portal.dependencies import (
    get_auth_client,
    get_db_client,
    get_notifier,
    get_storage_client,
)
from policy_portal.notifier import InMemoryNotifier
from policy_portal.storage import InMemoryStorageClient


class PortalApiTestCase(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.auth = InMemoryAuthAdminClient()
        self.storage = InMemoryStorageClient()
        self.notifier = InMemoryNotifier()

        app = create_app()
        app.dependency_overrides[get_db_client] = lambda: self.db
        app.dependency_overrides[get_auth_client] = lambda: self.auth
        app.dependency_overrides[get_storage_client] = lambda: self.storage
        app.dependency_overrides[get_notifier] = lambda: self.notifier
        self.client = TestClient(app)

        admin = self.auth.create_user("admin@portal.test", "Admin123!")
        self.db.insert_profile(AccessProfile(id=admin.id, client_id=None, role=ROLE_ADMIN))
        self.admin_headers = {"Authorization": f"Bearer {self.auth.issue_token(admin.id)}"}

    def client_headers(self, client_id, email="cliente@portal.test", first_login=False):
        user = self.auth.create_user(email, "Cliente123!")
        self.db.insert_profile(
            AccessProfile(
                id=user.id, client_id=client_id, role=ROLE_CLIENT, first_login=first_login
            )
        )
        return {"Authorization": f"Bearer {self.auth.issue_token(user.id)}"}


class FixProfilesApiTests(PortalApiTestCase):
    def test_requires_admin(self):
        response = self.client.post("/api/admin/fix-profiles")
        self.assertEqual(response.status_code, 403)

        orphan = self.db.create_client(name="Ana", email="ana@x.com", document="1")
        linked = self.db.create_client(name="Bea", email="bea@x.com", document="2")
        headers = self.client_headers(linked.id)
        response = self.client.post("/api/admin/fix-profiles", headers=headers)
        self.assertEqual(response.status_code, 403)
        self.assertIsNone(self.db.get_profile_for_client(orphan.id))

    def test_defaults_to_dry_run(self):
        self.db.create_client(name="Ana", email="ana@x.com", document="1")

        response = self.client.post("/api/admin/fix-profiles", headers=self.admin_headers)

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["summary"]["dryRun"])
        self.assertEqual(payload["summary"]["limit"], 20)
        self.assertEqual(payload["summary"]["createdProfiles"], 1)
        self.assertEqual(payload["details"][0]["action"], "would_create")
        self.assertEqual(len(self.auth.users), 1)

    def test_live_run_creates_and_emails(self):
        orphan = self.db.create_client(name="Ana", email="ana@x.com", document="1")
        self.db.create_client(name="Sin correo", email=None, document="2")

        response = self.client.post(
            "/api/admin/fix-profiles",
            params={"dryRun": "false", "limit": "10", "sendEmails": "true"},
            headers=self.admin_headers,
        )

        self.assertEqual(response.status_code, 200)
        summary = response.json()["summary"]
        self.assertFalse(summary["dryRun"])
        self.assertEqual(summary["limit"], 10)
        self.assertEqual(summary["processed"], 2)
        self.assertEqual(summary["createdProfiles"], 1)
        self.assertEqual(summary["skippedNoEmail"], 1)
        self.assertEqual(summary["emailsSent"], 1)
        self.assertIsNotNone(self.db.get_profile_for_client(orphan.id))
        self.assertEqual(self.notifier.sent[0]["email"], "ana@x.com")

    def test_only_exact_false_disables_dry_run(self):
        self.db.create_client(name="Ana", email="ana@x.com", document="1")
        response = self.client.post(
            "/api/admin/fix-profiles",
            params={"dryRun": "FALSE", "limit": "abc", "sendEmails": "yes"},
            headers=self.admin_headers,
        )
        summary = response.json()["summary"]
        self.assertTrue(summary["dryRun"])
        self.assertEqual(summary["limit"], 20)
        self.assertEqual(summary["emailsSent"], 0)

    def test_setup_failure_returns_500(self):
        class BrokenDb(InMemoryDbClient):
            def list_clients(self):
                raise RuntimeError("connection refused")

        broken = BrokenDb()
        broken.profiles = self.db.profiles
        self.client.app.dependency_overrides[get_db_client] = lambda: broken

        response = self.client.post("/api/admin/fix-profiles", headers=self.admin_headers)

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["detail"], "Error fetching clients: connection refused")


class AuthApiTests(PortalApiTestCase):
    def test_signin_returns_landing_path(self):
        response = self.client.post(
            "/api/auth/signin",
            json={"email": "admin@portal.test", "password": "Admin123!"},
        )
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["role"], "admin")
        self.assertEqual(payload["redirect_to"], "/admin")
        self.assertTrue(payload["access_token"])

    def test_signin_rejects_bad_password(self):
        response = self.client.post(
            "/api/auth/signin",
            json={"email": "admin@portal.test", "password": "wrong"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Invalid login credentials")

    def test_me_flags_first_login(self):
        client = self.db.create_client(name="Ana", email="ana@x.com", document="1")
        headers = self.client_headers(client.id, email="ana@x.com", first_login=True)

        response = self.client.get("/api/me", headers=headers)

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["role"], "client")
        self.assertEqual(payload["redirect_to"], "/cliente")
        self.assertTrue(payload["needs_password_change"])
        self.assertEqual(payload["client"]["id"], client.id)

    def test_me_requires_token(self):
        self.assertEqual(self.client.get("/api/me").status_code, 401)
        response = self.client.get("/api/me", headers={"Authorization": "Bearer nope"})
        self.assertEqual(response.status_code, 401)

    def test_change_password_validates_and_clears_first_login(self):
        client = self.db.create_client(name="Ana", email="ana@x.com", document="1")
        headers = self.client_headers(client.id, email="ana@x.com", first_login=True)

        weak = self.client.post(
            "/api/auth/change-password", json={"password": "short"}, headers=headers
        )
        self.assertEqual(weak.status_code, 400)
        self.assertIn("uppercase", weak.json()["detail"])

        ok = self.client.post(
            "/api/auth/change-password", json={"password": "Nueva123!"}, headers=headers
        )
        self.assertEqual(ok.status_code, 200)
        profile = self.db.get_profile_for_client(client.id)
        self.assertFalse(profile.first_login)
        self.assertEqual(self.auth.passwords[profile.id], "Nueva123!")

    def test_forgot_password_requests_recovery(self):
        response = self.client.post(
            "/api/auth/forgot-password", json={"email": "ana@x.com"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.auth.recovery_requests, ["ana@x.com"])


class ClientAdminApiTests(PortalApiTestCase):
    def test_create_client_provisions_account(self):
        response = self.client.post(
            "/api/create-client",
            json={"name": "Ana", "email": "ana@x.com", "document": "V-1", "client_number": 7},
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["email_sent"])
        self.assertEqual(payload["client"]["client_number"], 7)
        self.assertEqual(self.notifier.sent[0]["temp_password"], payload["temp_password"])

        profile = self.db.get_profile_for_client(payload["client"]["id"])
        self.assertTrue(profile.first_login)
        self.assertEqual(self.auth.passwords[profile.id], payload["temp_password"])

    def test_create_client_requires_fields(self):
        response = self.client.post(
            "/api/create-client", json={"name": "Ana"}, headers=self.admin_headers
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.db.clients, {})

    def test_create_client_with_taken_email_leaves_orphan(self):
        self.auth.create_user("ana@x.com", "pw")
        response = self.client.post(
            "/api/create-client",
            json={"name": "Ana", "email": "ana@x.com", "document": "V-1"},
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 500)
        self.assertIn("Auth create failed", response.json()["detail"])
        self.assertEqual(len(self.db.clients), 1)

    def test_list_clients_flags_access(self):
        with_access = self.db.create_client(name="Ana", email="ana@x.com", document="1")
        self.client_headers(with_access.id)
        self.db.create_client(name="Bea", email="bea@x.com", document="2")

        response = self.client.get("/api/clients", headers=self.admin_headers)

        self.assertEqual(response.status_code, 200)
        access = {c["name"]: c["has_access"] for c in response.json()["clients"]}
        self.assertEqual(access, {"Ana": True, "Bea": False})

    def test_update_client_conflicts(self):
        self.db.create_client(name="Ana", email="ana@x.com", document="1", client_number=5)
        bea = self.db.create_client(name="Bea", email="bea@x.com", document="2")

        for body in ({"client_number": "5"}, {"document": "1"}):
            with self.subTest(body=body):
                response = self.client.patch(
                    f"/api/clients/{bea.id}", json=body, headers=self.admin_headers
                )
                self.assertEqual(response.status_code, 409)

        response = self.client.patch(
            "/api/clients/missing", json={"name": "X"}, headers=self.admin_headers
        )
        self.assertEqual(response.status_code, 404)

    def test_update_client_coerces_client_number(self):
        ana = self.db.create_client(name="Ana", email="ana@x.com", document="1", client_number=5)

        response = self.client.patch(
            f"/api/clients/{ana.id}", json={"client_number": "12"}, headers=self.admin_headers
        )
        self.assertEqual(response.json()["client_number"], 12)

        response = self.client.patch(
            f"/api/clients/{ana.id}", json={"client_number": ""}, headers=self.admin_headers
        )
        self.assertIsNone(response.json()["client_number"])

    def test_adding_email_creates_account(self):
        ana = self.db.create_client(name="Ana", email=None, document="1")

        response = self.client.patch(
            f"/api/clients/{ana.id}",
            json={"email": "ana@x.com", "create_user_account": True},
            headers=self.admin_headers,
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["user_created"])
        self.assertTrue(payload["email_sent"])
        self.assertEqual(payload["email"], "ana@x.com")
        self.assertIsNotNone(self.db.get_profile_for_client(ana.id))

    def test_adding_registered_email_conflicts(self):
        self.auth.create_user("ana@x.com", "pw")
        ana = self.db.create_client(name="Ana", email=None, document="1")

        response = self.client.patch(
            f"/api/clients/{ana.id}",
            json={"email": "ana@x.com", "create_user_account": True},
            headers=self.admin_headers,
        )

        self.assertEqual(response.status_code, 409)
        self.assertIsNone(self.db.get_client(ana.id).email)

    def test_delete_client_removes_everything(self):
        ana = self.db.create_client(name="Ana", email="ana@x.com", document="1")
        self.client_headers(ana.id, email="ana@x.com")
        path = f"policies/{ana.id}/doc.pdf"
        self.storage.upload_bytes(path, b"%PDF")
        self.db.create_policy(
            {
                "client_id": ana.id,
                "policy_number": "P-1",
                "type": "Auto",
                "start_date": date(2024, 1, 1),
                "end_date": date(2025, 1, 1),
                "file_urls": [self.storage.public_url(path)],
            }
        )

        response = self.client.delete(f"/api/clients/{ana.id}", headers=self.admin_headers)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["success"])
        self.assertIsNone(self.db.get_client(ana.id))
        self.assertEqual(self.db.policies, {})
        self.assertIsNone(self.db.get_profile_for_client(ana.id))
        self.assertEqual(self.storage.stored_objects, {})
        self.assertEqual(len(self.auth.users), 1)


class PolicyApiTests(PortalApiTestCase):
    def setUp(self):
        super().setUp()
        self.ana = self.db.create_client(name="Ana", email="ana@x.com", document="1")
        self.company = self.db.create_company("Seguros Caracas")
        self.today = date.today()

    def add_policy(self, days_left, status=None, number="P"):
        return self.db.create_policy(
            {
                "client_id": self.ana.id,
                "company_id": self.company.id,
                "policy_number": number,
                "type": "Auto",
                "start_date": self.today - timedelta(days=365),
                "end_date": self.today + timedelta(days=days_left),
                "status": status,
            }
        )

    def test_create_policy_defaults_relationship(self):
        response = self.client.post(
            "/api/policies",
            json={
                "client_id": self.ana.id,
                "company_id": self.company.id,
                "policy_number": "P-1",
                "type": "Salud",
                "start_date": "2025-01-01",
                "end_date": "2026-01-01",
            },
            headers=self.admin_headers,
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["relationship"], "Titular")

    def test_near_expiration_window_and_sweep(self):
        soon = self.add_policy(10, number="soon")
        self.add_policy(90, number="later")
        renewed = self.add_policy(5, status="Renovada", number="renewed")
        self.add_policy(40, status="Renovada", number="renewed-later")

        response = self.client.get(
            "/api/policies/near-expiration", headers=self.admin_headers
        )

        self.assertEqual(response.status_code, 200)
        numbers = [p["policy_number"] for p in response.json()["policies"]]
        self.assertEqual(numbers, ["soon"])
        self.assertEqual(response.json()["policies"][0]["company_name"], "Seguros Caracas")
        self.assertEqual(response.json()["policies"][0]["client_name"], "Ana")
        self.assertEqual(self.db.get_policy(renewed.id).status, "Pendiente")
        self.assertIsNone(self.db.get_policy(soon.id).status)

    def test_near_expiration_shows_renewed_on_request(self):
        self.add_policy(200, status="Renovada", number="renewed")
        self.add_policy(10, number="soon")

        response = self.client.get(
            "/api/policies/near-expiration",
            params={"status": "Renovada"},
            headers=self.admin_headers,
        )
        numbers = [p["policy_number"] for p in response.json()["policies"]]
        self.assertEqual(numbers, ["renewed"])

    def test_upload_document_appends_url(self):
        policy = self.add_policy(100)

        response = self.client.post(
            f"/api/policies/{policy.id}/documents",
            files={"file": ("poliza.pdf", b"%PDF-1.4", "application/pdf")},
            headers=self.admin_headers,
        )

        self.assertEqual(response.status_code, 200)
        urls = response.json()["file_urls"]
        self.assertEqual(len(urls), 1)
        self.assertIn(f"policies/{self.ana.id}/{policy.id}-", urls[0])
        self.assertTrue(urls[0].endswith(".pdf"))
        self.assertEqual(len(self.storage.stored_objects), 1)

    def test_update_policy_and_missing(self):
        policy = self.add_policy(100)
        response = self.client.patch(
            f"/api/policies/{policy.id}", json={"notes": "cambio"}, headers=self.admin_headers
        )
        self.assertEqual(response.json()["notes"], "cambio")

        response = self.client.get("/api/policies/missing", headers=self.admin_headers)
        self.assertEqual(response.status_code, 404)

    def test_client_sees_only_own_policies_and_stats(self):
        self.add_policy(10, number="mine")
        self.add_policy(-10, number="expired")
        other = self.db.create_client(name="Bea", email="bea@x.com", document="2")
        self.db.create_policy(
            {
                "client_id": other.id,
                "policy_number": "theirs",
                "type": "Auto",
                "start_date": self.today,
                "end_date": self.today + timedelta(days=10),
            }
        )
        headers = self.client_headers(self.ana.id, email="ana@x.com")

        response = self.client.get("/api/cliente/policies", headers=headers)
        numbers = sorted(p["policy_number"] for p in response.json()["policies"])
        self.assertEqual(numbers, ["expired", "mine"])

        stats = self.client.get("/api/cliente/stats", headers=headers).json()
        self.assertEqual(
            stats,
            {
                "total_policies": 2,
                "active_policies": 1,
                "expiring_policies": 1,
                "expired_policies": 1,
            },
        )

        self.assertEqual(self.client.get("/api/policies", headers=headers).status_code, 403)

    def test_admin_stats(self):
        self.add_policy(10)
        self.add_policy(100)

        stats = self.client.get("/api/admin/stats", headers=self.admin_headers).json()

        self.assertEqual(stats["total_clients"], 1)
        self.assertEqual(stats["total_policies"], 2)
        self.assertEqual(stats["active_policies"], 2)
        self.assertEqual(stats["expiring_policies"], 1)
        self.assertEqual(stats["policies_by_company"], {"Seguros Caracas": 2})

    def test_companies_listed_by_name(self):
        self.db.create_company("Alfa")
        response = self.client.get("/api/companies", headers=self.admin_headers)
        self.assertEqual([c["name"] for c in response.json()], ["Alfa", "Seguros Caracas"])


if __name__ == "__main__":
    unittest.main()
