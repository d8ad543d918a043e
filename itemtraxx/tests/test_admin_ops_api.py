import os
import sys
import unittest
import uuid
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient


os.environ.setdefault("ITX_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ITX_SUPABASE_URL", "https://project.supabase.test")
os.environ.setdefault("ITX_PUBLISHABLE_KEY", "publishable-test-key")

APP_DIR = Path(__file__).resolve().parents[1]
for import_dir in (APP_DIR, Path(__file__).resolve().parent):
    if str(import_dir) not in sys.path:
        sys.path.insert(0, str(import_dir))

import AdminOps as app_module
from models.gear_models import AppRuntimeConfig, Gear, GearStatusHistory, Profile, Student, TenantPolicy
from services.errors import RateLimited, Unauthorized
from gear_fixtures import ADMIN_ID, OTHER_TENANT_ID, TENANT_ID, USER_ID, GearDatabase, hours_ago


ORPHAN_ID = "cccccccc-cccc-4ccc-8ccc-cccccccccccc"
TOKENS = {
    "admin-token": ADMIN_ID,
    "user-token": USER_ID,
    "orphan-token": ORPHAN_ID,
}


def _new_id() -> str:
    return str(uuid.uuid4())


class AdminOpsApiTests(unittest.TestCase):
    def setUp(self):
        self.gear_db = GearDatabase()
        self.gear_db.add(
            Profile(id=ADMIN_ID, tenant_id=TENANT_ID, role="tenant_admin"),
            Profile(id=USER_ID, tenant_id=TENANT_ID, role="tenant_user"),
            Profile(id=ORPHAN_ID, tenant_id=None, role="tenant_admin"),
        )
        self.original_session_factory = app_module.get_gear_session_factory
        app_module.get_gear_session_factory = lambda: self.gear_db.session_factory

        self.original_fetch_auth_user = app_module.fetch_auth_user
        self.original_send_email = app_module.send_reminder_email
        self.sent_emails = []

        def fake_fetch_auth_user(supabase_url, publishable_key, access_token, timeout=10.0):
            if access_token not in TOKENS:
                raise Unauthorized()
            return {"id": TOKENS[access_token]}

        def fake_send_email(api_key, sender, to, subject, html, timeout=20.0):
            self.sent_emails.append({"to": to, "subject": subject, "html": html, "timeout": timeout})

        app_module.fetch_auth_user = fake_fetch_auth_user
        app_module.send_reminder_email = fake_send_email
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.get_gear_session_factory = self.original_session_factory
        app_module.fetch_auth_user = self.original_fetch_auth_user
        app_module.send_reminder_email = self.original_send_email
        self.gear_db.close()

    def _post(self, action, payload=None, token="admin-token", headers=None):
        request_headers = {"Authorization": f"Bearer {token}"}
        request_headers.update(headers or {})
        body = {"action": action}
        if payload is not None:
            body["payload"] = payload
        return self.client.post("/admin-ops", json=body, headers=request_headers)

    def test_healthcheck(self):
        response = self.client.get("/healthz")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_missing_credential_is_unauthorized(self):
        response = self.client.post("/admin-ops", json={"action": "get_notifications"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Unauthorized"})

    def test_unknown_token_is_unauthorized(self):
        response = self._post("get_notifications", token="forged-token")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Unauthorized"})

    def test_profile_without_tenant_is_denied(self):
        response = self._post("get_notifications", token="orphan-token")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json(), {"error": "Access denied"})

    def test_tenant_user_cannot_run_admin_actions(self):
        for action in ("get_status_tracking", "set_due_policy", "send_overdue_reminders", "bulk_import_gear"):
            with self.subTest(action=action):
                response = self._post(action, {}, token="user-token")
                self.assertEqual(response.status_code, 403)
                self.assertEqual(response.json(), {"error": "Access denied"})
        self.assertEqual(self.sent_emails, [])

    def test_unknown_action_and_malformed_body_are_rejected(self):
        unknown = self._post("drop_everything")
        self.assertEqual(unknown.status_code, 400)
        self.assertEqual(unknown.json(), {"error": "Invalid action"})

        malformed = self.client.post(
            "/admin-ops",
            content="not json",
            headers={"Authorization": "Bearer admin-token", "Content-Type": "application/json"},
        )
        self.assertEqual(malformed.status_code, 400)
        self.assertEqual(malformed.json(), {"error": "Invalid request"})

    def test_missing_configuration_is_server_error(self):
        with mock.patch.dict(os.environ, {"ITX_SUPABASE_URL": ""}):
            response = self._post("get_notifications")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "Server misconfiguration"})

    def test_tenant_user_reads_notifications_for_own_tenant(self):
        student_id = _new_id()
        gear_id = _new_id()
        self.gear_db.add(
            Student(id=student_id, tenant_id=TENANT_ID, first_name="Ada", last_name="Park", email="ada@school.test"),
            Gear(
                id=gear_id,
                tenant_id=TENANT_ID,
                name="Camera",
                barcode="CAM-001",
                status="checked_out",
                checked_out_by=student_id,
                checked_out_at=hours_ago(100),
            ),
            Gear(id=_new_id(), tenant_id=TENANT_ID, name="Tripod", barcode="TRI-001", status="damaged"),
            Gear(id=_new_id(), tenant_id=TENANT_ID, name="Mic", barcode="MIC-001", status="checked_out", checked_out_at=hours_ago(2)),
            Gear(id=_new_id(), tenant_id=OTHER_TENANT_ID, name="Other", barcode="OTH-001", status="lost"),
            GearStatusHistory(id=_new_id(), tenant_id=TENANT_ID, gear_id=gear_id, status="checked_out", changed_at=hours_ago(100)),
            AppRuntimeConfig(key="maintenance_mode", value={"enabled": True, "message": "  Back at noon  "}),
        )

        response = self._post("get_notifications", token="user-token")
        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["overdue_count"], 1)
        self.assertEqual(data["flagged_count"], 1)
        self.assertEqual(data["due_hours"], 72)
        self.assertEqual(data["escalation_level_3_hours"], 240)
        self.assertEqual(data["maintenance"], {"enabled": True, "message": "Back at noon"})
        self.assertEqual(len(data["recent_status_events"]), 1)
        self.assertEqual(data["recent_status_events"][0]["gear"], {"name": "Camera", "barcode": "CAM-001"})

    def test_set_due_policy_normalizes_and_persists(self):
        response = self._post(
            "set_due_policy",
            {
                "checkout_due_hours": "48",
                "escalation_level_1_hours": 24,
                "escalation_level_2_hours": None,
                "escalation_level_3_hours": "nope",
            },
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json()["data"],
            {
                "checkout_due_hours": 48,
                "escalation_level_1_hours": 48,
                "escalation_level_2_hours": 168,
                "escalation_level_3_hours": 240,
            },
        )
        with self.gear_db.session() as db:
            stored = db.get(TenantPolicy, TENANT_ID)
            self.assertEqual(stored.checkout_due_hours, 48)
            self.assertEqual(stored.updated_by, ADMIN_ID)

    def test_set_due_policy_rejects_out_of_range_due_hours(self):
        response = self._post("set_due_policy", {"checkout_due_hours": 721})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid due time limit."})

    def test_set_due_policy_oversized_number_falls_back_to_default(self):
        response = self._post("set_due_policy", {"checkout_due_hours": 10**400, "escalation_level_1_hours": 10**400})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["checkout_due_hours"], 72)
        self.assertEqual(response.json()["data"]["escalation_level_1_hours"], 120)

    def test_rate_limited_response_carries_retry_after(self):
        original_enforce = app_module.enforce_rate_limit

        def exhausted(db, caller):
            raise RateLimited(42)

        app_module.enforce_rate_limit = exhausted
        try:
            response = self._post("get_notifications")
        finally:
            app_module.enforce_rate_limit = original_enforce
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.headers.get("retry-after"), "42")
        self.assertEqual(response.json(), {"error": "Rate limit exceeded, please try again in a minute."})

    def test_tenant_user_is_throttled_after_limit(self):
        original_enforce = app_module.enforce_rate_limit
        app_module.enforce_rate_limit = lambda db, caller: original_enforce(db, caller, now_ts=1_000_000.0)
        try:
            for _ in range(25):
                self.assertEqual(self._post("drop_everything", token="user-token").status_code, 400)
            response = self._post("get_notifications", token="user-token")
            admin_response = self._post("drop_everything", token="admin-token")
        finally:
            app_module.enforce_rate_limit = original_enforce
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.headers["retry-after"], "20")
        self.assertEqual(admin_response.status_code, 400)

    def test_send_reminders_requires_provider_key(self):
        self.gear_db.add(
            Gear(id=_new_id(), tenant_id=TENANT_ID, name="Camera", barcode="CAM-001", status="checked_out", checked_out_at=hours_ago(100)),
        )
        with mock.patch.dict(os.environ, {"ITX_RESEND_API_KEY": ""}):
            response = self._post("send_overdue_reminders")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(
            response.json(),
            {"error": "Email provider is not configured. Set ITX_RESEND_API_KEY to send reminders."},
        )
        self.assertEqual(self.sent_emails, [])

    def test_send_reminders_with_nothing_overdue_skips_provider(self):
        self.gear_db.add(
            Gear(id=_new_id(), tenant_id=TENANT_ID, name="Camera", barcode="CAM-001", status="checked_out", checked_out_at=hours_ago(10)),
        )
        with mock.patch.dict(os.environ, {"ITX_RESEND_API_KEY": "re_test"}):
            response = self._post("send_overdue_reminders")
        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["sent"], 0)
        self.assertEqual(data["recipients"], 0)
        self.assertEqual(data["escalation_recipients"], {"level_1": 0, "level_2": 0, "level_3": 0})
        self.assertEqual(self.sent_emails, [])

    def test_send_reminders_groups_items_per_borrower(self):
        student_id = _new_id()
        self.gear_db.add(
            Student(id=student_id, tenant_id=TENANT_ID, first_name="Ada", last_name="Park", email="Ada@School.test"),
            Gear(
                id=_new_id(),
                tenant_id=TENANT_ID,
                name="Camera",
                barcode="CAM-001",
                status="checked_out",
                checked_out_by=student_id,
                checked_out_at=hours_ago(100),
            ),
            Gear(
                id=_new_id(),
                tenant_id=TENANT_ID,
                name="Lens",
                barcode="LEN-001",
                status="checked_out",
                checked_out_by=student_id,
                checked_out_at=hours_ago(170),
            ),
        )
        with mock.patch.dict(os.environ, {"ITX_RESEND_API_KEY": "re_test", "ITX_EMAIL_TIMEOUT_SECONDS": "5"}):
            response = self._post("send_overdue_reminders")
        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["sent"], 1)
        self.assertEqual(data["recipients"], 1)
        self.assertEqual(data["escalation_recipients"], {"level_1": 0, "level_2": 1, "level_3": 0})
        self.assertEqual(len(self.sent_emails), 1)
        email = self.sent_emails[0]
        self.assertEqual(email["to"], "ada@school.test")
        self.assertEqual(email["subject"], "Second notice - ItemTraxx overdue item")
        self.assertEqual(email["timeout"], 5.0)
        self.assertIn("CAM-001", email["html"])
        self.assertIn("LEN-001", email["html"])

    def test_bulk_import_reports_inserted_and_skipped(self):
        response = self._post(
            "bulk_import_gear",
            {
                "rows": [
                    {"name": "Camera", "barcode": "CAM-001"},
                    {"name": "Camera copy", "barcode": "cam-001"},
                    {"name": "", "barcode": "NO-NAME"},
                ]
            },
        )
        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["inserted"], 1)
        self.assertEqual(data["skipped"], 2)
        self.assertEqual(data["inserted_items"][0]["barcode"], "CAM-001")
        self.assertEqual(
            data["skipped_rows"],
            [
                {"barcode": "cam-001", "reason": "Duplicate barcode in import"},
                {"barcode": "NO-NAME", "reason": "Missing name or barcode"},
            ],
        )

    def test_bulk_import_rejects_empty_batch(self):
        response = self._post("bulk_import_gear", {"rows": []})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Provide between 1 and 1000 rows."})

    def test_status_tracking_lists_flagged_gear_with_history(self):
        gear_id = _new_id()
        self.gear_db.add(
            Gear(id=gear_id, tenant_id=TENANT_ID, name="Tripod", barcode="TRI-001", status="in_repair"),
            Gear(id=_new_id(), tenant_id=TENANT_ID, name="Camera", barcode="CAM-001", status="available"),
            GearStatusHistory(id=_new_id(), tenant_id=TENANT_ID, gear_id=gear_id, status="in_repair", note="Leg bent"),
        )
        response = self._post("get_status_tracking")
        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual([item["barcode"] for item in data["flagged_items"]], ["TRI-001"])
        self.assertEqual(len(data["history"]), 1)
        self.assertEqual(data["history"][0]["gear"], {"name": "Tripod", "barcode": "TRI-001"})
        self.assertEqual(data["due_hours"], 72)


class CorsTests(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(app_module.app)
        self.env = mock.patch.dict(os.environ, {"ITX_ALLOWED_ORIGINS": "https://app.itemtraxx.test, https://admin.itemtraxx.test"})
        self.env.start()

    def tearDown(self):
        self.env.stop()

    def test_preflight_allows_listed_origin(self):
        response = self.client.options("/admin-ops", headers={"Origin": "https://admin.itemtraxx.test"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.text, "ok")
        self.assertEqual(response.headers["access-control-allow-origin"], "https://admin.itemtraxx.test")
        self.assertEqual(response.headers["access-control-allow-methods"], "POST, OPTIONS")
        self.assertEqual(response.headers["vary"], "Origin")

    def test_preflight_rejects_unknown_origin(self):
        response = self.client.options("/admin-ops", headers={"Origin": "https://evil.test"})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.text, "Origin not allowed")
        self.assertNotIn("access-control-allow-origin", response.headers)

    def test_post_from_unknown_origin_is_rejected(self):
        response = self.client.post(
            "/admin-ops",
            json={"action": "get_notifications"},
            headers={"Origin": "https://evil.test", "Authorization": "Bearer admin-token"},
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json(), {"error": "Origin not allowed"})

    def test_origin_and_credential_checks_precede_configuration(self):
        with mock.patch.dict(os.environ, {"ITX_DB_URL": "", "ITX_SUPABASE_URL": ""}):
            denied = self.client.post(
                "/admin-ops",
                json={"action": "get_notifications"},
                headers={"Origin": "https://evil.test", "Authorization": "Bearer admin-token"},
            )
            anonymous = self.client.post(
                "/admin-ops",
                json={"action": "get_notifications"},
                headers={"Origin": "https://app.itemtraxx.test"},
            )
        self.assertEqual(denied.status_code, 403)
        self.assertEqual(denied.json(), {"error": "Origin not allowed"})
        self.assertEqual(anonymous.status_code, 401)
        self.assertEqual(anonymous.json(), {"error": "Unauthorized"})

    def test_error_responses_echo_allowed_origin(self):
        response = self.client.post(
            "/admin-ops",
            json={"action": "get_notifications"},
            headers={"Origin": "https://app.itemtraxx.test"},
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.headers["access-control-allow-origin"], "https://app.itemtraxx.test")


if __name__ == "__main__":
    unittest.main()
