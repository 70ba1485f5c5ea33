from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from core.models import AuditLog, Department


class DepartmentScopeTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.department_a = Department.objects.create(code="DA", name="Department A")
        self.department_b = Department.objects.create(code="DB", name="Department B")

        self.user = self.user_model.objects.create_user(
            username="dept-user",
            password="pass1234",
            department=self.department_a,
        )
        self.admin = self.user_model.objects.create_user(
            username="dept-admin",
            password="pass1234",
            department=self.department_a,
            access_level="department_admin",
        )
        self.super_admin = self.user_model.objects.create_user(
            username="super-admin",
            password="pass1234",
            access_level="super_admin",
        )

    def test_user_only_sees_own_department(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.get("/api/v1/departments/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        ids = {item["id"] for item in payload["results"]}
        self.assertIn(str(self.department_a.id), ids)
        self.assertNotIn(str(self.department_b.id), ids)

    def test_super_admin_sees_every_department(self):
        self.client.force_authenticate(user=self.super_admin)

        response = self.client.get("/api/v1/departments/")

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertEqual(ids, {str(self.department_a.id), str(self.department_b.id)})

    def test_department_admin_cannot_manage_departments_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.admin)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/departments/", {"code": "DC", "name": "Department C"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_super_admin_creates_department_with_audit_log(self):
        self.client.force_authenticate(user=self.super_admin)

        response = self.client.post(
            "/api/v1/departments/",
            {"code": "DC", "name": "Department C"},
            format="json",
            HTTP_X_REQUEST_ID="req-dept-1",
        )

        self.assertEqual(response.status_code, 201)
        self.assertTrue(
            AuditLog.objects.filter(action="department.create", entity="department", request_id="req-dept-1").exists()
        )

    def test_delete_deactivates_department(self):
        self.client.force_authenticate(user=self.super_admin)

        response = self.client.delete(f"/api/v1/departments/{self.department_b.id}/")

        self.assertEqual(response.status_code, 204)
        self.department_b.refresh_from_db()
        self.assertFalse(self.department_b.is_active)


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.department = Department.objects.create(code="AL", name="Audit")
        self.other_department = Department.objects.create(code="AO", name="Other")
        self.admin = self.user_model.objects.create_user(
            username="audit-admin",
            password="pass1234",
            department=self.department,
            access_level="department_admin",
        )
        self.user = self.user_model.objects.create_user(
            username="audit-user",
            password="pass1234",
            department=self.department,
        )

    def test_admin_sees_only_own_department_logs(self):
        own = AuditLog.objects.create(action="part.create", entity="part", department=self.department, actor=self.admin)
        other = AuditLog.objects.create(action="part.create", entity="part", department=self.other_department)
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/", {"action": "part.create"})

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertIn(str(own.id), ids)
        self.assertNotIn(str(other.id), ids)
        self.assertEqual(response.json()["results"][0]["actor_username"], "audit-admin")

    def test_regular_user_cannot_read_audit_logs(self):
        self.client.force_authenticate(user=self.user)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", department=self.department, actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)


class TokenLoginTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.department = Department.objects.create(code="TK", name="Tokens")
        self.user = get_user_model().objects.create_user(
            username="token-user",
            email="Token.User@Example.com",
            password="pass1234",
            department=self.department,
            access_level="department_admin",
        )

    def test_login_with_email_carries_department_claims(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "token.user@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        token = AccessToken(response.json()["access"])
        self.assertEqual(token["department_id"], str(self.department.id))
        self.assertEqual(token["access_level"], "department_admin")
        self.assertEqual(token["name"], "token-user")

    def test_login_with_wrong_password_is_rejected(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "token-user", "password": "wrong"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "authentication_failed")


class HealthCheckTests(TestCase):
    def test_healthz_echoes_request_id(self):
        response = self.client.get("/healthz/", HTTP_X_REQUEST_ID="req-health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "request_id": "req-health"})

    def test_readyz_checks_the_database(self):
        response = self.client.get("/readyz/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ready")
