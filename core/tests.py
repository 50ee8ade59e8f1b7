import json
import logging
import uuid

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser, Group
from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from common.logging import JsonFormatter
from common.permissions import (
    FINANCE,
    MANAGER,
    SALES,
    Actor,
    AuthenticationError,
    actor_from_user,
    actor_has_capability,
)
from core.models import Branch


class ActorResolutionTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="AR", name="Actor Branch")

    def test_branch_bound_sales_actor(self):
        user = self.user_model.objects.create_user(username="sales-ar", password="pass1234", branch=self.branch, role=SALES)

        actor = actor_from_user(user)

        self.assertEqual(actor.user_id, user.id)
        self.assertEqual(actor.roles, frozenset({SALES}))
        self.assertEqual(actor.branch_id, self.branch.id)
        self.assertEqual(actor.kind, Actor.BRANCH)

    def test_global_manager_actor_without_branch(self):
        user = self.user_model.objects.create_user(username="manager-ar", password="pass1234", role=MANAGER)

        actor = actor_from_user(user)

        self.assertEqual(actor.kind, Actor.GLOBAL)
        self.assertTrue(actor.can_access_branch(self.branch.id))

    def test_group_named_after_role_grants_extra_role(self):
        user = self.user_model.objects.create_user(username="sales-finance", password="pass1234", branch=self.branch, role=SALES)
        user.groups.add(Group.objects.create(name=FINANCE), Group.objects.create(name="unrelated"))

        actor = actor_from_user(user)

        self.assertEqual(actor.roles, frozenset({SALES, FINANCE}))
        self.assertTrue(actor_has_capability(actor, "purchase.finance"))

    def test_superuser_acts_as_manager(self):
        user = self.user_model.objects.create_superuser(username="root-ar", password="pass1234", email="root@example.com")

        self.assertEqual(actor_from_user(user).roles, frozenset({MANAGER}))

    def test_anonymous_user_cannot_become_actor(self):
        with self.assertRaises(AuthenticationError):
            actor_from_user(AnonymousUser())

    def test_sales_actor_is_limited_to_own_branch(self):
        other = Branch.objects.create(code="AR2", name="Other")
        actor = Actor(user_id=uuid.uuid4(), roles=frozenset({SALES}), branch_id=self.branch.id)

        self.assertTrue(actor.can_access_branch(self.branch.id))
        self.assertFalse(actor.can_access_branch(other.id))
        self.assertFalse(actor_has_capability(actor, "purchase.approve"))


class TokenClaimsTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.branch = Branch.objects.create(code="TK", name="Token Branch")
        self.user = get_user_model().objects.create_user(
            username="token-sales",
            email="Token.Sales@Example.com",
            password="pass1234",
            branch=self.branch,
            role=SALES,
        )

    def test_token_can_be_obtained_with_email_and_carries_role_and_branch(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "token.sales@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        token = AccessToken(response.json()["access"])
        self.assertEqual(token["role"], SALES)
        self.assertEqual(token["roles"], [SALES])
        self.assertEqual(token["branch_id"], str(self.branch.id))

    def test_email_is_stored_lowercase(self):
        self.user.refresh_from_db()
        self.assertEqual(self.user.email, "token.sales@example.com")


class BranchAccessRoleTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.branch_a = Branch.objects.create(code="BA", name="Branch A")
        self.branch_b = Branch.objects.create(code="BB", name="Branch B")

        self.manager = self.user_model.objects.create_user(
            username="branch-manager",
            password="pass1234",
            branch=self.branch_a,
            role=MANAGER,
        )
        self.sales = self.user_model.objects.create_user(
            username="branch-sales",
            password="pass1234",
            branch=self.branch_a,
            role=SALES,
        )

    def test_manager_can_list_multiple_branches(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        ids = {item["id"] for item in payload["results"]}
        self.assertIn(str(self.branch_a.id), ids)
        self.assertIn(str(self.branch_b.id), ids)

    def test_sales_branch_scope_is_preserved(self):
        self.client.force_authenticate(user=self.sales)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertIn(str(self.branch_a.id), ids)
        self.assertNotIn(str(self.branch_b.id), ids)

    @override_settings(PURCHASING_BRANCH_SCOPING=False)
    def test_branch_scope_can_be_disabled(self):
        self.client.force_authenticate(user=self.sales)

        response = self.client.get("/api/v1/branches/")

        ids = {item["id"] for item in response.json()["results"]}
        self.assertIn(str(self.branch_b.id), ids)

    def test_unauthenticated_request_uses_error_envelope(self):
        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(payload["code"], "not_authenticated")
        self.assertEqual(payload["status"], 401)


class HealthEndpointTests(TestCase):
    def test_healthz_echoes_request_id(self):
        response = APIClient().get("/api/v1/healthz/", HTTP_X_REQUEST_ID="req-health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "request_id": "req-health"})
        self.assertEqual(response["X-Request-ID"], "req-health")

    def test_readyz_reports_database_ready(self):
        response = APIClient().get("/api/v1/readyz/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ready")


class JsonFormatterTests(SimpleTestCase):
    def test_workflow_context_fields_are_serialized(self):
        order_id = uuid.uuid4()
        record = logging.LogRecord("purchasing.workflow", logging.WARNING, __file__, 1, "cancel failed", None, None)
        record.order_id = order_id
        record.transition = "completely_registered->cancelled"
        record.error_code = "invalid_transition"

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["order_id"], str(order_id))
        self.assertEqual(payload["transition"], "completely_registered->cancelled")
        self.assertEqual(payload["error_code"], "invalid_transition")
        self.assertEqual(payload["level"], "WARNING")
        self.assertNotIn("actor_id", payload)
