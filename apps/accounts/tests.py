from io import StringIO

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.core.management import call_command
from rest_framework.test import APITestCase

from apps.accounts.models import PayoutAccount, UserRole
from apps.common.actors import Actor, resolve_role
from apps.common.permissions import has_capability

User = get_user_model()


class RoleTests(APITestCase):
    def test_seed_roles_creates_one_group_per_role(self):
        out = StringIO()
        call_command("seed_roles", stdout=out)
        call_command("seed_roles", stdout=out)
        self.assertEqual(set(Group.objects.values_list("name", flat=True)), set(UserRole.values))
        self.assertIn("exists", out.getvalue())

    def test_group_membership_overrides_role_field(self):
        user = User.objects.create_user(username="promoted", password="secret123", role=UserRole.CUSTOMER)
        self.assertEqual(resolve_role(user), UserRole.CUSTOMER)

        user.groups.add(Group.objects.create(name=UserRole.DESIGNER))
        actor = Actor.from_user(user)
        self.assertEqual(actor.role, UserRole.DESIGNER)
        self.assertTrue(actor.can_design)
        self.assertFalse(actor.is_admin)

    def test_capabilities_follow_role(self):
        admin = User.objects.create_user(username="root", password="secret123", role=UserRole.ADMIN)
        shop = User.objects.create_user(username="printer", password="secret123", role=UserRole.SHOP_OWNER)
        self.assertTrue(has_capability(admin, "escrow.release"))
        self.assertFalse(has_capability(shop, "customizations.create"))
        self.assertTrue(has_capability(shop, "escrow.view"))

    def test_payout_account_completeness(self):
        user = User.objects.create_user(username="payee", password="secret123", role=UserRole.DESIGNER)
        account = PayoutAccount.objects.create(user=user, bank_code="BCA", account_number="", account_holder_name="Payee")
        self.assertFalse(account.is_complete)
        account.account_number = "123"
        self.assertTrue(account.is_complete)

    def test_jwt_login(self):
        User.objects.create_user(username="login_user", password="secret123")
        response = self.client.post(
            "/api/v1/auth/token/", {"username": "login_user", "password": "secret123"}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.data)
