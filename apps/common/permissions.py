from rest_framework.permissions import BasePermission

from apps.accounts.models import UserRole
from apps.common.actors import resolve_role


ROLE_CAPABILITIES = {
    UserRole.ADMIN: {
        "customizations.view",
        "customizations.view.all",
        "customizations.create",
        "customizations.act",
        "customizations.pricing",
        "customizations.shop_pricing",
        "escrow.view",
        "escrow.capture",
        "escrow.release",
        "payouts.view",
    },
    UserRole.CUSTOMER: {
        "customizations.view",
        "customizations.create",
        "customizations.act",
        "escrow.view",
    },
    UserRole.DESIGNER: {
        "customizations.view",
        "customizations.act",
        "customizations.pricing",
        "escrow.view",
    },
    UserRole.BUSINESS_OWNER: {
        "customizations.view",
        "customizations.create",
        "customizations.act",
        "customizations.pricing",
        "escrow.view",
    },
    UserRole.SHOP_OWNER: {
        "customizations.view",
        "customizations.shop_pricing",
        "escrow.view",
    },
}


class RolePermission(BasePermission):
    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False

        capability_map = getattr(view, "capability_map", {})
        action = getattr(view, "action", request.method.lower())
        required = capability_map.get(action) or capability_map.get(request.method.lower()) or set()
        if not required:
            return True

        user_caps = ROLE_CAPABILITIES.get(resolve_role(request.user), set())
        return all(cap in user_caps for cap in required)


def has_capability(user, capability):
    return capability in ROLE_CAPABILITIES.get(resolve_role(user), set())
