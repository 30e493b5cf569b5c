from dataclasses import dataclass

from apps.accounts.models import UserRole


@dataclass(frozen=True)
class Actor:
    """Caller identity handed explicitly to every lifecycle and escrow operation."""

    user_id: int
    role: str

    @classmethod
    def from_user(cls, user):
        return cls(user_id=user.pk, role=resolve_role(user))

    @property
    def is_admin(self):
        return self.role == UserRole.ADMIN

    @property
    def can_design(self):
        return self.role in (UserRole.DESIGNER, UserRole.BUSINESS_OWNER, UserRole.ADMIN)


def resolve_role(user):
    group_names = set(user.groups.values_list("name", flat=True))
    for role in (UserRole.ADMIN, UserRole.BUSINESS_OWNER, UserRole.DESIGNER, UserRole.SHOP_OWNER, UserRole.CUSTOMER):
        if role in group_names:
            return role
    return getattr(user, "role", UserRole.CUSTOMER)
