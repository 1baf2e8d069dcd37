import enum
from dataclasses import dataclass


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"


ROLE_ALIASES = {
    "administrator": "admin",
    "system admin": "admin",
    "system administrator": "admin",
    "superuser": "admin",
    "client": "customer",
    "guest": "customer",
    "user": "customer",
}

STAFF_ROLES = {
    "staff",
    "manager",
    "mgr",
    "cashier",
    "waiter",
    "server",
    "chef",
    "cook",
    "kitchen",
    "chef/kitchen",
    "delivery rider",
    "delivery",
    "rider",
    "driver",
}


def norm_role(role) -> str:
    r = (role or "").strip().lower()
    if not r:
        return ""

    r = r.replace("_", " ").replace("-", " ")
    r = " ".join(r.split())
    r = r.replace(" / ", "/").replace(" /", "/").replace("/ ", "/")

    return ROLE_ALIASES.get(r, r)


def resolve_role(role) -> Role:
    r = norm_role(role)
    if r == Role.ADMIN.value:
        return Role.ADMIN
    if r in STAFF_ROLES:
        return Role.STAFF
    return Role.CUSTOMER


@dataclass(frozen=True)
class Actor:
    """The identity an operation runs as. Core functions never read request state."""

    user_id: int
    role: Role

    @property
    def is_admin(self):
        return self.role == Role.ADMIN

    @property
    def is_staff(self):
        return self.role == Role.STAFF

    @property
    def is_customer(self):
        return self.role == Role.CUSTOMER

    @property
    def is_staff_or_admin(self):
        return self.role in (Role.STAFF, Role.ADMIN)

    def owns(self, order) -> bool:
        return order.user_id == self.user_id


def actor_for(user) -> Actor:
    return Actor(user_id=int(user.id), role=resolve_role(getattr(user, "role", "")))
