from enum import Enum

from .models import User, UserRole


class Permissions(str, Enum):
    # Orders
    ORDERS_READ = "orders:read"
    ORDERS_CREATE = "orders:create"
    ORDERS_UPDATE = "orders:update"
    ORDERS_CANCEL = "orders:cancel"
    ORDERS_PAY = "orders:pay"

    # Kitchen workflow (item status, kitchen queue)
    KITCHEN_UPDATE = "kitchen:update"

    # Inventory
    INVENTORY_READ = "inventory:read"
    INVENTORY_MANAGE = "inventory:manage"


ROLE_PERMISSIONS: dict[UserRole, frozenset[str]] = {
    UserRole.admin: frozenset(p.value for p in Permissions),
    UserRole.manager: frozenset(p.value for p in Permissions),
    UserRole.server: frozenset({
        Permissions.ORDERS_READ.value,
        Permissions.ORDERS_CREATE.value,
        Permissions.ORDERS_UPDATE.value,
        Permissions.INVENTORY_READ.value,
    }),
    UserRole.counter: frozenset({
        Permissions.ORDERS_READ.value,
        Permissions.ORDERS_CREATE.value,
        Permissions.ORDERS_UPDATE.value,
        Permissions.ORDERS_CANCEL.value,
        Permissions.ORDERS_PAY.value,
        Permissions.INVENTORY_READ.value,
    }),
    UserRole.kitchen: frozenset({
        Permissions.ORDERS_READ.value,
        Permissions.ORDERS_UPDATE.value,
        Permissions.KITCHEN_UPDATE.value,
        Permissions.INVENTORY_READ.value,
    }),
}


class PermissionService:
    @staticmethod
    def get_user_permissions(user: User) -> frozenset[str]:
        """Get all permissions for a user based on their role."""
        if not user.role:
            return frozenset()
        return ROLE_PERMISSIONS.get(UserRole(user.role), frozenset())

    @staticmethod
    def has_permission(user: User, required_permission: str) -> bool:
        """Check if user has specific permission."""
        return required_permission in PermissionService.get_user_permissions(user)
