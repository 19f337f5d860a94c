import enum


class Role(enum.IntEnum):
    admin = 1
    customer = 2
    factory_owner = 3
    real_estate_agent = 4
    support_agent = 5
    delivery = 6
    order_manager = 10
    product_manager = 11
    operations_manager = 12


VENDOR_ROLES = frozenset({Role.factory_owner, Role.real_estate_agent, Role.support_agent})
PAYMENT_MANAGER_ROLES = frozenset({Role.admin, Role.order_manager})
# staff que puede crear productos sin suscripcion
LIMIT_EXEMPT_ROLES = frozenset({
    Role.admin,
    Role.order_manager,
    Role.product_manager,
    Role.operations_manager,
})


def is_admin(role) -> bool:
    return role == Role.admin


def is_vendor(role) -> bool:
    return role in VENDOR_ROLES


def can_manage_payments(role) -> bool:
    return role in PAYMENT_MANAGER_ROLES


def bypasses_product_limits(role) -> bool:
    return role in LIMIT_EXEMPT_ROLES
