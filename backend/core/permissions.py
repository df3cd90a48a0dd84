"""
Role based access control.

Roles are Django groups; each group name maps to a fixed list of
application permissions. '*' grants everything.
"""
from rest_framework.permissions import BasePermission

SUPERADMIN = 'superadmin'
ADMIN = 'admin'
PHARMACIEN = 'pharmacien'
VENDEUR = 'vendeur'
CAISSIER = 'caissier'

DEFAULT_ROLE = VENDEUR

ROLE_PERMISSIONS = {
    SUPERADMIN: ['*'],
    ADMIN: [
        'manage_users',
        'manage_products',
        'manage_suppliers',
        'view_reports',
        'view_audit_logs',
        'manage_categories',
        'view_sales',
        'manage_stock',
    ],
    VENDEUR: [
        'view_products',
        'create_sales',
        'manage_customers',
        'view_stock',
        'create_invoices',
        'view_customer_history',
    ],
    PHARMACIEN: [
        'manage_prescriptions',
        'validate_prescriptions',
        'manage_medicines',
        'manage_controlled_substances',
        'view_product_interactions',
        'manage_inventory',
        'view_stock',
        'manage_suppliers',
        'view_reports',
        'create_sales',
        'manage_pharmacy_operations',
    ],
    CAISSIER: [
        'manage_payments',
        'manage_credits',
        'view_sales',
        'process_refunds',
        'manage_cash_register',
        'view_payment_reports',
    ],
}

ROLE_NAMES = {
    SUPERADMIN: 'Super Administrateur',
    ADMIN: 'Administrateur',
    PHARMACIEN: 'Pharmacien',
    VENDEUR: 'Vendeur',
    CAISSIER: 'Caissier',
}

# Highest privilege first; a user in several groups gets the first match
ROLE_PRIORITY = [SUPERADMIN, ADMIN, PHARMACIEN, CAISSIER, VENDEUR]


def get_user_role(user):
    """Return the role name of a user, or None if they have no role"""
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return SUPERADMIN
    groups = set(user.groups.values_list('name', flat=True))
    for role in ROLE_PRIORITY:
        if role in groups:
            return role
    return None


def get_user_permissions(user):
    role = get_user_role(user)
    if role is None:
        return []
    return list(ROLE_PERMISSIONS.get(role, []))


def user_has_permission(user, permission):
    permissions = get_user_permissions(user)
    return '*' in permissions or permission in permissions


def get_all_roles():
    """All roles with display names and permissions, in a stable order"""
    return [
        {
            'id': index,
            'name': role,
            'display_name': ROLE_NAMES[role],
            'permissions': list(permissions),
        }
        for index, (role, permissions) in enumerate(ROLE_PERMISSIONS.items(), start=1)
    ]


class HasRolePermission(BasePermission):
    """
    DRF permission gate. Views declare what they need with
    ``required_permissions = ['manage_users']``; every entry must be granted.
    """
    message = 'Forbidden - Missing permission'

    def has_permission(self, request, view):
        user = request.user
        if not user or not user.is_authenticated:
            return False
        required = getattr(view, 'required_permissions', [])
        for permission in required:
            if not user_has_permission(user, permission):
                self.message = f'Forbidden - Missing permission: {permission}'
                return False
        return True


def require_permissions(*permissions):
    """Decorator for function based views, applied above ``@api_view``"""
    def decorator(view):
        view.cls.required_permissions = list(permissions)
        return view
    return decorator
