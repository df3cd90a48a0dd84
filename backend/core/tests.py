"""
Test suite for the core module
Tests: login/register, role permissions, permission gate, audit log
"""
from django.core.cache import cache
from django.test import TestCase
from rest_framework import status
from backend.activity.conf import get_cache_key
from backend.core.models import AuditLog
from backend.core.permissions import (
    get_user_role, get_user_permissions, user_has_permission, get_all_roles,
    ADMIN, VENDEUR, CAISSIER, SUPERADMIN,
)
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from backend.core.utils import create_audit_log, get_client_ip


class PermissionTests(TestCase):
    """Role to permission mapping"""

    def test_role_from_group(self):
        user = TestDataFactory.create_user(role=CAISSIER)
        self.assertEqual(get_user_role(user), CAISSIER)
        self.assertIn('manage_cash_register', get_user_permissions(user))

    def test_superuser_is_superadmin(self):
        user = TestDataFactory.create_user(is_superuser=True)
        self.assertEqual(get_user_role(user), SUPERADMIN)
        self.assertTrue(user_has_permission(user, 'anything_at_all'))

    def test_highest_role_wins(self):
        user = TestDataFactory.create_user(role=VENDEUR)
        user.groups.create(name=ADMIN)
        self.assertEqual(get_user_role(user), ADMIN)

    def test_user_without_role_has_no_permissions(self):
        user = TestDataFactory.create_user()
        self.assertIsNone(get_user_role(user))
        self.assertEqual(get_user_permissions(user), [])
        self.assertFalse(user_has_permission(user, 'view_products'))

    def test_all_roles_listing(self):
        names = [role['name'] for role in get_all_roles()]
        self.assertEqual(names, ['superadmin', 'admin', 'vendeur', 'pharmacien', 'caissier'])


class AuthAPITests(TestCase):
    """Login, register and current user endpoints"""

    def setUp(self):
        self.client = AuthenticatedAPIClient()
        self.user = TestDataFactory.create_user(username='pharma', password='testpass123', role=VENDEUR)

    def tearDown(self):
        cache.clear()

    def test_login_returns_tokens_and_profile(self):
        response = self.client.post('/api/v1/auth/login/', {'username': 'pharma', 'password': 'testpass123'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('access', response.data)
        self.assertIn('refresh', response.data)
        self.assertEqual(response.data['user']['role'], VENDEUR)
        self.assertIn('create_sales', response.data['user']['permissions'])
        self.assertTrue(AuditLog.objects.filter(action='login', object_id=str(self.user.pk)).exists())

    def test_login_clears_stale_cached_activity(self):
        cache.set(get_cache_key(self.user.pk), '2020-01-01T00:00:00Z', 600)
        response = self.client.post('/api/v1/auth/login/', {'username': 'pharma', 'password': 'testpass123'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIsNone(cache.get(get_cache_key(self.user.pk)))

    def test_login_wrong_password(self):
        response = self.client.post('/api/v1/auth/login/', {'username': 'pharma', 'password': 'nope'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_register_assigns_default_role(self):
        data = {
            'username': 'newseller',
            'email': 'newseller@test.com',
            'password': 'Sup3r-secret-pass',
            'password_confirm': 'Sup3r-secret-pass',
        }
        response = self.client.post('/api/v1/auth/register/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['user']['role'], VENDEUR)
        self.assertIn('access', response.data)

    def test_register_password_mismatch(self):
        data = {
            'username': 'newseller',
            'password': 'Sup3r-secret-pass',
            'password_confirm': 'different-pass-1',
        }
        response = self.client.post('/api/v1/auth/register/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('password', response.data)

    def test_me_requires_authentication(self):
        response = self.client.get('/api/v1/auth/me/')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_me_returns_role(self):
        self.client.authenticate_user(self.user)
        response = self.client.get('/api/v1/auth/me/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['username'], 'pharma')
        self.assertEqual(response.data['role'], VENDEUR)


class PermissionGateTests(TestCase):
    """Views guarded by role permissions"""

    def setUp(self):
        self.client = AuthenticatedAPIClient()

    def tearDown(self):
        cache.clear()

    def test_roles_forbidden_without_permission(self):
        self.client.authenticate_user(TestDataFactory.create_user(role=VENDEUR))
        response = self.client.get('/api/v1/auth/roles/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertIn('manage_users', str(response.data['detail']))

    def test_roles_allowed_for_admin(self):
        self.client.authenticate_user(TestDataFactory.create_user(role=ADMIN))
        response = self.client.get('/api/v1/auth/roles/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['roles']), 5)

    def test_audit_log_filtering(self):
        admin = TestDataFactory.create_user(role=ADMIN)
        create_audit_log(action='logout', model_name='User', object_id=admin.pk, user=admin)
        create_audit_log(action='session_timeout', model_name='User', object_id=admin.pk, user=admin)
        self.client.authenticate_user(admin)

        response = self.client.get('/api/v1/audit-logs/', {'action': 'session_timeout'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]['action'], 'session_timeout')

    def test_audit_log_invalid_filter(self):
        self.client.authenticate_user(TestDataFactory.create_user(role=ADMIN))
        response = self.client.get('/api/v1/audit-logs/', {'action': 'not-an-action'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class AuditUtilsTests(TestCase):

    def test_missing_fields_skip_entry(self):
        self.assertIsNone(create_audit_log(action='login', model_name='User'))
        self.assertEqual(AuditLog.objects.count(), 0)

    def test_client_ip_prefers_forwarded_for(self):
        class Request:
            META = {'HTTP_X_FORWARDED_FOR': '10.0.0.1, 10.0.0.2', 'REMOTE_ADDR': '127.0.0.1'}
        self.assertEqual(get_client_ip(Request()), '10.0.0.1')

    def test_action_choices_match_written_actions(self):
        actions = {value for value, _ in AuditLog.ACTION_CHOICES}
        self.assertEqual(actions, {'login', 'logout', 'register', 'session_timeout'})
