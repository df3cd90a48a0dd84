"""
Test suite for the session activity module
Tests: inactivity evaluation, activity store precedence, session invalidation,
timeout middleware end to end, logout and session status endpoints
"""
from datetime import timedelta
from io import StringIO
from unittest import mock

from django.contrib.auth.models import AnonymousUser, Group
from django.contrib.sessions.backends.db import SessionStore
from django.contrib.sessions.models import Session
from django.core.cache import cache
from django.core.cache.backends.locmem import LocMemCache
from django.core.management import call_command
from django.test import TestCase, SimpleTestCase, RequestFactory, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework_simplejwt.tokens import AccessToken

from backend.core.models import AuditLog
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from backend.activity.authentication import AuthContext, resolve_auth_context, revoke_token
from backend.activity.conf import get_cache_key, SESSION_KEY
from backend.activity.evaluator import evaluate
from backend.activity.invalidator import SessionInvalidator
from backend.activity.models import RevokedToken
from backend.activity.store import (
    ActivityStore, format_timestamp, parse_timestamp,
    SOURCE_SESSION, SOURCE_HEADER, SOURCE_CACHE, SOURCE_NEW,
)

ME_URL = '/api/v1/auth/me/'


def minutes_ago(minutes, now=None):
    return format_timestamp((now or timezone.now()) - timedelta(minutes=minutes))


class EvaluatorTests(SimpleTestCase):
    """Pure inactivity arithmetic"""

    def setUp(self):
        self.now = timezone.now()

    def test_exactly_at_budget_is_not_expired(self):
        decision = evaluate(self.now, self.now - timedelta(minutes=60), 60)
        self.assertFalse(decision.expired)
        self.assertEqual(decision.remaining_seconds, 0)

    def test_one_second_over_budget_is_expired(self):
        decision = evaluate(self.now, self.now - timedelta(minutes=60, seconds=1), 60)
        self.assertTrue(decision.expired)
        self.assertEqual(decision.remaining_seconds, 0)

    def test_fraction_over_budget_is_expired(self):
        decision = evaluate(self.now, self.now - timedelta(minutes=60, milliseconds=500), 60)
        self.assertTrue(decision.expired)

    def test_well_past_budget(self):
        decision = evaluate(self.now, self.now - timedelta(hours=5), 60)
        self.assertTrue(decision.expired)
        self.assertEqual(decision.remaining_seconds, 0)

    def test_remaining_is_budget_minus_elapsed(self):
        for elapsed in (0, 1, 59, 1800, 3599):
            decision = evaluate(self.now, self.now - timedelta(seconds=elapsed), 60)
            self.assertFalse(decision.expired)
            self.assertEqual(decision.remaining_seconds, 3600 - elapsed)
            self.assertEqual(decision.elapsed_seconds, elapsed)

    def test_future_timestamp_counts_as_no_idle_time(self):
        decision = evaluate(self.now, self.now + timedelta(minutes=10), 60)
        self.assertFalse(decision.expired)
        self.assertEqual(decision.remaining_seconds, 3600)


class ParseTimestampTests(SimpleTestCase):

    def test_javascript_iso_string(self):
        parsed = parse_timestamp('2025-03-01T10:15:30.123Z')
        self.assertEqual(parsed.utcoffset(), timedelta(0))
        self.assertEqual(parsed.minute, 15)

    def test_naive_timestamp_is_utc(self):
        parsed = parse_timestamp('2025-03-01T10:15:30')
        self.assertTrue(timezone.is_aware(parsed))
        self.assertEqual(parsed.utcoffset(), timedelta(0))

    def test_garbage_is_ignored(self):
        self.assertIsNone(parse_timestamp('yesterday-ish'))
        self.assertIsNone(parse_timestamp('2025-13-45T99:00:00'))
        self.assertIsNone(parse_timestamp(''))
        self.assertIsNone(parse_timestamp(None))


class ActivityStoreTests(TestCase):
    """Source precedence and write behaviour"""

    def setUp(self):
        self.factory = RequestFactory()
        self.store = ActivityStore()
        self.user = TestDataFactory.create_user()
        self.now = timezone.now()
        self.session_context = AuthContext(self.user)
        self.bearer_context = AuthContext(self.user, AccessToken.for_user(self.user))

    def tearDown(self):
        cache.clear()

    def make_request(self, header=None, session_value=None):
        extra = {'HTTP_X_LAST_ACTIVITY': header} if header else {}
        request = self.factory.get(ME_URL, **extra)
        request.session = SessionStore()
        if session_value:
            request.session[SESSION_KEY] = session_value
        return request

    def test_session_wins_over_header(self):
        request = self.make_request(header=minutes_ago(50, self.now), session_value=minutes_ago(5, self.now))
        record = self.store.get_last_activity(self.session_context, request, now=self.now)
        self.assertEqual(record.source, SOURCE_SESSION)
        self.assertEqual(format_timestamp(record.last_activity_at), minutes_ago(5, self.now))

    def test_header_used_without_session_value(self):
        request = self.make_request(header=minutes_ago(50, self.now))
        record = self.store.get_last_activity(self.session_context, request, now=self.now)
        self.assertEqual(record.source, SOURCE_HEADER)

    def test_header_wins_over_cache(self):
        cache.set(get_cache_key(self.user.pk), minutes_ago(20, self.now), 600)
        request = self.make_request(header=minutes_ago(50, self.now))
        record = self.store.get_last_activity(self.bearer_context, request, now=self.now)
        self.assertEqual(record.source, SOURCE_HEADER)

    def test_cache_used_for_bearer_only(self):
        cache.set(get_cache_key(self.user.pk), minutes_ago(20, self.now), 600)

        record = self.store.get_last_activity(self.bearer_context, self.make_request(), now=self.now)
        self.assertEqual(record.source, SOURCE_CACHE)

        record = self.store.get_last_activity(self.session_context, self.make_request(), now=self.now)
        self.assertEqual(record.source, SOURCE_NEW)

    def test_first_contact_defaults_to_now(self):
        record = self.store.get_last_activity(self.bearer_context, self.make_request(), now=self.now)
        self.assertEqual(record.source, SOURCE_NEW)
        self.assertTrue(record.is_first_contact)
        self.assertEqual(record.last_activity_at, self.now)

    def test_malformed_header_falls_through(self):
        request = self.make_request(header='not a date')
        record = self.store.get_last_activity(self.session_context, request, now=self.now)
        self.assertEqual(record.source, SOURCE_NEW)

    def test_reset_clears_session_and_cache(self):
        cache.set(get_cache_key(self.user.pk), minutes_ago(90, self.now), 600)
        request = self.make_request(session_value=minutes_ago(90, self.now))

        self.store.reset(self.user.pk, request)

        self.assertNotIn(SESSION_KEY, request.session)
        self.assertIsNone(cache.get(get_cache_key(self.user.pk)))
        record = self.store.get_last_activity(self.bearer_context, request, now=self.now)
        self.assertEqual(record.source, SOURCE_NEW)

    def test_set_writes_session_only_for_session_channel(self):
        request = self.make_request()
        self.store.set_last_activity(self.session_context, request, self.now, 60)
        self.assertEqual(request.session[SESSION_KEY], format_timestamp(self.now))
        self.assertIsNone(cache.get(get_cache_key(self.user.pk)))

    def test_set_writes_cache_with_padded_ttl_for_bearer(self):
        request = self.make_request()
        with mock.patch.object(LocMemCache, 'set') as cache_set:
            self.store.set_last_activity(self.bearer_context, request, self.now, 60)
        cache_set.assert_called_once_with(get_cache_key(self.user.pk), format_timestamp(self.now), 70 * 60)
        self.assertEqual(request.session[SESSION_KEY], format_timestamp(self.now))

    def test_cache_write_failure_is_logged_not_raised(self):
        request = self.make_request()
        with mock.patch.object(LocMemCache, 'set', side_effect=ConnectionError('redis down')):
            with self.assertLogs('backend.activity.store', level='WARNING') as logs:
                self.store.set_last_activity(self.bearer_context, request, self.now, 60)
        self.assertIn('unavailable', logs.output[0])
        self.assertEqual(request.session[SESSION_KEY], format_timestamp(self.now))

    def test_cache_read_failure_is_treated_as_missing(self):
        with mock.patch.object(LocMemCache, 'get', side_effect=ConnectionError('redis down')):
            with self.assertLogs('backend.activity.store', level='WARNING'):
                record = self.store.get_last_activity(self.bearer_context, self.make_request(), now=self.now)
        self.assertEqual(record.source, SOURCE_NEW)


class ResolveAuthContextTests(TestCase):

    def setUp(self):
        self.factory = RequestFactory()
        self.user = TestDataFactory.create_user()

    def test_anonymous(self):
        request = self.factory.get(ME_URL)
        request.user = AnonymousUser()
        self.assertIsNone(resolve_auth_context(request))

    def test_session_user(self):
        request = self.factory.get(ME_URL)
        request.user = self.user
        context = resolve_auth_context(request)
        self.assertEqual(context.principal_id, self.user.pk)
        self.assertFalse(context.is_bearer)

    def test_bearer_wins_over_session(self):
        token = AccessToken.for_user(self.user)
        request = self.factory.get(ME_URL, HTTP_AUTHORIZATION=f'Bearer {token}')
        request.user = TestDataFactory.create_user()
        context = resolve_auth_context(request)
        self.assertEqual(context.principal_id, self.user.pk)
        self.assertTrue(context.is_bearer)

    def test_revoked_token_is_anonymous(self):
        token = AccessToken.for_user(self.user)
        revoke_token(token, user=self.user, reason='logout')
        request = self.factory.get(ME_URL, HTTP_AUTHORIZATION=f'Bearer {token}')
        request.user = AnonymousUser()
        self.assertIsNone(resolve_auth_context(request))

    def test_garbage_token_is_anonymous(self):
        request = self.factory.get(ME_URL, HTTP_AUTHORIZATION='Bearer not.a.jwt')
        request.user = AnonymousUser()
        self.assertIsNone(resolve_auth_context(request))


class SessionInvalidatorTests(TestCase):
    """Ordered, best effort teardown"""

    def setUp(self):
        self.factory = RequestFactory()
        self.user = TestDataFactory.create_user(email='clerk@pharmacy.test')
        self.token = AccessToken.for_user(self.user)
        self.context = AuthContext(self.user, self.token)
        self.invalidator = SessionInvalidator()
        cache.set(get_cache_key(self.user.pk), format_timestamp(timezone.now()), 600)

    def tearDown(self):
        cache.clear()

    def make_request(self):
        request = self.factory.get(ME_URL, HTTP_USER_AGENT='POS-Terminal/1.0', REMOTE_ADDR='192.168.1.20')
        request.session = SessionStore()
        request.session[SESSION_KEY] = format_timestamp(timezone.now())
        request.session.save()
        request.user = self.user
        return request

    def test_all_steps_run(self):
        request = self.make_request()
        session_key = request.session.session_key

        results = self.invalidator.invalidate(self.context, request, 60)

        self.assertEqual([r.name for r in results], ['audit', 'destroy_session', 'revoke_token', 'forget_activity', 'clear_auth'])
        self.assertTrue(all(r.ok for r in results))

        entry = AuditLog.objects.get(action='session_timeout')
        self.assertEqual(entry.changes['user_email'], 'clerk@pharmacy.test')
        self.assertEqual(entry.changes['timeout_minutes'], 60)
        self.assertEqual(entry.changes['user_agent'], 'POS-Terminal/1.0')
        self.assertEqual(entry.ip_address, '192.168.1.20')

        self.assertNotIn(SESSION_KEY, request.session)
        self.assertFalse(Session.objects.filter(session_key=session_key).exists())
        self.assertTrue(RevokedToken.objects.filter(jti=self.token['jti']).exists())
        self.assertIsNone(cache.get(get_cache_key(self.user.pk)))
        self.assertFalse(request.user.is_authenticated)
        self.assertIsNone(request.auth_context)

    def test_session_channel_revokes_nothing(self):
        request = self.make_request()
        self.invalidator.invalidate(AuthContext(self.user), request, 60)
        self.assertEqual(RevokedToken.objects.count(), 0)

    def test_second_call_is_noop(self):
        request = self.make_request()
        self.invalidator.invalidate(self.context, request, 60)
        self.assertEqual(self.invalidator.invalidate(self.context, request, 60), [])
        self.assertEqual(AuditLog.objects.filter(action='session_timeout').count(), 1)

    def test_failing_step_does_not_stop_the_rest(self):
        request = self.make_request()
        with mock.patch('backend.activity.invalidator.revoke_token', side_effect=RuntimeError('db down')):
            with self.assertLogs('backend.activity.invalidator', level='ERROR') as logs:
                results = self.invalidator.invalidate(self.context, request, 60)

        failed = [r for r in results if not r.ok]
        self.assertEqual([r.name for r in failed], ['revoke_token'])
        self.assertIn('db down', logs.output[0])
        self.assertIsNone(cache.get(get_cache_key(self.user.pk)))
        self.assertFalse(request.user.is_authenticated)

    def test_logout_reason_is_audited(self):
        request = self.make_request()
        self.invalidator.invalidate(self.context, request, 60, reason='logout')
        self.assertTrue(AuditLog.objects.filter(action='logout', object_id=str(self.user.pk)).exists())


class SessionTimeoutMiddlewareBearerTests(TestCase):
    """Gate behaviour for token authenticated callers"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.user)

    def tearDown(self):
        cache.clear()

    def test_expired_request_is_rejected(self):
        response = self.client.get(ME_URL, HTTP_X_LAST_ACTIVITY=minutes_ago(61))

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(response.json(), {
            'success': False,
            'message': 'Session expired due to inactivity',
            'error_code': 'SESSION_TIMEOUT',
            'timeout_minutes': 60,
        })
        self.assertIsNone(cache.get(get_cache_key(self.user.pk)))
        self.assertTrue(RevokedToken.objects.filter(jti=self.client.token['jti']).exists())
        self.assertNotIn('X-Session-Time-Remaining', response)

    def test_revoked_token_then_fails_without_timeout_code(self):
        self.client.get(ME_URL, HTTP_X_LAST_ACTIVITY=minutes_ago(61))
        response = self.client.get(ME_URL, HTTP_X_LAST_ACTIVITY=minutes_ago(0))
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertNotIn('error_code', response.json())

    def test_active_request_passes_with_telemetry(self):
        response = self.client.get(ME_URL, HTTP_X_LAST_ACTIVITY=minutes_ago(30))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response['X-Session-Timeout'], '3600')
        remaining = int(response['X-Session-Time-Remaining'])
        self.assertTrue(1798 <= remaining <= 1800, remaining)
        self.assertIsNotNone(parse_timestamp(response['X-Session-Last-Activity']))

        cached = parse_timestamp(cache.get(get_cache_key(self.user.pk)))
        self.assertLess(abs((timezone.now() - cached).total_seconds()), 5)

    def test_first_contact_passes(self):
        response = self.client.get(ME_URL)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response['X-Session-Time-Remaining'], '3600')
        self.assertIsNotNone(cache.get(get_cache_key(self.user.pk)))
        self.assertIn(SESSION_KEY, self.client.session)

    def test_session_value_outranks_stale_header(self):
        self.client.get(ME_URL)
        response = self.client.get(ME_URL, HTTP_X_LAST_ACTIVITY=minutes_ago(120))
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_cached_activity_enforced_without_header(self):
        cache.set(get_cache_key(self.user.pk), minutes_ago(90), 600)
        response = self.client.get(ME_URL)
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(response.json()['error_code'], 'SESSION_TIMEOUT')

    def test_cache_failure_still_passes(self):
        with mock.patch.object(LocMemCache, 'set', side_effect=ConnectionError('redis down')):
            with self.assertLogs('backend.activity.store', level='WARNING') as logs:
                response = self.client.get(ME_URL, HTTP_X_LAST_ACTIVITY=minutes_ago(10))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(any('unavailable' in line for line in logs.output))
        self.assertIn(SESSION_KEY, self.client.session)

    def test_exact_budget_boundary_passes(self):
        frozen = timezone.now()
        with mock.patch('django.utils.timezone.now', return_value=frozen):
            response = self.client.get(ME_URL, HTTP_X_LAST_ACTIVITY=minutes_ago(60, frozen))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response['X-Session-Time-Remaining'], '0')

    @override_settings(SESSION_INACTIVITY_TIMEOUT=5)
    def test_budget_comes_from_settings(self):
        response = self.client.get(ME_URL, HTTP_X_LAST_ACTIVITY=minutes_ago(1))
        self.assertEqual(response['X-Session-Timeout'], '300')

        response = self.client.get(ME_URL, HTTP_X_LAST_ACTIVITY=minutes_ago(6))
        # The first request left a fresh session value behind
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    @override_settings(SESSION_INACTIVITY_TIMEOUT=5)
    def test_rejection_reports_configured_budget(self):
        response = self.client.get(ME_URL, HTTP_X_LAST_ACTIVITY=minutes_ago(6))
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(response.json()['timeout_minutes'], 5)

    def test_invalidation_failure_still_returns_timeout(self):
        with mock.patch('backend.activity.invalidator.create_audit_log', side_effect=RuntimeError('audit table locked')):
            with self.assertLogs('backend.activity.invalidator', level='ERROR'):
                response = self.client.get(ME_URL, HTTP_X_LAST_ACTIVITY=minutes_ago(61))
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(response.json()['error_code'], 'SESSION_TIMEOUT')
        self.assertNotIn('audit table locked', response.content.decode())
        self.assertTrue(RevokedToken.objects.filter(jti=self.client.token['jti']).exists())


class SessionTimeoutMiddlewareSessionTests(TestCase):
    """Gate behaviour for cookie session callers"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.client.force_login(self.user)

    def set_last_activity(self, value):
        session = self.client.session
        session[SESSION_KEY] = value
        session.save()
        return session.session_key

    def test_expired_session_is_flushed(self):
        session_key = self.set_last_activity(minutes_ago(61))

        response = self.client.get(ME_URL)

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(response.json()['error_code'], 'SESSION_TIMEOUT')
        self.assertFalse(Session.objects.filter(session_key=session_key).exists())
        self.assertNotIn(SESSION_KEY, self.client.session)
        self.assertEqual(self.client.get(ME_URL).status_code, status.HTTP_401_UNAUTHORIZED)

    def test_active_session_is_refreshed(self):
        self.set_last_activity(minutes_ago(30))

        response = self.client.get(ME_URL)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        remaining = int(response['X-Session-Time-Remaining'])
        self.assertTrue(1798 <= remaining <= 1800, remaining)
        refreshed = parse_timestamp(self.client.session[SESSION_KEY])
        self.assertLess(abs((timezone.now() - refreshed).total_seconds()), 5)

    def test_session_channel_ignores_cache(self):
        cache.set(get_cache_key(self.user.pk), minutes_ago(90), 600)
        try:
            response = self.client.get(ME_URL)
        finally:
            cache.clear()
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_anonymous_traffic_is_untouched(self):
        self.client.logout()
        response = self.client.get(ME_URL, HTTP_X_LAST_ACTIVITY=minutes_ago(500))
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertNotIn('X-Session-Timeout', response)
        self.assertNotIn('error_code', response.json())


class ReloginTests(TestCase):
    """A new login starts a new idle window even with the old session cookie"""

    def setUp(self):
        self.user = TestDataFactory.create_user(username='cashier', password='testpass123')
        self.client = AuthenticatedAPIClient()

    def tearDown(self):
        cache.clear()

    def login(self):
        self.client.credentials()
        response = self.client.post('/api/v1/auth/login/', {'username': 'cashier', 'password': 'testpass123'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {response.data['access']}")
        return response.data['access']

    def test_login_after_idle_period_passes(self):
        self.login()
        self.assertEqual(self.client.get(ME_URL).status_code, status.HTTP_200_OK)
        self.assertIn(SESSION_KEY, self.client.session)

        later = timezone.now() + timedelta(minutes=61)
        with mock.patch('django.utils.timezone.now', return_value=later):
            access = self.login()
            self.assertNotIn(SESSION_KEY, self.client.session)
            response = self.client.get(ME_URL)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response['X-Session-Time-Remaining'], '3600')
        self.assertFalse(RevokedToken.objects.filter(jti=AccessToken(access)['jti']).exists())
        self.assertFalse(AuditLog.objects.filter(action='session_timeout').exists())


class SessionEndpointTests(TestCase):
    """Logout and session status"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.user)

    def tearDown(self):
        cache.clear()

    def test_session_status(self):
        response = self.client.get('/api/v1/auth/session/', HTTP_X_LAST_ACTIVITY=minutes_ago(10))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        data = response.data['data']
        self.assertEqual(data['timeout_minutes'], 60)
        self.assertTrue(2998 <= data['time_remaining'] <= 3000, data['time_remaining'])
        self.assertGreater(parse_timestamp(data['expires_at']), timezone.now() + timedelta(minutes=59))

    def test_logout_revokes_only_presented_token(self):
        other_token = AccessToken.for_user(self.user)

        response = self.client.post('/api/v1/auth/logout/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['success'])
        self.assertTrue(RevokedToken.objects.filter(jti=self.client.token['jti']).exists())
        self.assertFalse(RevokedToken.objects.filter(jti=other_token['jti']).exists())
        self.assertTrue(AuditLog.objects.filter(action='logout').exists())
        self.assertIsNone(cache.get(get_cache_key(self.user.pk)))

        self.assertEqual(self.client.get(ME_URL).status_code, status.HTTP_401_UNAUTHORIZED)

        other = AuthenticatedAPIClient()
        other.credentials(HTTP_AUTHORIZATION=f'Bearer {other_token}')
        self.assertEqual(other.get(ME_URL).status_code, status.HTTP_200_OK)


class ManagementCommandTests(TestCase):

    def test_purge_revoked_tokens(self):
        user = TestDataFactory.create_user()
        now = timezone.now()
        RevokedToken.objects.create(jti='old', user=user, expires_at=now - timedelta(hours=1))
        RevokedToken.objects.create(jti='live', user=user, expires_at=now + timedelta(hours=1))

        out = StringIO()
        call_command('purge_revoked_tokens', '--dry-run', stdout=out)
        self.assertIn('1 expired', out.getvalue())
        self.assertEqual(RevokedToken.objects.count(), 2)

        call_command('purge_revoked_tokens', stdout=StringIO())
        self.assertEqual(list(RevokedToken.objects.values_list('jti', flat=True)), ['live'])

    def test_create_user_groups(self):
        call_command('create_user_groups', stdout=StringIO())
        self.assertEqual(
            set(Group.objects.values_list('name', flat=True)),
            {'superadmin', 'admin', 'pharmacien', 'vendeur', 'caissier'},
        )
