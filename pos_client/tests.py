"""
Test suite for the POS API client
Tests: activity header interceptor, response handling, logout flow,
local inactivity countdown, file storage
"""
import json
import os
import tempfile
import threading
import unittest

import requests
from requests.adapters import BaseAdapter

from pos_client import (
    ApiClient, ApiError, SessionExpired, AuthenticationError, ValidationError,
    ServerError, NetworkError, InactivityTracker, LogoutCoordinator,
    FileStorage, MemoryStorage,
)
from pos_client.storage import AUTH_TOKEN_KEY, REFRESH_TOKEN_KEY, LAST_ACTIVITY_KEY, SERVER_TIME_REMAINING_KEY

BASE_URL = 'http://pos.test/api/v1'

SESSION_TIMEOUT_BODY = {
    'success': False,
    'message': 'Session expired due to inactivity',
    'error_code': 'SESSION_TIMEOUT',
    'timeout_minutes': 60,
}


class FakeAdapter(BaseAdapter):
    """Answers requests from a queue instead of the network"""

    def __init__(self):
        super().__init__()
        self.queue = []
        self.sent = []

    def add(self, status=200, body=None, headers=None):
        self.queue.append((status, body, headers or {}))

    def fail(self, exc):
        self.queue.append(exc)

    def send(self, request, **kwargs):
        self.sent.append(request)
        item = self.queue.pop(0) if self.queue else (200, {}, {})
        if isinstance(item, Exception):
            raise item
        status, body, headers = item
        response = requests.Response()
        response.status_code = status
        response.reason = 'OK' if status < 400 else 'Error'
        response.url = request.url
        response.request = request
        response.headers.update(headers)
        response._content = json.dumps(body).encode('utf-8') if body is not None else b''
        return response

    def close(self):
        pass


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeTimer:
    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


class TrackerFixtureMixin:

    def make_tracker(self, **kwargs):
        self.clock = FakeClock()
        self.timers = []

        def timer_factory(interval, function):
            timer = FakeTimer(interval, function)
            self.timers.append(timer)
            return timer

        return InactivityTracker(clock=self.clock, timer_factory=timer_factory, **kwargs)

    def live_timers(self):
        return [t for t in self.timers if not t.cancelled]


class ApiClientTestCase(TrackerFixtureMixin, unittest.TestCase):

    def setUp(self):
        self.adapter = FakeAdapter()
        session = requests.Session()
        session.mount('http://', self.adapter)
        self.storage = MemoryStorage()
        self.navigations = []
        self.tracker = self.make_tracker()
        self.client = ApiClient(
            BASE_URL,
            storage=self.storage,
            navigate=self.navigations.append,
            tracker=self.tracker,
            session=session,
        )

    def tearDown(self):
        self.client.close()

    def sign_in(self):
        self.client.set_auth_token('access-token', 'refresh-token')
        self.storage.set('cart_data', {'items': [1, 2]})


class ActivityHeaderTests(ApiClientTestCase):
    """Outgoing request interceptor"""

    def test_sends_previous_activity_then_stores_now(self):
        self.sign_in()
        self.storage.set(LAST_ACTIVITY_KEY, '2025-01-01T10:00:00Z')

        self.client.get('/products/')

        sent = self.adapter.sent[0]
        self.assertEqual(sent.headers['X-Last-Activity'], '2025-01-01T10:00:00Z')
        self.assertEqual(sent.headers['Authorization'], 'Bearer access-token')
        stored = self.storage.get(LAST_ACTIVITY_KEY)
        self.assertNotEqual(stored, '2025-01-01T10:00:00Z')
        self.assertTrue(stored.endswith('Z'))

    def test_sends_now_without_stored_value(self):
        self.client.get('/health/')
        sent = self.adapter.sent[0]
        self.assertEqual(sent.headers['X-Last-Activity'], self.storage.get(LAST_ACTIVITY_KEY))
        self.assertNotIn('Authorization', sent.headers)

    def test_second_call_carries_first_call_time(self):
        self.sign_in()
        self.client.get('/products/')
        first_stored = self.storage.get(LAST_ACTIVITY_KEY)
        self.client.get('/products/')
        self.assertEqual(self.adapter.sent[1].headers['X-Last-Activity'], first_stored)

    def test_login_does_not_send_stale_credentials(self):
        self.storage.set(AUTH_TOKEN_KEY, 'old-token')
        self.storage.set(LAST_ACTIVITY_KEY, '2020-01-01T00:00:00Z')
        self.adapter.add(200, {'access': 'new-access', 'refresh': 'new-refresh', 'user': {'username': 'cashier'}})

        self.client.login('cashier', 'secret')

        sent = self.adapter.sent[0]
        self.assertNotIn('Authorization', sent.headers)
        self.assertNotEqual(sent.headers['X-Last-Activity'], '2020-01-01T00:00:00Z')
        self.assertEqual(json.loads(sent.body), {'username': 'cashier', 'password': 'secret'})
        self.assertEqual(self.storage.get(AUTH_TOKEN_KEY), 'new-access')
        self.assertEqual(self.storage.get(REFRESH_TOKEN_KEY), 'new-refresh')
        self.assertTrue(self.tracker.active)


class ResponseHandlingTests(ApiClientTestCase):
    """Status code handling and logout on server expiry"""

    def test_success_records_telemetry(self):
        self.sign_in()
        self.adapter.add(200, {'results': []}, {
            'X-Session-Timeout': '1800',
            'X-Session-Last-Activity': '2025-01-01T10:00:00Z',
            'X-Session-Time-Remaining': '1750',
        })

        self.assertEqual(self.client.get('/products/'), {'results': []})
        self.assertEqual(self.storage.get(SERVER_TIME_REMAINING_KEY), 1750)
        self.assertEqual(self.tracker.timeout_seconds, 1800)

    def test_session_timeout_clears_storage_and_redirects(self):
        self.sign_in()
        self.adapter.add(401, SESSION_TIMEOUT_BODY)

        with self.assertRaises(SessionExpired) as ctx:
            self.client.get('/products/')

        self.assertEqual(ctx.exception.payload['timeout_minutes'], 60)
        self.assertIsNone(self.storage.get(AUTH_TOKEN_KEY))
        self.assertIsNone(self.storage.get(REFRESH_TOKEN_KEY))
        self.assertIsNone(self.storage.get('cart_data'))
        self.assertIsNone(self.storage.get(LAST_ACTIVITY_KEY))
        self.assertEqual(len(self.navigations), 1)
        self.assertIn('reason=session_timeout', self.navigations[0])
        self.assertTrue(self.navigations[0].startswith('/auth/login?'))
        self.assertFalse(self.tracker.active)

    def test_burst_of_timeouts_redirects_once(self):
        self.sign_in()
        self.adapter.add(401, SESSION_TIMEOUT_BODY)
        self.adapter.add(401, SESSION_TIMEOUT_BODY)

        for _ in range(2):
            with self.assertRaises(SessionExpired):
                self.client.get('/products/')

        self.assertEqual(len(self.navigations), 1)

    def test_next_login_rearms_logout(self):
        self.sign_in()
        self.adapter.add(401, SESSION_TIMEOUT_BODY)
        with self.assertRaises(SessionExpired):
            self.client.get('/products/')

        self.sign_in()
        self.adapter.add(401, SESSION_TIMEOUT_BODY)
        with self.assertRaises(SessionExpired):
            self.client.get('/products/')

        self.assertEqual(len(self.navigations), 2)

    def test_other_401_keeps_credentials(self):
        self.sign_in()
        self.adapter.add(401, {'detail': 'Token has been revoked.', 'code': 'token_not_valid'})

        with self.assertLogs('pos_client.client', level='WARNING'):
            with self.assertRaises(AuthenticationError) as ctx:
                self.client.get('/products/')

        self.assertNotIsInstance(ctx.exception, SessionExpired)
        self.assertEqual(ctx.exception.message, 'Token has been revoked.')
        self.assertEqual(self.storage.get(AUTH_TOKEN_KEY), 'access-token')
        self.assertEqual(self.navigations, [])

    def test_validation_errors_pass_through(self):
        self.sign_in()
        body = {'success': False, 'message': 'Invalid data', 'errors': {'quantity': ['Must be positive']}}
        self.adapter.add(422, body)

        with self.assertRaises(ValidationError) as ctx:
            self.client.post('/sales/', json={'quantity': -1})

        self.assertEqual(ctx.exception.status_code, 422)
        self.assertEqual(ctx.exception.errors, {'quantity': ['Must be positive']})
        self.assertEqual(ctx.exception.payload, body)

    def test_server_error_does_not_log_out(self):
        self.sign_in()
        self.adapter.add(500, {'message': 'boom'})

        with self.assertLogs('pos_client.client', level='ERROR'):
            with self.assertRaises(ServerError):
                self.client.get('/products/')

        self.assertEqual(self.storage.get(AUTH_TOKEN_KEY), 'access-token')
        self.assertEqual(self.navigations, [])

    def test_network_timeout_is_not_retried(self):
        self.sign_in()
        self.adapter.fail(requests.exceptions.ConnectTimeout('timed out'))

        with self.assertRaises(NetworkError):
            self.client.get('/products/')

        self.assertEqual(len(self.adapter.sent), 1)
        self.assertEqual(self.storage.get(AUTH_TOKEN_KEY), 'access-token')

    def test_connection_error(self):
        self.adapter.fail(requests.exceptions.ConnectionError('refused'))
        with self.assertRaises(NetworkError):
            self.client.get('/products/')

    def test_non_json_error_body(self):
        self.adapter.queue.append((404, None, {}))
        with self.assertRaises(ApiError) as ctx:
            self.client.get('/missing/')
        self.assertEqual(ctx.exception.status_code, 404)


class LogoutTests(ApiClientTestCase):

    def test_logout_calls_server_and_clears_locally(self):
        self.sign_in()
        self.client.logout()

        self.assertTrue(self.adapter.sent[0].url.endswith('/auth/logout/'))
        self.assertEqual(self.adapter.sent[0].method, 'POST')
        self.assertIsNone(self.storage.get(AUTH_TOKEN_KEY))
        self.assertEqual(self.navigations, ['/auth/login'])
        self.assertEqual(self.live_timers(), [])

    def test_logout_when_server_fails(self):
        self.sign_in()
        self.adapter.add(500, {'message': 'down'})

        with self.assertLogs('pos_client.client', level='WARNING'):
            self.client.logout()

        self.assertIsNone(self.storage.get(AUTH_TOKEN_KEY))
        self.assertEqual(len(self.navigations), 1)

    def test_local_inactivity_logs_out(self):
        self.sign_in()
        self.clock.advance(3600)
        self.tracker.check()

        self.assertIsNone(self.storage.get(AUTH_TOKEN_KEY))
        self.assertEqual(len(self.navigations), 1)
        self.assertIn('reason=inactivity', self.navigations[0])
        self.assertEqual(self.adapter.sent, [])

    def test_local_inactivity_drops_session_cookie(self):
        self.sign_in()
        self.client.session.cookies.set('sessionid', 'idle-session', domain='pos.test', path='/')
        self.clock.advance(3600)
        self.tracker.check()

        self.assertEqual(len(self.client.session.cookies), 0)

    def test_login_after_local_logout_sends_no_old_cookie(self):
        self.sign_in()
        self.client.session.cookies.set('sessionid', 'idle-session', domain='pos.test', path='/')
        self.clock.advance(3600)
        self.tracker.check()
        self.adapter.add(200, {'access': 'new-access', 'refresh': 'new-refresh'})

        self.client.login('cashier', 'secret')

        self.assertNotIn('Cookie', self.adapter.sent[0].headers)
        self.assertTrue(self.tracker.active)

    def test_extend_session_touches_and_pings(self):
        self.sign_in()
        self.clock.advance(3400)
        self.client.extend_session()

        self.assertTrue(self.adapter.sent[0].url.endswith('/auth/session/'))
        self.assertEqual(self.tracker.idle_seconds(), 0)


class LogoutCoordinatorTests(unittest.TestCase):

    def test_concurrent_logouts_redirect_once(self):
        navigations = []
        coordinator = LogoutCoordinator(MemoryStorage({AUTH_TOKEN_KEY: 'token'}), navigate=navigations.append)
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(coordinator.logout('session_timeout'))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(results.count(True), 1)
        self.assertEqual(len(navigations), 1)

    def test_redirect_urls(self):
        coordinator = LogoutCoordinator(MemoryStorage(), login_url='/login')
        self.assertEqual(coordinator.login_redirect_url('logout'), '/login')
        url = coordinator.login_redirect_url('inactivity')
        self.assertTrue(url.startswith('/login?reason=inactivity&message='))


class InactivityTrackerTests(TrackerFixtureMixin, unittest.TestCase):
    """Local countdown with a fake clock and timers"""

    def setUp(self):
        self.warnings = []
        self.timeouts = []
        self.tracker = self.make_tracker(
            timeout_minutes=60,
            warning_minutes=5,
            on_warning=self.warnings.append,
            on_timeout=lambda: self.timeouts.append(self.clock()),
        )

    def test_start_schedules_warning_and_timeout(self):
        self.tracker.start()
        self.assertEqual(sorted(t.interval for t in self.live_timers()), [3300, 3600])
        self.assertTrue(all(t.daemon and t.started for t in self.live_timers()))

    def test_warning_fires_once(self):
        self.tracker.start()
        self.clock.advance(3300)
        self.tracker.check()
        self.tracker.check()

        self.assertEqual(self.warnings, [300])
        self.assertTrue(self.tracker.should_show_warning())
        self.assertEqual(self.timeouts, [])

    def test_timeout_fires_once(self):
        self.tracker.start()
        self.clock.advance(3600)
        self.tracker.check()
        self.tracker.check()

        self.assertEqual(len(self.timeouts), 1)
        self.assertFalse(self.tracker.active)
        self.assertEqual(self.live_timers(), [])

    def test_touch_restarts_countdown(self):
        self.tracker.start()
        self.clock.advance(3300)
        self.tracker.check()
        self.tracker.touch()
        self.clock.advance(3300)
        self.tracker.check()

        self.assertEqual(self.warnings, [300, 300])
        self.assertEqual(self.timeouts, [])

    def test_stop_cancels_timers(self):
        self.tracker.start()
        self.tracker.stop()
        self.assertEqual(self.live_timers(), [])
        self.clock.advance(7200)
        self.tracker.check()
        self.assertEqual(self.timeouts, [])
        self.assertEqual(self.tracker.time_until_logout(), float('inf'))

    def test_touch_ignored_when_inactive(self):
        self.tracker.touch()
        self.assertEqual(self.timers, [])

    def test_server_budget_adopted(self):
        self.tracker.start()
        self.clock.advance(100)
        self.tracker.set_timeout(600)

        self.assertEqual(self.tracker.timeout_seconds, 600)
        self.assertEqual(self.tracker.time_until_logout(), 500)
        self.assertEqual(sorted(t.interval for t in self.live_timers()), [200, 500])


class FileStorageTests(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, 'pos', 'storage.json')

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_values_survive_restart(self):
        storage = FileStorage(self.path)
        storage.set(AUTH_TOKEN_KEY, 'token')
        storage.set('cart_data', {'items': [1]})
        storage.remove('cart_data')

        reopened = FileStorage(self.path)
        self.assertEqual(reopened.get(AUTH_TOKEN_KEY), 'token')
        self.assertIsNone(reopened.get('cart_data'))

    def test_corrupt_file_starts_empty(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w', encoding='utf-8') as fh:
            fh.write('{not json')

        with self.assertLogs('pos_client.storage', level='WARNING'):
            storage = FileStorage(self.path)
        self.assertEqual(storage.keys(), [])


if __name__ == '__main__':
    unittest.main()
