import unittest
from datetime import datetime, timedelta

from sync_fixtures import make_session

from app.services.errors import SyncLockedError, SyncLockLostError
from app.services.sync_lock import SyncLockManager


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class SyncLockManagerTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.clock = _Clock(datetime(2024, 5, 1, 12, 0))
        self.locks = SyncLockManager(self.db, ttl_seconds=60, clock=self.clock)

    def tearDown(self):
        self.db.close()

    def test_second_acquire_is_refused(self):
        self.locks.acquire(1, 1)

        with self.assertRaises(SyncLockedError):
            self.locks.acquire(1, 1)
        self.assertTrue(self.locks.is_locked(1, 1))

    def test_scopes_are_independent(self):
        self.locks.acquire(1, 1)
        self.locks.acquire(1, 2)
        self.locks.acquire(2, 1)

    def test_release_allows_a_new_pass(self):
        token = self.locks.acquire(1, 1)

        self.assertTrue(self.locks.release(1, 1, token))
        self.assertFalse(self.locks.is_locked(1, 1))
        self.locks.acquire(1, 1)

    def test_expired_lock_is_taken_over(self):
        stale_token = self.locks.acquire(1, 1)
        self.clock.now += timedelta(seconds=61)

        self.assertFalse(self.locks.is_locked(1, 1))
        new_token = self.locks.acquire(1, 1)

        self.assertNotEqual(stale_token, new_token)
        self.assertFalse(self.locks.release(1, 1, stale_token))
        self.assertTrue(self.locks.is_locked(1, 1))

    def test_refresh_extends_the_lock(self):
        token = self.locks.acquire(1, 1)
        self.clock.now += timedelta(seconds=40)
        self.locks.refresh(1, 1, token)
        self.clock.now += timedelta(seconds=40)

        self.assertTrue(self.locks.is_locked(1, 1))
        with self.assertRaises(SyncLockedError):
            self.locks.acquire(1, 1)
        self.assertTrue(self.locks.release(1, 1, token))

    def test_refresh_after_takeover_raises(self):
        stale_token = self.locks.acquire(1, 1)
        self.clock.now += timedelta(seconds=61)
        new_token = self.locks.acquire(1, 1)

        with self.assertRaises(SyncLockLostError):
            self.locks.refresh(1, 1, stale_token)
        self.locks.refresh(1, 1, new_token)
        self.assertTrue(self.locks.is_locked(1, 1))

    def test_hold_releases_on_error(self):
        with self.assertRaises(RuntimeError):
            with self.locks.hold(1, 1):
                raise RuntimeError("boom")

        self.assertFalse(self.locks.is_locked(1, 1))


if __name__ == "__main__":
    unittest.main()
