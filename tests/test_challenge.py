import threading
import unittest

import pytest
from flask import session

from passkey_server.app import app
from passkey_server.challenge import (
    MIN_CHALLENGE_SIZE,
    CeremonyPurpose,
    ChallengeBinder,
    ensure_ceremony_session_id,
    get_ceremony_session_id,
)
from passkey_server.errors import ChallengeExpired, Mismatch


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestChallengeBinder(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.binder = ChallengeBinder(ttl=60, clock=self.clock)

    def test_issue_returns_fresh_random_challenges(self):
        first = self.binder.issue("session-1", "a@x.com")
        second = self.binder.issue("session-2", "a@x.com")

        self.assertGreaterEqual(len(first), MIN_CHALLENGE_SIZE)
        self.assertEqual(len(first), 32)
        self.assertNotEqual(first, second)

    def test_challenge_size_below_minimum_is_rejected(self):
        with self.assertRaises(ValueError):
            ChallengeBinder(challenge_size=MIN_CHALLENGE_SIZE - 1)

    def test_consume_returns_binding_once(self):
        challenge = self.binder.issue("session-1", "a@x.com", CeremonyPurpose.REGISTRATION)

        binding = self.binder.consume("session-1", "a@x.com", CeremonyPurpose.REGISTRATION)
        self.assertEqual(binding.challenge, challenge)
        self.assertEqual(binding.identity, "a@x.com")
        self.assertEqual(binding.purpose, CeremonyPurpose.REGISTRATION)

        with self.assertRaises(Mismatch):
            self.binder.consume("session-1", "a@x.com", CeremonyPurpose.REGISTRATION)

    def test_consume_without_binding(self):
        with self.assertRaises(Mismatch):
            self.binder.consume("session-1", "a@x.com")
        with self.assertRaises(Mismatch):
            self.binder.consume(None, "a@x.com")

    def test_identity_mismatch_clears_binding(self):
        self.binder.issue("session-1", "a@x.com")

        with self.assertRaises(Mismatch):
            self.binder.consume("session-1", "b@x.com")

        self.assertIsNone(self.binder.peek("session-1"))
        with self.assertRaises(Mismatch):
            self.binder.consume("session-1", "a@x.com")

    def test_purpose_mismatch(self):
        self.binder.issue("session-1", "a@x.com", CeremonyPurpose.AUTHENTICATION)

        with self.assertRaises(Mismatch):
            self.binder.consume("session-1", "a@x.com", CeremonyPurpose.REGISTRATION)

    def test_issue_replaces_outstanding_challenge(self):
        self.binder.issue("session-1", "a@x.com")
        latest = self.binder.issue("session-1", "b@x.com")

        self.assertEqual(len(self.binder), 1)
        binding = self.binder.consume("session-1", "b@x.com")
        self.assertEqual(binding.challenge, latest)

    def test_expired_challenge_is_rejected(self):
        self.binder.issue("session-1", "a@x.com")
        self.clock.now += 61

        with self.assertRaises(ChallengeExpired):
            self.binder.consume("session-1", "a@x.com")
        self.assertIsNone(self.binder.peek("session-1"))

    def test_challenge_within_ttl_is_accepted(self):
        self.binder.issue("session-1", "a@x.com")
        self.clock.now += 59

        self.binder.consume("session-1", "a@x.com")

    def test_expired_bindings_are_purged_on_issue(self):
        self.binder.issue("session-1", "a@x.com")
        self.clock.now += 120
        self.binder.issue("session-2", "b@x.com")

        self.assertIsNone(self.binder.peek("session-1"))
        self.assertEqual(len(self.binder), 1)

    def test_ttl_none_never_expires(self):
        binder = ChallengeBinder(ttl=None, clock=self.clock)
        binder.issue("session-1", "a@x.com")
        self.clock.now += 10 ** 6

        binder.consume("session-1", "a@x.com")

    def test_discard(self):
        self.binder.issue("session-1", "a@x.com")
        self.binder.discard("session-1")
        self.binder.discard(None)

        with self.assertRaises(Mismatch):
            self.binder.consume("session-1", "a@x.com")


def test_concurrent_consumers_only_one_wins():
    binder = ChallengeBinder()
    binder.issue("session-1", "a@x.com")
    winners = []
    losers = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        try:
            binder.consume("session-1", "a@x.com")
        except Mismatch:
            losers.append(1)
        else:
            winners.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(winners) == 1
    assert len(losers) == 7


def test_locked_serialises_same_session():
    binder = ChallengeBinder()
    inside = []
    overlap = []

    def worker():
        with binder.locked("session-1"):
            if inside:
                overlap.append(1)
            inside.append(1)
            threading.Event().wait(0.01)
            inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlap == []
    assert binder._session_locks == {}


def test_session_locks_are_released_after_each_ceremony():
    binder = ChallengeBinder()
    for index in range(100):
        session_id = f"session-{index}"
        binder.issue(session_id, "a@x.com")
        with binder.locked(session_id):
            with binder.locked(session_id):
                binder.consume(session_id, "a@x.com")

    assert len(binder) == 0
    assert binder._session_locks == {}


def test_ceremony_session_id_lives_in_flask_session():
    with app.test_request_context("/"):
        assert get_ceremony_session_id() is None

        identifier = ensure_ceremony_session_id()
        assert identifier
        assert ensure_ceremony_session_id() == identifier
        assert get_ceremony_session_id() == identifier
        assert identifier in session.values()


def test_ceremony_session_id_requires_request_context():
    assert get_ceremony_session_id() is None
    with pytest.raises(RuntimeError):
        ensure_ceremony_session_id()
