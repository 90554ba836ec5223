"""Racing consumers of the same one-time material against MemoryStore."""

import threading
from datetime import timedelta

from stepgate.service.errors import ChallengeFailed, EnrollmentFailed, FailureReason
from stepgate.service.recovery import RecoveryCodeManager
from stepgate.service.totp import TotpVerifier
from stepgate.storage.memory import MemoryStore
from stepgate.storage.models import ConsumeStatus, FactorMethod, FactorState

THREADS = 16


def race(target):
    barrier = threading.Barrier(THREADS)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        outcome = target()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(THREADS)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


class TestSingleUse:
    """Exactly one concurrent consumer wins."""

    def test_challenge(self, memory_store, clock):
        memory_store.set_challenge("user-1", "t" * 64, clock.now + timedelta(minutes=10))

        results = race(lambda: memory_store.consume_challenge("user-1", "t" * 64, clock.now))

        assert results.count(ConsumeStatus.CONSUMED) == 1
        assert results.count(ConsumeStatus.ABSENT) == THREADS - 1

    def test_email_code(self, memory_store, clock):
        memory_store.set_email_code("user-1", "123456", clock.now + timedelta(minutes=10))

        results = race(lambda: memory_store.consume_email_code("user-1", "123456", clock.now))

        assert results.count(ConsumeStatus.CONSUMED) == 1

    def test_recovery_code(self, memory_store, clock):
        memory_store.set_factor_state(
            "user-1",
            FactorState(method=FactorMethod.TOTP, secret="JBSWY3DPEHPK3PXP", confirmed_at=clock.now),
            recovery_codes=["a", "b"],
        )

        results = race(lambda: memory_store.consume_recovery_code("user-1", "a"))

        assert results.count(1) == 1
        assert results.count(None) == THREADS - 1
        assert memory_store.get_recovery_codes("user-1") == ["b"]

    async def test_recovery_code_replay_rejected(self, stepup, clock):
        """A spent recovery code fails on a later, valid challenge."""
        enrollment = await stepup.login.enroll_totp("user-1", "alice@example.com")
        codes = await stepup.login.confirm_totp(
            "user-1", stepup.totp.generate_code(enrollment.secret, clock.now)
        )
        first = await stepup.login.begin_login("user-1")
        second_token = "s" * 64

        outcome = await stepup.login.complete_login_with_recovery_code("user-1", first.challenge_token, codes[0])
        stepup.store.set_challenge("user-1", second_token, clock.now + timedelta(minutes=5))
        replay = await stepup.login.complete_login_with_recovery_code("user-1", second_token, codes[0])

        assert outcome.recovery_codes_remaining == 7
        assert replay == ChallengeFailed(FailureReason.RECOVERY_CODE_EXHAUSTED)


class ConfirmRaceStore(MemoryStore):
    """Holds every reader of a pending factor until both confirmations have read it."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.barrier = threading.Barrier(2, timeout=5)

    def get_factor_state(self, identity_id):
        state = super().get_factor_state(identity_id)
        if state.pending:
            self.barrier.wait()
        return state


class TestTotpConfirmation:
    """Concurrent confirmations of one pending factor."""

    def test_single_confirmation_wins(self, clock):
        """Only one caller receives recovery codes, and those are the stored ones."""
        store = ConfirmRaceStore(encryption_key="race-key")
        recovery = RecoveryCodeManager(store)
        totp = TotpVerifier(store, recovery=recovery, clock=clock)
        secret = totp.enroll("user-1", "alice@example.com").secret
        code = totp.generate_code(secret, clock.now)
        results = []
        lock = threading.Lock()

        def confirm():
            outcome = totp.confirm("user-1", code)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=confirm) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        issued = [r for r in results if isinstance(r, list)]
        assert len(issued) == 1
        assert EnrollmentFailed(FailureReason.ALREADY_ENROLLED) in results
        assert store.get_recovery_codes("user-1") == [recovery.digest(c) for c in issued[0]]
        assert recovery.verify_and_consume("user-1", issued[0][0]).remaining == 7
