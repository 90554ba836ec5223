"""RedisOneTimeStore against fakeredis."""

import json
import threading
from datetime import timedelta

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import build_stepup
from stepgate.service.errors import Authenticated, ChallengeFailed, FailureReason, StoreUnavailableError
from stepgate.storage.errors import StoreUnavailable
from stepgate.storage.memory import MemoryStore
from stepgate.storage.models import ConsumeStatus, FactorMethod, FactorState
from stepgate.storage.redis_cache import RedisOneTimeStore


@pytest.fixture
def redis_store(memory_store):
    return RedisOneTimeStore(memory_store, client=fakeredis.FakeRedis(decode_responses=True))


class DownRedis:
    """Client whose every call fails as if the server were unreachable."""

    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        return _fail


class TestRedisOneTimeStore:
    """Challenges and email codes live in Redis."""

    def test_challenge_round_trip(self, redis_store, clock):
        """Stored challenges are readable with their expiry."""
        expires_at = clock.now + timedelta(minutes=10)
        redis_store.set_challenge("user-1", "t" * 64, expires_at)

        challenge = redis_store.get_challenge("user-1")

        assert challenge.token == "t" * 64
        assert challenge.expires_at == expires_at
        assert redis_store.base.get_challenge("user-1") is None

    def test_keys_carry_ttl(self, redis_store, clock):
        """Keys outlive their logical expiry by one more lifetime."""
        redis_store.set_email_code("user-1", "123456", clock.now + timedelta(minutes=10))

        ttl = redis_store.client.ttl("stepup:email_code:user-1")

        assert 1200 < ttl <= 1200 + RedisOneTimeStore.TTL_GRACE_SECONDS

    def test_value_is_json_document(self, redis_store, clock):
        """The stored document holds the value and its expiry."""
        redis_store.set_email_code("user-1", "123456", clock.now + timedelta(minutes=10))

        raw = json.loads(redis_store.client.get("stepup:email_code:user-1"))

        assert raw["value"] == "123456"
        assert "expires_at" in raw

    def test_consume_challenge_once(self, redis_store, clock):
        """A matching token is consumed exactly once."""
        redis_store.set_challenge("user-1", "t" * 64, clock.now + timedelta(minutes=10))

        assert redis_store.consume_challenge("user-1", "x" * 64, clock.now) is ConsumeStatus.MISMATCH
        assert redis_store.consume_challenge("user-1", "t" * 64, clock.now) is ConsumeStatus.CONSUMED
        assert redis_store.consume_challenge("user-1", "t" * 64, clock.now) is ConsumeStatus.ABSENT

    def test_expired_email_code_cleared(self, redis_store, clock):
        """Logical expiry is reported and the key removed."""
        redis_store.set_email_code("user-1", "123456", clock.now + timedelta(minutes=10))
        clock.advance(minutes=11)

        assert redis_store.consume_email_code("user-1", "123456", clock.now) is ConsumeStatus.EXPIRED
        assert redis_store.client.exists("stepup:email_code:user-1") == 0

    def test_durable_state_delegated(self, redis_store, memory_store, clock):
        """Factor state and recovery codes are read from the base store."""
        state = FactorState(method=FactorMethod.TOTP, secret="JBSWY3DPEHPK3PXP", confirmed_at=clock.now)
        redis_store.set_factor_state("user-1", state, recovery_codes=["a"])

        assert memory_store.get_factor_state("user-1") == state
        assert redis_store.consume_recovery_code("user-1", "a") == 0

    def test_clear_factor_removes_redis_keys(self, redis_store, clock):
        """Disabling drops both one-time keys."""
        redis_store.set_challenge("user-1", "t" * 64, clock.now + timedelta(minutes=10))
        redis_store.set_email_code("user-1", "123456", clock.now + timedelta(minutes=10))

        redis_store.clear_factor("user-1")

        assert redis_store.get_challenge("user-1") is None
        assert redis_store.get_email_code("user-1") is None

    def test_concurrent_consumers_single_winner(self, redis_store, clock):
        """Racing consumers of one token see exactly one CONSUMED."""
        redis_store.set_challenge("user-1", "t" * 64, clock.now + timedelta(minutes=10))
        results = []
        barrier = threading.Barrier(8)

        def consume():
            barrier.wait()
            results.append(redis_store.consume_challenge("user-1", "t" * 64, clock.now))

        threads = [threading.Thread(target=consume) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(ConsumeStatus.CONSUMED) == 1
        assert results.count(ConsumeStatus.ABSENT) == 7

    def test_close_closes_base_store(self, clock):
        """Closing the Redis layer also closes the wrapped durable store."""
        closed = []

        class ClosingStore(MemoryStore):
            def close(self):
                closed.append(True)

        store = RedisOneTimeStore(
            ClosingStore(encryption_key="k"), client=fakeredis.FakeRedis(decode_responses=True)
        )
        store.close()

        assert closed == [True]

    def test_requires_url_or_client(self, memory_store):
        """A store without a connection target is refused."""
        with pytest.raises(ValueError):
            RedisOneTimeStore(memory_store)


class TestRedisOutage:
    """Connection failures surface as StoreUnavailable."""

    def test_read_failure_is_store_unavailable(self, memory_store):
        """Driver errors are translated with the operation name."""
        store = RedisOneTimeStore(memory_store, client=DownRedis())

        with pytest.raises(StoreUnavailable) as excinfo:
            store.get_challenge("user-1")

        assert excinfo.value.operation == "get_challenge"
        assert isinstance(excinfo.value.__cause__, RedisConnectionError)

    def test_consume_failure_is_store_unavailable(self, memory_store, clock):
        """Check-and-clear failures propagate the same way."""
        store = RedisOneTimeStore(memory_store, client=DownRedis())

        with pytest.raises(StoreUnavailable):
            store.consume_email_code("user-1", "123456", clock.now)

    async def test_orchestrator_reports_outage(self, memory_store, clock, sender):
        """The login flow raises StoreUnavailableError on a Redis outage."""
        store = RedisOneTimeStore(memory_store, client=DownRedis())
        stepup = build_stepup(store, clock, sender)
        memory_store.set_factor_state(
            "user-1", FactorState(method=FactorMethod.EMAIL, confirmed_at=clock.now)
        )

        with pytest.raises(StoreUnavailableError):
            await stepup.login.begin_login("user-1")


class TestRedisLoginFlow:
    """The orchestrator works unchanged on top of Redis."""

    async def test_email_login_through_redis(self, redis_store, clock, sender):
        """Email step-up completes once with Redis-held material."""
        stepup = build_stepup(redis_store, clock, sender)
        await stepup.login.enroll_email("user-1", "alice@example.com")

        issued = await stepup.login.begin_login("user-1")
        code = sender.last_code("user-1")

        first = await stepup.login.complete_login("user-1", issued.challenge_token, code)
        second = await stepup.login.complete_login("user-1", issued.challenge_token, code)

        assert isinstance(first, Authenticated)
        assert second == ChallengeFailed(FailureReason.CHALLENGE_NOT_FOUND)

    async def test_late_email_code_reports_expired(self, redis_store, clock, sender):
        """Eleven minutes after dispatch the attempt fails as EXPIRED_CODE, not CHALLENGE_NOT_FOUND."""
        stepup = build_stepup(redis_store, clock, sender)
        await stepup.login.enroll_email("user-1", "alice@example.com")
        issued = await stepup.login.begin_login("user-1")
        code = sender.last_code("user-1")

        clock.advance(minutes=11)
        for key in ("stepup:challenge:user-1", "stepup:email_code:user-1"):
            assert redis_store.client.ttl(key) > 11 * 60

        result = await stepup.login.complete_login("user-1", issued.challenge_token, code)

        assert result == ChallengeFailed(FailureReason.EXPIRED_CODE)
