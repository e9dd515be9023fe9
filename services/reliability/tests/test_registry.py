import pytest

from reliability.breaker import DEFAULT_BREAKERS, BreakerConfig
from reliability.exceptions import CircuitOpenError
from reliability.guard import guarded
from reliability.metrics import Metrics
from reliability.registry import CircuitBreakerRegistry


@pytest.fixture
def registry(clock):
    return CircuitBreakerRegistry(clock=clock)


async def fail():
    raise ConnectionError("relay refused")


def test_defaults_per_dependency_class(registry):
    registry.register_defaults()
    assert registry.names == sorted(DEFAULT_BREAKERS)
    assert registry.get("slack").config.failure_threshold == 5
    assert registry.get("slack").config.timeout_s == 30.0
    assert registry.get("email").config.failure_threshold == 3
    assert registry.get("email").config.timeout_s == 60.0
    assert registry.get("database").config.failure_threshold == 10
    assert registry.get("database").config.timeout_s == 20.0
    assert registry.get("storage").config.failure_threshold == 8
    assert registry.get("storage").config.timeout_s == 30.0


def test_register_is_get_or_create(registry):
    custom = registry.register("payments", BreakerConfig(failure_threshold=2))
    assert registry.register("payments", BreakerConfig(failure_threshold=99)) is custom
    assert registry.get("payments").config.failure_threshold == 2
    # unknown names get the generic default
    assert registry.get("geo").config == BreakerConfig()


def test_registries_are_isolated(clock):
    a = CircuitBreakerRegistry(clock=clock)
    b = CircuitBreakerRegistry(clock=clock)
    assert a.get("slack") is not b.get("slack")


@pytest.mark.asyncio
async def test_execute_and_get_state(registry):
    for _ in range(3):
        with pytest.raises(ConnectionError):
            await registry.execute("email", fail)

    state = registry.get_state("email")
    assert state["state"] == "OPEN"
    assert state["failure_count"] == 0
    assert state["open_until"] is not None
    with pytest.raises(CircuitOpenError):
        await registry.execute("email", fail)
    assert await registry.execute("email", fail, lambda: "queued locally") == "queued locally"


@pytest.mark.asyncio
async def test_health_degrades_while_any_breaker_is_open(registry):
    registry.register_defaults()
    assert registry.health()["status"] == "HEALTHY"

    for _ in range(3):
        with pytest.raises(ConnectionError):
            await registry.execute("email", fail)
    health = registry.health()
    assert health["status"] == "DEGRADED"
    assert health["open"] == 1
    assert health["closed"] == len(DEFAULT_BREAKERS) - 1

    registry.reset_all()
    assert registry.health()["healthy"]


@pytest.mark.asyncio
async def test_all_status_includes_counters(registry):
    await registry.execute("storage", lambda: "stored")
    status = registry.all_status()
    assert status["storage"]["state"] == "CLOSED"
    assert status["storage"]["metrics"]["total_successes"] == 1


@pytest.mark.asyncio
async def test_guarded_decorator_uses_named_breaker(registry):
    registry.register("teams", BreakerConfig(failure_threshold=1))
    sent = []

    async def keep_locally(channel, text):
        return {"fallback": True, "channel": channel}

    @guarded(registry, "teams", fallback=keep_locally)
    async def post_message(channel, text):
        sent.append((channel, text))
        raise ConnectionError("teams webhook 503")

    assert await post_message("#kudos", "hi") == {"fallback": True, "channel": "#kudos"}
    assert registry.get_state("teams")["state"] == "OPEN"
    assert await post_message("#kudos", "again") == {"fallback": True, "channel": "#kudos"}
    assert sent == [("#kudos", "hi")]


@pytest.mark.asyncio
async def test_breaker_metrics_exported(clock):
    metrics = Metrics()
    registry = CircuitBreakerRegistry(clock=clock, metrics=metrics)
    registry.register("email", BreakerConfig(failure_threshold=1))
    with pytest.raises(ConnectionError):
        await registry.execute("email", fail)

    r = metrics.registry
    assert r.get_sample_value("circuit_breaker_state", {"breaker": "email"}) == 1
    assert r.get_sample_value("circuit_breaker_calls_total", {"breaker": "email", "outcome": "failure"}) == 1
    assert r.get_sample_value("circuit_breaker_transitions_total", {"breaker": "email", "to_state": "OPEN"}) == 1
