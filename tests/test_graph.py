import asyncio
from dataclasses import dataclass
from typing import Annotated

import pytest

from helpers import counting, failing
from warmstart.domain import Scope
from warmstart.errors import CircularDependency, ProviderFailure, UnknownProvider
from warmstart.graph import DependencyGraph
from warmstart.registry import ProviderRegistry, registration


@dataclass(frozen=True)
class Config:
    url: str


@dataclass(frozen=True)
class Database:
    config: Config


@pytest.mark.asyncio
async def test_dependencies_resolve_before_dependants():
    resolved = []

    def make_config():
        resolved.append("config")
        return Config("sqlite://")

    def make_db(config):
        resolved.append("db")
        return Database(config)

    graph = DependencyGraph(
        [registration("db", make_db, "config"), registration("config", make_config)]
    )

    db = await graph.resolve("db")

    assert resolved == ["config", "db"]
    assert db.config is await graph.resolve("config")


@pytest.mark.asyncio
async def test_keyword_dependencies_come_from_the_signature(registry: ProviderRegistry):
    @registry.provides(token=Config)
    def make_config() -> Config:
        return Config("postgres://")

    registry.provides()(Database)

    graph = DependencyGraph(registry.registered_providers())

    assert (await graph.resolve(Database)).config.url == "postgres://"


@pytest.mark.asyncio
async def test_async_factories_are_awaited(calls):
    graph = DependencyGraph([registration("conn", counting(calls, "conn", value="open"))])

    assert await graph.resolve("conn") == "open"


@pytest.mark.asyncio
async def test_singletons_are_resolved_once_and_transients_every_time(calls):
    graph = DependencyGraph(
        [
            registration("single", counting(calls, "single")),
            registration("fresh", lambda: object(), scope=Scope.TRANSIENT),
        ]
    )

    assert await graph.resolve("single") is await graph.resolve("single")
    assert await graph.resolve("fresh") is not await graph.resolve("fresh")
    assert calls["single"] == 1


@pytest.mark.asyncio
async def test_transient_providers_share_singleton_dependencies(calls):
    graph = DependencyGraph(
        [
            registration("config", counting(calls, "config")),
            registration(
                "session", lambda config: [config], "config", scope=Scope.TRANSIENT
            ),
        ]
    )

    first = await graph.resolve("session")
    second = await graph.resolve("session")

    assert first is not second
    assert first[0] is second[0]
    assert calls["config"] == 1


@pytest.mark.asyncio
async def test_racing_resolutions_run_a_singleton_factory_once(calls):
    graph = DependencyGraph(
        [registration("conn", counting(calls, "conn", delay=0.01))]
    )

    results = await asyncio.gather(*(graph.resolve("conn") for _ in range(10)))

    assert calls["conn"] == 1
    assert all(result is results[0] for result in results)


@pytest.mark.asyncio
async def test_cycle_is_detected_while_resolving():
    graph = DependencyGraph(
        [
            registration("a", lambda b: b, "b"),
            registration("b", lambda a: a, "a"),
        ]
    )

    with pytest.raises(CircularDependency, match="a -> b -> a") as exc_info:
        await graph.resolve("a")

    assert exc_info.value.chain == ("a", "b", "a")


@pytest.mark.asyncio
async def test_long_cycles_are_detected_before_exhausting_the_stack():
    size = 2000
    graph = DependencyGraph(
        [
            registration(f"n{i}", lambda dep: dep, f"n{(i + 1) % size}")
            for i in range(size)
        ]
    )

    with pytest.raises(CircularDependency) as exc_info:
        await graph.resolve("n0")

    assert len(exc_info.value.chain) == size + 1


def test_build_order_puts_dependencies_first():
    graph = DependencyGraph(
        [
            registration("service", lambda db: db, "db"),
            registration("db", lambda config: config, "config"),
            registration("config", lambda: "config"),
        ]
    )

    assert graph.build_order() == ["config", "db", "service"]


def test_build_order_names_a_cycle():
    graph = DependencyGraph(
        [
            registration("root", lambda a: a, "a"),
            registration("a", lambda b: b, "b"),
            registration("b", lambda a: a, "a"),
        ]
    )

    with pytest.raises(CircularDependency) as exc_info:
        graph.build_order()

    chain = exc_info.value.chain
    assert chain[0] == chain[-1]
    assert set(chain) == {"a", "b"}


def test_build_order_reports_missing_dependencies():
    graph = DependencyGraph([registration("db", lambda config: config, "config")], name="app")

    with pytest.raises(UnknownProvider, match="No provider for config in container 'app'"):
        graph.build_order()


@pytest.mark.asyncio
async def test_unknown_token_names_the_container():
    graph = DependencyGraph([], name="app")

    with pytest.raises(UnknownProvider, match="No provider for Config in container 'app'"):
        await graph.resolve(Config)


@pytest.mark.asyncio
async def test_factory_failure_is_wrapped_cached_and_shared_by_dependants(calls):
    error = ConnectionError("cache unreachable")
    graph = DependencyGraph(
        [
            registration("cache", failing(calls, "cache", error)),
            registration("service", lambda cache: cache, "cache"),
        ]
    )

    with pytest.raises(ProviderFailure, match="Provider for cache failed") as direct:
        await graph.resolve("cache")
    with pytest.raises(ProviderFailure) as dependant:
        await graph.resolve("service")

    assert direct.value.token == "cache"
    assert direct.value.__cause__ is error
    assert dependant.value is direct.value
    assert calls["cache"] == 1


@pytest.mark.asyncio
async def test_singletons_are_listed_in_resolution_order():
    graph = DependencyGraph(
        [
            registration("service", lambda db: "service", "db"),
            registration("db", lambda: "db"),
            registration("request", lambda: "request", scope=Scope.TRANSIENT),
        ]
    )

    await graph.resolve("service")
    await graph.resolve("request")

    assert [(r.token, instance) for r, instance in graph.singletons()] == [
        ("db", "db"),
        ("service", "service"),
    ]


class Pool:
    def __init__(self, config: Config, size: Annotated[int, "pool_size"]):
        self.config = config
        self.size = size


@pytest.mark.asyncio
async def test_classes_with_their_own_init_are_resolved_by_type(registry: ProviderRegistry):
    registry.provides(token=Config)(lambda: Config("postgres://"))
    registry.register(registration("pool_size", lambda: 4))
    registry.provides()(Pool)

    graph = DependencyGraph(registry.registered_providers())
    pool = await graph.resolve(Pool)

    assert pool.config is await graph.resolve(Config)
    assert pool.size == 4


@pytest.mark.asyncio
async def test_cycle_is_detected_when_its_ends_are_resolved_concurrently():
    graph = DependencyGraph(
        [
            registration("a", lambda b: b, "b"),
            registration("b", lambda a: a, "a"),
        ]
    )

    results = await asyncio.wait_for(
        asyncio.gather(graph.resolve("a"), graph.resolve("b"), return_exceptions=True),
        timeout=1,
    )

    assert all(isinstance(result, CircularDependency) for result in results)
    assert set(results[0].chain) == {"a", "b"}
