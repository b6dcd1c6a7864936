"""Dependency resolution for the providers of a single container.

A :class:`DependencyGraph` holds the registrations of one module plus the
containers it imports. Tokens are resolved depth-first: dependencies first,
then the provider's own factory. Singleton resolutions are memoised as
futures, so a factory runs once per graph even when resolutions race, and
its outcome (instance or failure) is cached.

Before any factory runs, :meth:`DependencyGraph.build_order` checks the graph
statically: every dependency must be satisfiable and the local providers must
be acyclic.
"""

import asyncio
import inspect
from collections import defaultdict, deque
from typing import Any, Iterable, Optional, Protocol, Sequence

import structlog

from warmstart.domain import ProviderRegistration, ProviderToken, Scope
from warmstart.errors import (
    CircularDependency,
    DependencyError,
    ProviderFailure,
    UnknownProvider,
    describe_token,
)

__all__ = ["DependencyGraph", "ExportingContainer"]

logger = structlog.get_logger(__name__)


class ExportingContainer(Protocol):
    """The surface of an imported container that a graph relies on."""

    @property
    def id(self) -> str: ...

    @property
    def exported_tokens(self) -> frozenset: ...

    async def get(self, token: ProviderToken) -> Any: ...

    def __getitem__(self, token: ProviderToken) -> Any: ...


class _TopologicalOrder:
    """Orders provider tokens so that each comes after everything it depends on.

    Only dependencies that are themselves added as tokens take part in the order.
    """

    def __init__(self):
        self._requires: dict[ProviderToken, set[ProviderToken]] = {}

    def add(self, token: ProviderToken, dependencies: Iterable[ProviderToken]):
        self._requires.setdefault(token, set()).update(dependencies)

    def traverse(self):
        """Yield tokens dependencies-first (Kahn's algorithm).

        Raises:
            CircularDependency: If some tokens can never be yielded, naming one cycle.
        """
        dependants: dict[ProviderToken, list[ProviderToken]] = defaultdict(list)
        for token, required in self._requires.items():
            for dependency in required:
                dependants[dependency].append(token)

        unmet = {token: len(required) for token, required in self._requires.items()}
        ready = deque(token for token, count in unmet.items() if count == 0)
        while ready:
            token = ready.popleft()
            del unmet[token]
            yield token
            for dependant in dependants[token]:
                unmet[dependant] -= 1
                if unmet[dependant] == 0:
                    ready.append(dependant)

        if unmet:
            raise CircularDependency(self._find_cycle(unmet))

    def _find_cycle(self, unmet: dict[ProviderToken, int]) -> list[ProviderToken]:
        # Every unmet token still requires another unmet token, so walking
        # those edges must come back to a token already on the path.
        path: list[ProviderToken] = []
        token = next(iter(unmet))
        while token not in path:
            path.append(token)
            token = next(t for t in self._requires[token] if t in unmet)
        return path[path.index(token):] + [token]


class DependencyGraph:
    """Resolve provider instances in dependency order.

    Args:
        registrations: The providers owned by this graph.
        imports: Ready containers whose exported tokens this graph may use.
        name: Name of the owning container, used in errors and logs.

    Raises:
        DependencyError: If a token is registered twice, collides with a token
            exported by an import, or is exported by more than one import.
    """

    def __init__(
        self,
        registrations: Iterable[ProviderRegistration],
        imports: Sequence[ExportingContainer] = (),
        name: str = "<graph>",
    ):
        self.name = name
        self._registrations: dict[ProviderToken, ProviderRegistration] = {}
        for registration in registrations:
            if registration.token in self._registrations:
                raise DependencyError(
                    f"Duplicate provider token '{describe_token(registration.token)}' "
                    f"in container '{name}'"
                )
            self._registrations[registration.token] = registration

        self._exporters = self._index_exports(imports)
        self._singletons: dict[ProviderToken, asyncio.Future] = {}
        self._resolution_order: list[ProviderToken] = []
        self._awaiting: dict[ProviderToken, ProviderToken] = {}

    def __contains__(self, token: ProviderToken) -> bool:
        return token in self._registrations or token in self._exporters

    @property
    def tokens(self) -> frozenset:
        return frozenset(self._registrations)

    def registration_for(self, token: ProviderToken) -> Optional[ProviderRegistration]:
        return self._registrations.get(token)

    def build_order(self) -> list[ProviderToken]:
        """Order the local providers so dependencies come before dependants.

        Raises:
            UnknownProvider: If a dependency is neither registered nor imported.
            CircularDependency: If the local providers form a cycle.
        """
        order = _TopologicalOrder()
        for token, registration in self._registrations.items():
            for dependency in registration.dependency_tokens:
                if dependency not in self:
                    raise UnknownProvider(dependency, self.name)
            order.add(
                token,
                (d for d in registration.dependency_tokens if d in self._registrations),
            )
        return list(order.traverse())

    async def resolve(
        self, token: ProviderToken, _chain: tuple[ProviderToken, ...] = ()
    ) -> Any:
        """Return the instance for ``token``.

        Raises:
            UnknownProvider: If no registration or import provides the token.
            CircularDependency: If the token is already being resolved on this
                chain, or its in-flight build is waiting on this one.
            ProviderFailure: If the token's factory, or a dependency's, failed.
        """
        if token in _chain:
            raise CircularDependency(_chain + (token,))

        registration = self._registrations.get(token)
        if registration is None:
            exporter = self._exporters.get(token)
            if exporter is None:
                raise UnknownProvider(token, self.name)
            return await exporter.get(token)

        chain = _chain + (token,)
        if registration.scope is Scope.TRANSIENT:
            return await self._build(registration, chain)

        future = self._singletons.get(token)
        if future is None:
            future = asyncio.ensure_future(self._build_singleton(registration, chain))
            self._singletons[token] = future
        elif future.done():
            return future.result()

        waiter = self._building(_chain)
        if waiter is None:
            return await asyncio.shield(future)

        cycle = self._wait_cycle(waiter, token)
        if cycle:
            raise CircularDependency(cycle)
        self._awaiting[waiter] = token
        try:
            return await asyncio.shield(future)
        finally:
            del self._awaiting[waiter]

    def cached(self, token: ProviderToken) -> Any:
        """Return an already-resolved singleton without suspending.

        Raises:
            KeyError: If the token has not finished resolving.
            ProviderFailure: If its resolution failed.
        """
        if token in self._exporters:
            return self._exporters[token][token]
        future = self._singletons.get(token)
        if future is None or not future.done():
            raise KeyError(token)
        return future.result()

    def singletons(self) -> list[tuple[ProviderRegistration, Any]]:
        """Resolved singletons, dependencies before dependants."""
        return [
            (self._registrations[token], self._singletons[token].result())
            for token in self._resolution_order
        ]

    def _building(self, chain: tuple[ProviderToken, ...]) -> Optional[ProviderToken]:
        # The innermost singleton on a chain is the one whose task is running.
        for token in reversed(chain):
            if self._registrations[token].scope is Scope.SINGLETON:
                return token
        return None

    def _wait_cycle(
        self, waiter: ProviderToken, token: ProviderToken
    ) -> Optional[list[ProviderToken]]:
        # Singleton builds waiting on each other in a ring would never finish.
        cycle = [waiter, token]
        while token in self._awaiting:
            token = self._awaiting[token]
            cycle.append(token)
            if token == waiter:
                return cycle
        return None

    async def _build_singleton(
        self, registration: ProviderRegistration, chain: tuple[ProviderToken, ...]
    ) -> Any:
        instance = await self._build(registration, chain)
        self._resolution_order.append(registration.token)
        return instance

    async def _build(
        self, registration: ProviderRegistration, chain: tuple[ProviderToken, ...]
    ) -> Any:
        args = []
        kwargs = {}
        for dependency in registration.dependencies:
            value = await self.resolve(dependency.token, chain)
            if dependency.parameter_name is None:
                args.append(value)
            else:
                kwargs[dependency.parameter_name] = value

        try:
            instance = registration.factory(*args, **kwargs)
            if inspect.isawaitable(instance):
                instance = await instance
        except Exception as exc:
            logger.warning(
                "provider_failed",
                container=self.name,
                token=describe_token(registration.token),
                error=repr(exc),
            )
            raise ProviderFailure(registration.token) from exc
        return instance

    def _index_exports(
        self, imports: Sequence[ExportingContainer]
    ) -> dict[ProviderToken, ExportingContainer]:
        exporters: dict[ProviderToken, ExportingContainer] = {}
        for imported in imports:
            for token in imported.exported_tokens:
                if token in self._registrations:
                    raise DependencyError(
                        f"Provider token '{describe_token(token)}' in container "
                        f"'{self.name}' conflicts with the one exported by '{imported.id}'"
                    )
                if token in exporters:
                    raise DependencyError(
                        f"Multiple candidates for token '{describe_token(token)}': "
                        f"{[exporters[token].id, imported.id]}"
                    )
                exporters[token] = imported
        return exporters
