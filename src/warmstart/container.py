"""Module containers: one instantiated dependency graph and its lifecycle.

A container is created from a :class:`~warmstart.domain.ModuleDescriptor` and
the ready containers it imports. :meth:`ModuleContainer.materialise` resolves
every singleton in dependency order; until it finishes the container refuses
lookups. A container whose materialisation failed keeps reporting that failure
and is never retried by itself: whoever owns it must discard it and build a
new one.

Containers may be layered through imports: a module may depend on the tokens
its imports export, but an import never sees the importing module.
"""

import asyncio
import inspect
import time
from typing import Any, Optional, Sequence

import structlog

from warmstart.domain import ContainerStatus, ModuleDescriptor, ProviderToken, Scope
from warmstart.errors import (
    ContainerDisposed,
    ContainerNotReady,
    DependencyError,
    DisposalError,
    UnknownModule,
    UnknownProvider,
    describe_token,
)
from warmstart.graph import DependencyGraph

__all__ = ["ModuleContainer", "release_failed"]

logger = structlog.get_logger(__name__)


class ModuleContainer:
    """The live, resolved form of a module descriptor.

    Owns the instances its providers create. Singletons live exactly as long
    as the container and are released by :meth:`dispose` in reverse
    dependency order.

    Args:
        descriptor: The module to instantiate.
        imports: Ready containers for every id in ``descriptor.imports``.

    Raises:
        UnknownModule: If an imported module id has no matching container.
        ContainerNotReady: If an imported container is not ready.
        DependencyError: If the providers conflict with the imported exports.
    """

    def __init__(
        self, descriptor: ModuleDescriptor, imports: Sequence["ModuleContainer"] = ()
    ):
        self.descriptor = descriptor
        _check_imports(descriptor, imports)

        self._graph = DependencyGraph(descriptor.registrations, imports, descriptor.id)
        self._status = ContainerStatus.INITIALISING
        self._failure: Optional[BaseException] = None
        self._materialising: Optional[asyncio.Future] = None

    @classmethod
    async def instantiate(
        cls, descriptor: ModuleDescriptor, imports: Sequence["ModuleContainer"] = ()
    ) -> "ModuleContainer":
        """Build a container and resolve all of its singletons.

        Returns:
            The ready container.

        Raises:
            The error that failed the container, as captured by :meth:`materialise`.
        """
        container = cls(descriptor, imports)
        await container.materialise()
        return container

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def status(self) -> ContainerStatus:
        return self._status

    @property
    def failure(self) -> Optional[BaseException]:
        return self._failure

    @property
    def exported_tokens(self) -> frozenset:
        if self.descriptor.exports is None:
            return self.descriptor.tokens
        return self.descriptor.exports

    def exports(self, token: ProviderToken) -> bool:
        return token in self.exported_tokens

    async def materialise(self):
        """Resolve every singleton provider, dependencies first.

        Concurrent callers share one attempt. On failure the container becomes
        FAILED and the captured error is raised to every caller.
        """
        if self._status is ContainerStatus.DISPOSED:
            raise ContainerDisposed(f"Container '{self.id}' has been disposed")
        if self._materialising is None:
            self._materialising = asyncio.ensure_future(self._materialise())
        await asyncio.shield(self._materialising)

    async def get(self, token: ProviderToken) -> Any:
        """Resolve ``token`` from this container or its imports.

        Raises:
            ContainerNotReady: If the container is still initialising.
            ContainerDisposed: If the container has been disposed.
            UnknownProvider: If the token is not reachable from this container.
            The captured failure, if the container failed.
        """
        self._check_ready()
        return await self._graph.resolve(token)

    def __getitem__(self, token: ProviderToken) -> Any:
        self._check_ready()
        if token not in self._graph:
            raise UnknownProvider(token, self.id)
        registration = self._graph.registration_for(token)
        if registration is not None and registration.scope is Scope.TRANSIENT:
            raise KeyError(
                f"{describe_token(token)} is transient; resolve it with get()"
            )
        return self._graph.cached(token)

    def __contains__(self, token: ProviderToken) -> bool:
        return token in self._graph

    async def dispose(self):
        """Release owned singletons in reverse dependency order.

        Calling it again has no effect. Every teardown hook runs even if an
        earlier one fails.

        Raises:
            ContainerNotReady: If the container is still initialising.
            DisposalError: If any teardown hook failed.
        """
        if self._status is ContainerStatus.DISPOSED:
            return
        if self._status is ContainerStatus.INITIALISING:
            raise ContainerNotReady(
                f"Container '{self.id}' cannot be disposed while initialising"
            )

        owned = self._graph.singletons()
        self._status = ContainerStatus.DISPOSED

        failures = []
        for registration, instance in reversed(owned):
            if registration.teardown is None:
                continue
            try:
                result = registration.teardown(instance)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    "teardown_failed",
                    container=self.id,
                    token=describe_token(registration.token),
                    error=repr(exc),
                )
                failures.append((registration.token, exc))

        logger.info("container_disposed", container=self.id, released=len(owned))
        if failures:
            raise DisposalError(self.id, failures)

    async def _materialise(self):
        started = time.perf_counter()
        try:
            for token in self._graph.build_order():
                if self._graph.registration_for(token).scope is Scope.SINGLETON:
                    await self._graph.resolve(token)
        except Exception as exc:
            self._failure = exc
            self._status = ContainerStatus.FAILED
            logger.error("container_failed", container=self.id, error=repr(exc))
            raise

        self._status = ContainerStatus.READY
        logger.debug(
            "container_ready",
            container=self.id,
            singletons=len(self._graph.singletons()),
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
        )

    def _check_ready(self):
        if self._status is ContainerStatus.READY:
            return
        if self._status is ContainerStatus.INITIALISING:
            raise ContainerNotReady(f"Container '{self.id}' is still initialising")
        if self._status is ContainerStatus.DISPOSED:
            raise ContainerDisposed(f"Container '{self.id}' has been disposed")
        # each lookup reports the failure with a fresh traceback
        raise self._failure.with_traceback(None)

    def __repr__(self) -> str:
        return f"<ModuleContainer {self.id!r} {self._status.value}>"


def _check_imports(descriptor: ModuleDescriptor, imports: Sequence[ModuleContainer]):
    provided = {imported.id: imported for imported in imports}

    missing = descriptor.imports - provided.keys()
    if missing:
        raise UnknownModule(sorted(missing)[0])

    unexpected = provided.keys() - descriptor.imports
    if unexpected:
        raise DependencyError(
            f"Module '{descriptor.id}' was given containers it does not import: "
            f"{sorted(unexpected)}"
        )

    for imported in imports:
        if imported.status is not ContainerStatus.READY:
            raise ContainerNotReady(
                f"Imported container '{imported.id}' is {imported.status.value}"
            )


async def release_failed(container: ModuleContainer):
    """Dispose a container whose materialisation failed.

    Releases whatever singletons resolved before the failure. Teardown errors
    are logged; the materialisation error is the one the caller reports.
    """
    try:
        await container.dispose()
    except DisposalError as exc:
        logger.error(
            "failed_container_cleanup_failed", container=container.id, error=repr(exc)
        )
