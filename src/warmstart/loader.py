"""On-demand instantiation of module containers.

A :class:`LazyModuleLoader` turns module factories into ready containers and
caches them by descriptor id. Whatever factory value produced a descriptor,
one id maps to one container per loader. Loads that are in flight are shared
with every caller that asks for the same module; loads that failed are
forgotten, so the next request starts over.
"""

import asyncio
import inspect
import time
from functools import partial
from typing import Any, Generator, Mapping, Optional

import structlog

from warmstart.container import ModuleContainer, release_failed
from warmstart.domain import ModuleDescriptor, ModuleFactory
from warmstart.errors import (
    CircularDependency,
    ContainerNotReady,
    DependencyError,
    DisposalError,
    ModuleLoadFailure,
    UnknownModule,
)

__all__ = ["LazyModuleLoader", "LoadHandle"]

logger = structlog.get_logger(__name__)


class LoadHandle:
    """Shared reference to a module load.

    Awaiting the handle returns the module's container. Every handle for the
    same module id resolves to the same container object, and a caller that
    is cancelled while awaiting does not cancel the load for anyone else.
    """

    def __init__(self, future: asyncio.Future):
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    @property
    def container(self) -> ModuleContainer:
        """The loaded container.

        Raises:
            ContainerNotReady: If the load is still in flight.
            ModuleLoadFailure: If the load failed.
        """
        if not self._future.done():
            raise ContainerNotReady("Module load is still in flight")
        return self._future.result()

    def __await__(self) -> Generator[Any, None, ModuleContainer]:
        return asyncio.shield(self._future).__await__()


class LazyModuleLoader:
    """Deduplicate and cache module instantiation keyed by module id.

    Args:
        root: A ready container that modules may import by its id.
        known_factories: Factories by module id, used to load imported modules
            that have not been loaded yet.
    """

    def __init__(
        self,
        root: Optional[ModuleContainer] = None,
        known_factories: Optional[Mapping[str, ModuleFactory]] = None,
    ):
        self._root = root
        self._known_factories = dict(known_factories or {})
        self._entries: dict[str, asyncio.Future] = {}
        self._factory_ids: dict[ModuleFactory, str] = {}
        self._describing: dict[ModuleFactory, asyncio.Future] = {}
        self._awaiting: dict[str, str] = {}
        self._importers: dict[str, set[str]] = {}
        self._load_order: list[str] = []

    @property
    def root(self) -> Optional[ModuleContainer]:
        return self._root

    def known_factory(self, module_id: str) -> ModuleFactory:
        """Return the known factory for ``module_id``.

        Raises:
            UnknownModule: If no factory is known for the id.
        """
        try:
            return self._known_factories[module_id]
        except KeyError:
            raise UnknownModule(module_id) from None

    def load(self, factory: ModuleFactory) -> LoadHandle:
        """Return a handle to the container for the module ``factory`` describes.

        The factory is not invoked again once its module has loaded. Concurrent
        calls with the same factory share one invocation, and concurrent loads
        of the same module id share one instantiation. After a failed load the
        next call invokes the factory again.

        Must be called from a running event loop.
        """
        module_id = self._factory_ids.get(factory)
        if module_id is not None:
            entry = self._entries.get(module_id)
            if entry is not None:
                return LoadHandle(entry)

        pending = self._describing.get(factory)
        if pending is None:
            pending = asyncio.ensure_future(self._load(factory))
            self._describing[factory] = pending
            pending.add_done_callback(partial(self._finish_describing, factory))
        return LoadHandle(pending)

    async def unload(self, module_id: str) -> bool:
        """Dispose the container for ``module_id`` and forget it.

        Returns:
            True if a loaded container was disposed.

        Raises:
            DependencyError: If other loaded modules import this one.
            DisposalError: If a teardown hook of the container failed.
        """
        importers = self._importers.get(module_id, set()) & set(self._entries)
        if importers:
            raise DependencyError(
                f"Module '{module_id}' is imported by {sorted(importers)}; "
                "unload those first"
            )

        entry = self._entries.pop(module_id, None)
        if entry is None:
            return False
        self._forget(module_id)

        try:
            container = await asyncio.shield(entry)
        except ModuleLoadFailure:
            return False

        await container.dispose()
        logger.info("module_unloaded", module_id=module_id)
        return True

    def loaded_modules(self) -> list[str]:
        """Ids of successfully loaded modules, in load order."""
        return list(self._load_order)

    async def aclose(self):
        """Unload every loaded module, most recently loaded first.

        Every module is unloaded even if some teardown hooks fail.

        Raises:
            DisposalError: The first disposal failure, once all modules are unloaded.
        """
        first_failure = None
        for module_id in reversed(self.loaded_modules()):
            try:
                await self.unload(module_id)
            except DisposalError as exc:
                first_failure = first_failure or exc
        if first_failure is not None:
            raise first_failure

    async def _load(self, factory: ModuleFactory) -> ModuleContainer:
        try:
            descriptor = factory()
            if inspect.isawaitable(descriptor):
                descriptor = await descriptor
        except Exception as exc:
            logger.error(
                "module_factory_failed", factory=_describe(factory), error=repr(exc)
            )
            raise ModuleLoadFailure(
                _describe(factory), f"Module factory {_describe(factory)} failed"
            ) from exc

        if not isinstance(descriptor, ModuleDescriptor):
            raise ModuleLoadFailure(
                _describe(factory),
                f"Module factory {_describe(factory)} returned "
                f"{type(descriptor).__name__}, not a ModuleDescriptor",
            )

        self._factory_ids[factory] = descriptor.id
        return await asyncio.shield(self._entry_for(descriptor))

    def _entry_for(self, descriptor: ModuleDescriptor) -> asyncio.Future:
        entry = self._entries.get(descriptor.id)
        if entry is None:
            entry = asyncio.ensure_future(self._instantiate(descriptor))
            self._entries[descriptor.id] = entry
            entry.add_done_callback(partial(self._settle, descriptor))
        return entry

    async def _instantiate(self, descriptor: ModuleDescriptor) -> ModuleContainer:
        started = time.perf_counter()
        logger.info("module_load_started", module_id=descriptor.id)
        try:
            imports = [
                await self._import(imported, descriptor.id)
                for imported in sorted(descriptor.imports)
            ]
            container = ModuleContainer(descriptor, imports)
            try:
                await container.materialise()
            except Exception:
                await release_failed(container)
                raise
        except Exception as exc:
            logger.error(
                "module_load_failed", module_id=descriptor.id, error=repr(exc)
            )
            raise ModuleLoadFailure(descriptor.id) from exc

        logger.info(
            "module_loaded",
            module_id=descriptor.id,
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
        )
        return container

    async def _import(self, module_id: str, importer: str) -> ModuleContainer:
        if self._root is not None and module_id == self._root.id:
            return self._root

        cycle = self._wait_cycle(importer, module_id)
        if cycle:
            raise CircularDependency(cycle)

        self._awaiting[importer] = module_id
        try:
            entry = self._entries.get(module_id)
            if entry is not None:
                container = await asyncio.shield(entry)
            else:
                container = await self.load(self.known_factory(module_id))
        finally:
            del self._awaiting[importer]

        if container.id != module_id:
            raise DependencyError(
                f"Factory for module '{module_id}' produced module '{container.id}'"
            )
        return container

    def _wait_cycle(self, importer: str, imported: str) -> Optional[list[str]]:
        # Loads that wait on each other in a ring would never finish.
        chain = [importer, imported]
        node = imported
        while node in self._awaiting:
            node = self._awaiting[node]
            chain.append(node)
            if node == importer:
                return chain
        return None

    def _settle(self, descriptor: ModuleDescriptor, entry: asyncio.Future):
        if entry.cancelled() or entry.exception() is not None:
            if self._entries.get(descriptor.id) is entry:
                del self._entries[descriptor.id]
            return

        if self._entries.get(descriptor.id) is entry:
            self._load_order.append(descriptor.id)
            for imported in descriptor.imports:
                self._importers.setdefault(imported, set()).add(descriptor.id)

    def _finish_describing(self, factory: ModuleFactory, pending: asyncio.Future):
        if self._describing.get(factory) is pending:
            del self._describing[factory]
        if not pending.cancelled():
            pending.exception()

    def _forget(self, module_id: str):
        if module_id in self._load_order:
            self._load_order.remove(module_id)
        for importers in self._importers.values():
            importers.discard(module_id)
        for factory in [f for f, i in self._factory_ids.items() if i == module_id]:
            del self._factory_ids[factory]


def _describe(factory: ModuleFactory) -> str:
    return getattr(factory, "__qualname__", None) or repr(factory)
