"""Invocation entry points for serverless functions.

:func:`make_handler` wires a :class:`~warmstart.bootstrap.BootstrapSlot` and a
:class:`~warmstart.loader.LazyModuleLoader` into an ``(event, context)``
coroutine function. Each invocation gets the root container (built once per
process), the modules its event routes to (loaded once per process), and the
application's handler is called with both.

Example:
    >>> catalog = ModuleCatalog[WorkerType]()
    >>> catalog.register(WorkerType.REPORTS, import_descriptor("app.reports:MODULE"))
    >>>
    >>> async def handle(invocation: Invocation):
    ...     service = await invocation.get(ReportService)
    ...     return await service.run(invocation.event)
    >>>
    >>> handler = run_in_process_loop(make_handler(
    ...     describe_application,
    ...     handle,
    ...     route=lambda event: [catalog.factory_for(WorkerType(event["worker"]))],
    ... ))
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

import structlog

from warmstart.bootstrap import BootstrapSlot
from warmstart.config import WarmstartSettings
from warmstart.container import ModuleContainer
from warmstart.domain import ModuleFactory, ProviderToken
from warmstart.errors import UnknownModule
from warmstart.loader import LazyModuleLoader

__all__ = [
    "Invocation",
    "InvocationDispatcher",
    "make_handler",
    "run_in_process_loop",
]

logger = structlog.get_logger(__name__)

Router = Callable[[Any], Iterable[ModuleFactory]]
"""Maps an event to the factories of the modules it needs."""


@dataclass(frozen=True)
class Invocation:
    """What an application handler receives for one invocation.

    Attributes:
        event: The event passed by the host.
        context: The host's invocation context.
        root: The process's root container.
        modules: Containers of the modules the event was routed to, in route order.
    """

    event: Any
    context: Any
    root: ModuleContainer
    modules: tuple[ModuleContainer, ...] = ()

    async def get(self, token: ProviderToken) -> Any:
        """Resolve ``token`` from the last routed module providing it, else the root."""
        for container in reversed(self.modules):
            if token in container:
                return await container.get(token)
        return await self.root.get(token)


class InvocationDispatcher:
    """An ``(event, context)`` coroutine function bound to one bootstrap slot.

    The loader is created once, bound to the root container, by whichever
    invocation first finds the root ready.
    """

    def __init__(
        self,
        root_factory: ModuleFactory,
        handle: Callable[[Invocation], Awaitable[Any]],
        route: Optional[Router] = None,
        slot: Optional[BootstrapSlot] = None,
        known_factories: Optional[Mapping[str, ModuleFactory]] = None,
        settings: Optional[WarmstartSettings] = None,
    ):
        self.slot = slot or BootstrapSlot()
        self._root_container = self.slot.accessor(root_factory)
        self._handle = handle
        self._route = route
        self._known_factories = dict(known_factories or {})
        self._preload = list((settings or WarmstartSettings()).preload_modules)
        for module_id in self._preload:
            if module_id not in self._known_factories:
                raise UnknownModule(module_id)
        self._loader: Optional[LazyModuleLoader] = None
        self._preloading: Optional[asyncio.Future] = None

    @property
    def loader(self) -> Optional[LazyModuleLoader]:
        return self._loader

    async def __call__(self, event: Any, context: Any = None) -> Any:
        root = await self._root_container()
        loader = await self._loader_for(root)

        factories = tuple(self._route(event)) if self._route else ()
        handles = [loader.load(factory) for factory in factories]
        modules = tuple([await handle for handle in handles])

        return await self._handle(Invocation(event, context, root, modules))

    async def aclose(self):
        """Unload every lazily loaded module and dispose the root container."""
        if self._loader is not None:
            await self._loader.aclose()
            await self._loader.root.dispose()

    async def _loader_for(self, root: ModuleContainer) -> LazyModuleLoader:
        if self._loader is None:
            self._loader = LazyModuleLoader(root, self._known_factories)
            if self._preload:
                logger.info("preloading_modules", module_ids=self._preload)
                self._preloading = asyncio.gather(
                    *(
                        self._loader.load(self._loader.known_factory(module_id))
                        for module_id in self._preload
                    )
                )
        preloading = self._preloading
        if preloading is not None:
            try:
                await asyncio.shield(preloading)
            finally:
                # a failed preload is reported once; later loads retry on demand
                if preloading.done() and self._preloading is preloading:
                    self._preloading = None
        return self._loader


def make_handler(
    root_factory: ModuleFactory,
    handle: Callable[[Invocation], Awaitable[Any]],
    route: Optional[Router] = None,
    slot: Optional[BootstrapSlot] = None,
    known_factories: Optional[Mapping[str, ModuleFactory]] = None,
    settings: Optional[WarmstartSettings] = None,
) -> InvocationDispatcher:
    """Create the asynchronous entry point of a function.

    Args:
        root_factory: Produces the root module descriptor; invoked once per slot.
        handle: Application code run for every invocation.
        route: Maps an event to the module factories it needs.
        slot: The process's bootstrap slot; a fresh one by default.
        known_factories: Factories by module id, for imports and preloading.
        settings: Process settings; read from the environment by default.

    Raises:
        UnknownModule: If a preloaded module id has no known factory.
    """
    return InvocationDispatcher(
        root_factory, handle, route, slot, known_factories, settings
    )


def run_in_process_loop(
    async_handler: Callable[[Any, Any], Awaitable[Any]],
) -> Callable[[Any, Any], Any]:
    """Wrap an async handler for hosts that call a synchronous function.

    The returned function runs every invocation on one event loop created for
    the life of the process. Futures cached in the bootstrap slot and the
    loader are bound to that loop, so a loop per invocation would break
    warm reuse.
    """
    loop = asyncio.new_event_loop()

    def handler(event: Any, context: Any = None) -> Any:
        return loop.run_until_complete(async_handler(event, context))

    handler.loop = loop
    return handler
