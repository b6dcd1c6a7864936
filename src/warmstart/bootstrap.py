"""Process-wide bootstrap of the root container.

The entry point of a serverless function owns one :class:`BootstrapSlot` for
the life of its process and hands it, or an accessor bound to it, to every
invocation. The first invocation (the cold start) builds the root container;
every later one, and every one racing the first, gets the same result.

A failed bootstrap is final for the slot. The hosting runtime is expected to
replace a process that cannot build its root container, and the replacement
starts with a fresh, empty slot.

Example:
    >>> slot = BootstrapSlot()
    >>> root_container = slot.accessor(describe_application)
    >>>
    >>> async def handler(event, context):
    ...     root = await root_container()
    ...     return await (await root.get(Router)).route(event)
"""

import asyncio
import enum
import inspect
import time
from typing import Awaitable, Callable, Optional

import structlog

from warmstart.container import ModuleContainer, release_failed
from warmstart.domain import ModuleDescriptor, ModuleFactory
from warmstart.errors import BootstrapFailure

__all__ = ["BootstrapSlot", "SlotState"]

logger = structlog.get_logger(__name__)


class SlotState(enum.Enum):
    NOT_STARTED = "not_started"
    IN_FLIGHT = "in_flight"
    READY = "ready"
    FAILED = "failed"


class BootstrapSlot:
    """Single-writer, multi-reader holder of the root container.

    The slot moves from NOT_STARTED to IN_FLIGHT on the first call to
    :meth:`get_root_container`, then to READY or FAILED, and never back.
    """

    def __init__(self):
        self._future: Optional[asyncio.Future] = None
        self._factory: Optional[ModuleFactory] = None

    @property
    def state(self) -> SlotState:
        if self._future is None:
            return SlotState.NOT_STARTED
        if not self._future.done():
            return SlotState.IN_FLIGHT
        if self._future.cancelled() or self._future.exception() is not None:
            return SlotState.FAILED
        return SlotState.READY

    async def get_root_container(self, factory: ModuleFactory) -> ModuleContainer:
        """Return the root container, building it on the first call.

        Args:
            factory: Produces the root module descriptor. Only the factory passed
                on the first call is ever invoked.

        Raises:
            BootstrapFailure: If the root could not be built, on this and every
                later call.
        """
        if self._future is None:
            self._factory = factory
            self._future = asyncio.ensure_future(self._bootstrap(factory))
        elif factory is not self._factory:
            logger.debug("bootstrap_factory_ignored", state=self.state.value)
        return await asyncio.shield(self._future)

    def accessor(
        self, factory: ModuleFactory
    ) -> Callable[[], Awaitable[ModuleContainer]]:
        """Bind this slot and ``factory`` into a zero-argument coroutine function."""

        async def root_container() -> ModuleContainer:
            return await self.get_root_container(factory)

        return root_container

    async def _bootstrap(self, factory: ModuleFactory) -> ModuleContainer:
        started = time.perf_counter()
        logger.info("bootstrap_started")
        try:
            descriptor = factory()
            if inspect.isawaitable(descriptor):
                descriptor = await descriptor
            if not isinstance(descriptor, ModuleDescriptor):
                raise TypeError(
                    f"Root factory returned {type(descriptor).__name__}, "
                    "not a ModuleDescriptor"
                )

            container = ModuleContainer(descriptor)
            try:
                await container.materialise()
            except Exception:
                await release_failed(container)
                raise
        except Exception as exc:
            logger.error(
                "bootstrap_failed",
                error=repr(exc),
                duration_ms=_elapsed_ms(started),
            )
            raise BootstrapFailure(f"Bootstrap failed: {exc}") from exc

        logger.info(
            "bootstrap_completed",
            module_id=container.id,
            duration_ms=_elapsed_ms(started),
        )
        return container


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)
