"""Module factories: where descriptors come from.

A module factory is any zero-argument callable returning a
:class:`~warmstart.domain.ModuleDescriptor`, or an awaitable of one. This
module provides two ways of building them:

- :func:`import_descriptor` defers importing the code that defines a module
  until the module is first loaded, keeping it off the cold-start path.
- :class:`ModuleCatalog` is the explicit, enumerated set of modules an entry
  point may load, keyed by a tagged variant such as an ``Enum``. Invocation
  code selects a module by key, never by a string built at runtime.
"""

import asyncio
import importlib
from typing import Generic, Hashable, Iterator, TypeVar

from warmstart.domain import ModuleDescriptor, ModuleFactory
from warmstart.loader import LazyModuleLoader, LoadHandle

__all__ = ["import_descriptor", "ModuleCatalog"]

K = TypeVar("K", bound=Hashable)


def import_descriptor(reference: str) -> ModuleFactory:
    """Build a factory that imports ``"package.module:ATTRIBUTE"`` when called.

    The import runs in a worker thread so that the event loop keeps serving
    other invocations while the code loads. If the attribute is callable it is
    called with no arguments and must return the descriptor.

    Raises:
        ValueError: If ``reference`` is not of the form ``module:attribute``.
    """
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ValueError(
            f"Descriptor reference {reference!r} must look like 'package.module:ATTRIBUTE'"
        )

    async def load_descriptor() -> ModuleDescriptor:
        module = await asyncio.to_thread(importlib.import_module, module_name)
        target = getattr(module, attribute)
        descriptor = target() if callable(target) else target
        if not isinstance(descriptor, ModuleDescriptor):
            raise TypeError(f"{reference} is not a ModuleDescriptor")
        return descriptor

    load_descriptor.__qualname__ = f"import_descriptor({reference!r})"
    return load_descriptor


class ModuleCatalog(Generic[K]):
    """The known module factories of an application, keyed by variant.

    Example:
        >>> class WorkerType(Enum):
        ...     THUMBNAILS = "thumbnails"
        ...     REPORTS = "reports"
        >>>
        >>> catalog = ModuleCatalog[WorkerType]()
        >>> catalog.register(WorkerType.THUMBNAILS, import_descriptor("app.thumbs:MODULE"))
        >>> container = await catalog.load(loader, WorkerType(event["worker"]))
    """

    def __init__(self):
        self._factories: dict[K, ModuleFactory] = {}

    def register(self, key: K, factory: ModuleFactory) -> ModuleFactory:
        if key in self._factories:
            raise ValueError(f"A module factory is already registered for {key!r}")
        self._factories[key] = factory
        return factory

    def factory_for(self, key: K) -> ModuleFactory:
        """Return the factory registered for ``key``.

        Raises:
            KeyError: If the key is not part of the catalog.
        """
        try:
            return self._factories[key]
        except KeyError:
            raise KeyError(f"No module registered for {key!r}") from None

    def load(self, loader: LazyModuleLoader, key: K) -> LoadHandle:
        return loader.load(self.factory_for(key))

    def __contains__(self, key: object) -> bool:
        return key in self._factories

    def __iter__(self) -> Iterator[K]:
        return iter(self._factories)

    def __len__(self) -> int:
        return len(self._factories)
