"""Factories that record how often they ran."""

import asyncio
from collections import Counter

from warmstart.domain import ModuleDescriptor


def counting(calls: Counter, name: str, value=None, delay: float = 0):
    """An async provider factory that records its invocations."""

    async def factory(*args, **kwargs):
        calls[name] += 1
        if delay:
            await asyncio.sleep(delay)
        return value if value is not None else (name, args, kwargs)

    return factory


def failing(calls: Counter, name: str, error: Exception):
    def factory(*args, **kwargs):
        calls[name] += 1
        raise error

    return factory


def describing(calls: Counter, name: str, descriptor: ModuleDescriptor, delay: float = 0):
    """A module factory that records its invocations."""

    async def factory() -> ModuleDescriptor:
        calls[name] += 1
        if delay:
            await asyncio.sleep(delay)
        return descriptor

    factory.__qualname__ = name
    return factory
