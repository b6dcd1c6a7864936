"""Warmstart: cold-start friendly dependency injection for serverless functions.

Warmstart builds an application's dependency graph at most once per warm
process and lets the parts only some invocations need be loaded on demand.
A function process pays for the root graph on its first invocation (the cold
start); every later invocation reuses it, and optional modules are built the
first time an event needs them.

Key Features:
    - Declarative provider registration with profile filtering
    - Async provider factories, singleton and transient scopes
    - Static cycle and missing-provider detection before any factory runs
    - One root container per process, shared by concurrent first invocations
    - Lazily loaded modules, deduplicated by module id, retried after failure
    - Ordered teardown of owned instances

Basic Usage:
    >>> from warmstart.registry import ProviderRegistry
    >>> from warmstart.bootstrap import BootstrapSlot
    >>>
    >>> registry = ProviderRegistry()
    >>>
    >>> @registry.provides()
    >>> async def make_database(config: Config) -> Database:
    ...     return await Database.connect(config.url)
    >>>
    >>> slot = BootstrapSlot()
    >>> root = await slot.get_root_container(lambda: registry.describe("app"))
    >>> db = await root.get("database")

The framework consists of several core modules:
    - registry: Provider registration and introspection
    - domain: Tokens, registrations and module descriptors
    - graph: Dependency resolution within one container
    - container: Module containers and their lifecycle
    - loader: Lazy, deduplicated module loading
    - bootstrap: The process-wide root container slot
    - factories: Deferred imports and enumerated module catalogs
    - handler: Serverless invocation entry points
    - errors: Framework-specific exceptions
"""
