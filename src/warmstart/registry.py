"""Registration and introspection utilities for providers."""

import dataclasses
import inspect
from typing import (
    Annotated,
    Any,
    Callable,
    Iterable,
    Optional,
    get_args,
    get_origin,
    get_type_hints,
)

from warmstart.domain import (
    Dependency,
    ModuleDescriptor,
    ProviderRegistration,
    ProviderToken,
    Scope,
)
from warmstart.errors import DependencyError, describe_token

__all__ = [
    "ProviderRegistry",
    "registration",
    "inferred_token",
]


def inferred_token(target: Any) -> ProviderToken:
    """Derive the default token for a provider.

    Args:
        target: The function or class being registered.

    Returns:
        The class itself, or the function name with any 'make_' prefix removed.

    Example:
        >>> inferred_token(Database)       # Returns Database
        >>> inferred_token(make_database)  # Returns "database"
        >>> inferred_token(my_service)     # Returns "my_service"
    """
    if inspect.isclass(target):
        return target

    return target.__name__.removeprefix("make_")


def registration(
    token: ProviderToken,
    factory: Callable[..., Any],
    *dependency_tokens: ProviderToken,
    scope: Scope = Scope.SINGLETON,
    teardown: Optional[Callable[[Any], Any]] = None,
) -> ProviderRegistration:
    """Build a registration whose dependencies are passed positionally.

    Example:
        >>> registration("db", connect, "config", teardown=close)
    """
    return ProviderRegistration(
        token,
        factory,
        tuple(Dependency(None, dependency) for dependency in dependency_tokens),
        scope,
        teardown,
    )


class ProviderRegistry:
    """Registry for providers, supporting registration and profile-based filtering.

    A registry is a mutable, declaration-time collection. Calling :meth:`describe`
    snapshots the active registrations into an immutable
    :class:`~warmstart.domain.ModuleDescriptor`.
    """

    def __init__(self):
        self._providers: list[tuple[ProviderRegistration, list[str]]] = []

    def register(
        self, provider: ProviderRegistration, profiles: Optional[list[str]] = None
    ):
        """Register a provider explicitly.

        Args:
            provider: The registration to add.
            profiles: Profiles under which the provider is active.
        """
        self._providers.append((provider, list(profiles or [])))

    def registered_providers(
        self, profiles: Optional[set[str]] = None
    ) -> list[ProviderRegistration]:
        """Retrieve registrations, optionally filtered by active profiles.

        Args:
            profiles: A set of active profile names. If None, returns all registrations.

        Returns:
            A list of registrations whose profiles match the given profile set.
        """
        if profiles is None:
            return [provider for provider, _ in self._providers]
        return [
            provider
            for provider, stated in self._providers
            if _profiles_match(stated, profiles)
        ]

    def provides(
        self,
        token: Optional[ProviderToken] = None,
        scope: Scope = Scope.SINGLETON,
        profiles: Optional[list[str]] = None,
        teardown: Optional[Callable[[Any], Any]] = None,
    ) -> Callable:
        """Decorator to register a function or class as a provider.

        Args:
            token: Optional token to provide; defaults to the class itself, or the
                function name with any 'make_' prefix removed.
            scope: Singleton (default) or transient.
            profiles: Optional list of profiles for which the provider is active.
            teardown: Optional hook called with the instance on disposal.

        Returns:
            A decorator that registers its target and returns it.

        Example:
            @registry.provides(profiles=["dev"])
            async def make_connection(config: Config) -> Connection:
                return await Connection.open(config.url)
        """

        def decorator(obj):
            provided_token = token if token is not None else inferred_token(obj)
            if not (inspect.isclass(obj) or inspect.isfunction(obj)):
                raise DependencyError(f"{obj} is not a class or function")

            self.register(
                ProviderRegistration(
                    provided_token, obj, _get_dependencies(obj), scope, teardown
                ),
                profiles,
            )
            return obj

        return decorator

    def describe(
        self,
        module_id: str,
        imports: Iterable[str] = (),
        exports: Optional[Iterable[ProviderToken]] = None,
        profiles: Optional[set[str]] = None,
    ) -> ModuleDescriptor:
        """Snapshot the active registrations as a module descriptor.

        Args:
            module_id: Identity of the described module.
            imports: Ids of modules this module depends on.
            exports: Tokens visible to importers; None exports everything.
            profiles: Active profiles; None includes every registration.

        Raises:
            DependencyError: If two active registrations provide the same token.
        """
        providers = self.registered_providers(profiles)
        _check_unique_tokens(providers, profiles)
        return ModuleDescriptor(
            module_id,
            tuple(providers),
            frozenset(imports),
            frozenset(exports) if exports is not None else None,
        )


def _check_unique_tokens(
    providers: list[ProviderRegistration], profiles: Optional[set[str]]
):
    seen = set()
    for provider in providers:
        if provider.token in seen:
            raise DependencyError(
                f"Duplicate provider token '{describe_token(provider.token)}' "
                f"for providers {[describe_token(p.token) for p in providers]} "
                f"in profiles {profiles}"
            )
        seen.add(provider.token)


def _profiles_match(stated: list[str], active: set[str]) -> bool:
    """Whether a registration declared for ``stated`` profiles is active.

    A ``"!name"`` entry deactivates the registration when ``name`` is active.
    Plain entries require at least one of them to be active; a registration
    with no plain entries is active everywhere it is not excluded.

    Example:
        >>> _profiles_match(["lambda"], {"lambda"})     # True
        >>> _profiles_match(["!local"], {"lambda"})     # True
        >>> _profiles_match(["!local"], {"local"})      # False
        >>> _profiles_match(["lambda"], set())          # False
    """
    required = set()
    for profile in stated:
        if profile.startswith("!"):
            if profile[1:] in active:
                return False
        else:
            required.add(profile)
    return not required or bool(required & active)


def _get_dependencies(func: Callable) -> tuple[Dependency, ...]:
    """Read a factory's dependencies from its signature.

    An ``Annotated`` parameter is keyed by its first metadata item, any other
    annotated parameter by its type, and an unannotated one by its name.
    Variadic parameters are not dependencies.

    Example:
        >>> async def make_report(fmt, db: Database, url: Annotated[str, DB_URL]): ...
        >>> _get_dependencies(make_report)
        >>> # (Dependency("fmt", "fmt"),
        >>> #  Dependency("db", Database),
        >>> #  Dependency("url", DB_URL))
    """
    hints = _type_hints(func)
    dependencies = []
    for name, parameter in inspect.signature(func).parameters.items():
        if parameter.kind in (parameter.VAR_POSITIONAL, parameter.VAR_KEYWORD):
            continue
        dependencies.append(Dependency(name, _dependency_token(hints.get(name), name)))
    return tuple(dependencies)


def _dependency_token(annotation, name: str) -> ProviderToken:
    if annotation is None:
        return name
    if get_origin(annotation) is Annotated:
        base_type, *metadata = get_args(annotation)
        return metadata[0] if metadata else base_type
    return annotation


def _type_hints(target: Callable) -> dict[str, Any]:
    # A class is called through its __init__; dataclass fields carry the same hints.
    if inspect.isclass(target) and not dataclasses.is_dataclass(target):
        return get_type_hints(target.__init__, include_extras=True)
    return get_type_hints(target, include_extras=True)
