"""Domain models used throughout the framework."""

import enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from warmstart.errors import DependencyError, describe_token

__all__ = [
    "Token",
    "ProviderToken",
    "Scope",
    "Dependency",
    "ProviderRegistration",
    "ModuleDescriptor",
    "ModuleFactory",
    "ContainerStatus",
    "validate_token",
]

T = TypeVar("T")


class Token(Generic[T]):
    """A named, typed provider token.

    Tokens compare by identity, so two tokens with the same name are distinct.
    The type parameter documents what ``container.get(token)`` returns.

    Example:
        >>> DB_URL: Token[str] = Token("db_url")
        >>> url = await container.get(DB_URL)
    """

    __slots__ = ("name",)

    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return f"Token({self.name!r})"

    def __str__(self) -> str:
        return self.name


ProviderToken = Union[str, type, Token]
"""Type alias for keys naming a requestable capability.

Example:
    >>> container.get("config")     # by name
    >>> container.get(Database)     # by type
    >>> container.get(DB_URL)       # by Token
"""


def validate_token(token: Any) -> ProviderToken:
    """Check that ``token`` is a str, a type or a :class:`Token`.

    Raises:
        DependencyError: If the token is of any other kind.
    """
    if isinstance(token, (str, type, Token)):
        return token
    if getattr(token, "__origin__", None) is not None:
        # parameterised generics such as Callable[[str], str]
        return token
    raise DependencyError(
        f"Provider token {token!r} must be a str, a type or a Token, "
        f"not {type(token).__name__}"
    )


class Scope(enum.Enum):
    """How often a provider's factory runs within one container."""

    SINGLETON = "singleton"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class Dependency:
    """Represents a dependency required by a provider.

    Attributes:
        parameter_name: The keyword under which the dependency is passed to the
            factory, or None to pass it positionally.
        token: The token of the provider that fulfils this dependency.
    """

    parameter_name: Optional[str]
    token: ProviderToken


@dataclass(frozen=True)
class ProviderRegistration:
    """Everything a container needs to produce the instance for one token.

    Attributes:
        token: The token this registration provides.
        factory: Callable invoked with the resolved dependencies. May return an
            awaitable, which is awaited.
        dependencies: Ordered dependencies passed to the factory.
        scope: Whether the instance is cached per container or rebuilt per lookup.
        teardown: Optional hook called with the instance when its container is
            disposed. May return an awaitable.
    """

    token: ProviderToken
    factory: Callable[..., Any]
    dependencies: tuple[Dependency, ...] = ()
    scope: Scope = Scope.SINGLETON
    teardown: Optional[Callable[[Any], Any]] = None

    def __post_init__(self):
        object.__setattr__(self, "dependencies", tuple(self.dependencies))
        validate_token(self.token)
        for dependency in self.dependencies:
            validate_token(dependency.token)

    @property
    def dependency_tokens(self) -> tuple[ProviderToken, ...]:
        return tuple(dependency.token for dependency in self.dependencies)


@dataclass(frozen=True)
class ModuleDescriptor:
    """The static shape of a module, before it is instantiated.

    Attributes:
        id: Identity of the module. Loaders cache containers by this id.
        registrations: The providers registered in the module.
        imports: Ids of modules whose exported providers this module may depend on.
        exports: Tokens visible to importing modules; None exports everything.
    """

    id: str
    registrations: tuple[ProviderRegistration, ...]
    imports: frozenset[str] = field(default_factory=frozenset)
    exports: Optional[frozenset[ProviderToken]] = None

    def __post_init__(self):
        object.__setattr__(self, "registrations", tuple(self.registrations))
        object.__setattr__(self, "imports", frozenset(self.imports))
        if self.exports is not None:
            object.__setattr__(self, "exports", frozenset(self.exports))

        seen = set()
        for registration in self.registrations:
            if registration.token in seen:
                raise DependencyError(
                    f"Duplicate provider token '{describe_token(registration.token)}' "
                    f"in module '{self.id}'"
                )
            seen.add(registration.token)

        if self.id in self.imports:
            raise DependencyError(f"Module '{self.id}' imports itself")

        if self.exports is not None:
            unknown_exports = self.exports - seen
            if unknown_exports:
                raise DependencyError(
                    f"Module '{self.id}' exports unregistered tokens "
                    f"{sorted(describe_token(t) for t in unknown_exports)}"
                )

    @property
    def tokens(self) -> frozenset[ProviderToken]:
        return frozenset(r.token for r in self.registrations)


ModuleFactory = Callable[[], Union[ModuleDescriptor, Awaitable[ModuleDescriptor]]]
"""Zero-argument callable producing a module descriptor, possibly asynchronously."""


class ContainerStatus(enum.Enum):
    INITIALISING = "initialising"
    READY = "ready"
    FAILED = "failed"
    DISPOSED = "disposed"
