"""Exceptions raised while building, resolving, loading and disposing containers."""

from typing import Any, Sequence

__all__ = [
    "DependencyError",
    "UnknownProvider",
    "CircularDependency",
    "UnknownModule",
    "ProviderFailure",
    "ContainerStateError",
    "ContainerNotReady",
    "ContainerDisposed",
    "DisposalError",
    "BootstrapFailure",
    "ModuleLoadFailure",
]


def describe_token(token: Any) -> str:
    """Render a provider token for error messages."""
    if isinstance(token, type):
        return token.__qualname__
    return str(token)


class DependencyError(Exception):
    """Raised when a provider's dependency cannot be resolved or is misdeclared."""

    pass


class UnknownProvider(DependencyError):
    """Raised when no registration reachable from a container provides a token."""

    def __init__(self, token: Any, container: str):
        super().__init__(
            f"No provider for {describe_token(token)} in container '{container}'"
        )
        self.token = token
        self.container = container


class CircularDependency(DependencyError):
    """Raised when resolving a token requires that same token.

    Attributes:
        chain: The tokens visited, starting and ending with the repeated token.
    """

    def __init__(self, chain: Sequence[Any]):
        super().__init__(
            "Circular dependency: " + " -> ".join(describe_token(t) for t in chain)
        )
        self.chain = tuple(chain)


class UnknownModule(DependencyError):
    """Raised when an imported module id has no known factory."""

    def __init__(self, module_id: str):
        super().__init__(f"No factory known for imported module '{module_id}'")
        self.module_id = module_id


class ProviderFailure(DependencyError):
    """Wraps an exception raised by a provider factory.

    The original exception is available as ``__cause__``.
    """

    def __init__(self, token: Any):
        super().__init__(f"Provider for {describe_token(token)} failed")
        self.token = token


class ContainerStateError(Exception):
    """Raised when a container is used in a state that does not allow it."""

    pass


class ContainerNotReady(ContainerStateError):
    pass


class ContainerDisposed(ContainerStateError):
    pass


class DisposalError(ContainerStateError):
    """Raised after disposal when one or more teardown hooks failed.

    Attributes:
        failures: ``(token, exception)`` pairs, in the order the hooks ran.
    """

    def __init__(self, container: str, failures: list[tuple[Any, BaseException]]):
        super().__init__(
            f"Teardown failed in container '{container}' for "
            f"{[describe_token(token) for token, _ in failures]}"
        )
        self.failures = failures


class BootstrapFailure(Exception):
    """Raised when the root container could not be created.

    The underlying error is available as ``__cause__``.
    """

    pass


class ModuleLoadFailure(Exception):
    """Raised when a lazily loaded module could not be instantiated."""

    def __init__(self, module_id: str, message: str = ""):
        super().__init__(message or f"Loading module '{module_id}' failed")
        self.module_id = module_id
