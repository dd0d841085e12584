"""
Error types raised while the deployment graph is being constructed.

Everything here fails at synth time. Errors coming back from CloudFormation
(quota, name conflicts, rollbacks) are never caught or wrapped by this
application; the engine reports them as-is.
"""


class TopologyError(Exception):
    """Base class for every construction-time failure in this app."""


class ConfigurationError(TopologyError):
    """A settings value is out of range or unknown."""


class MissingDependencyError(TopologyError):
    """A component was given a handle from a component that does not exist yet."""

    def __init__(self, component: str, dependency: str) -> None:
        self.component = component
        self.dependency = dependency
        super().__init__(f"{component}: missing dependency '{dependency}'")


class PolicyViolationError(TopologyError):
    """A filtering rule or identity grant breaks least privilege."""

    def __init__(self, component: str, detail: str) -> None:
        self.component = component
        self.detail = detail
        super().__init__(f"{component}: {detail}")


def require_dependencies(component: str, **handles) -> None:
    """
    Fail fast when any upstream handle is missing.

    Args:
        component: Name of the component being built (used in the message)
        **handles: Upstream handles keyed by the argument name they came in as

    Raises:
        MissingDependencyError: On the first handle that is None
    """
    for name, handle in handles.items():
        if handle is None:
            raise MissingDependencyError(component, name)
