"""
Resource dependency graph.

Nodes are plain declarations: a type, a logical name and an attribute map.
Edges are never declared by hand, they come from the `Ref` values found
inside the attribute maps. `ResourceGraph.validate` is the pass that has to
succeed before anything is sent to a provider.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType

import pulumi

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ref:
    """Reference to an attribute of another node."""
    address: str
    attribute: str = "id"

    def __str__(self):
        return f"${{{self.address}.{self.attribute}}}"


@dataclass(frozen=True)
class Lifecycle:
    create_before_destroy: bool = False
    force_new: frozenset = frozenset()
    all_immutable: bool = False

    @classmethod
    def immutable(cls, create_before_destroy=True):
        return cls(create_before_destroy=create_before_destroy, all_immutable=True)

    def requires_replacement(self, attribute):
        return self.all_immutable or attribute in self.force_new


@dataclass
class ResourceNode:
    type: str
    name: str
    attributes: dict = field(default_factory=dict)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    is_data = False

    @property
    def address(self):
        return f"{self.type}.{self.name}"

    @property
    def dependencies(self):
        return {ref.address for ref in find_refs(self.attributes)}


@dataclass
class DataSource(ResourceNode):
    """Read-only lookup, refreshed on every evaluation and never replaced."""

    is_data = True

    @property
    def address(self):
        return f"data.{self.type}.{self.name}"


@dataclass(frozen=True)
class Variable:
    name: str
    description: str
    default: object = None


def find_refs(value):
    """Yield every Ref nested inside an attribute value."""
    if isinstance(value, Ref):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from find_refs(item)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            yield from find_refs(item)


def resolve_variables(variables, overrides=None):
    """Resolve input variables once; the result is read-only."""
    overrides = dict(overrides or {})
    known = {variable.name for variable in variables}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown variables: {', '.join(unknown)}")

    resolved = {}
    for variable in variables:
        value = variable.default
        if overrides.get(variable.name) is not None:
            value = _coerce(variable, overrides[variable.name])
        resolved[variable.name] = value
    return MappingProxyType(resolved)


def _coerce(variable, raw):
    expected = type(variable.default)
    # bool is an int subclass; True is not a port number
    if isinstance(raw, bool) and expected is not bool and variable.default is not None:
        raise ValueError(f"Variable '{variable.name}' expects {expected.__name__}, got {raw!r}")
    if variable.default is None or isinstance(raw, type(variable.default)):
        return raw
    try:
        return type(variable.default)(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(
            f"Variable '{variable.name}' expects {type(variable.default).__name__}, got {raw!r}"
        ) from e


# =============================================================================
# Validation errors
# =============================================================================

class GraphValidationError(pulumi.RunError):
    """Raised before any provider call when the graph cannot be applied."""

    def __init__(self, message, nodes=()):
        super().__init__(message)
        self.nodes = tuple(nodes)


class UnknownReferenceError(GraphValidationError):
    pass


class CyclicDependencyError(GraphValidationError):
    def __init__(self, cycle):
        super().__init__(f"Cycle: {' -> '.join(cycle)}", cycle)


class LifecycleConflictError(GraphValidationError):
    def __init__(self, node, dependency):
        super().__init__(
            f"{node} is create_before_destroy but depends on {dependency}, "
            f"which is not; replacing {dependency} would produce a cycle",
            (node, dependency),
        )


class ResourceGraph:
    def __init__(self, nodes=()):
        self._nodes = {}
        for node in nodes:
            self.add(node)

    def add(self, node):
        if node.address in self._nodes:
            raise ValueError(f"Duplicate resource address: {node.address}")
        self._nodes[node.address] = node
        return node

    def __contains__(self, address):
        return address in self._nodes

    def __getitem__(self, address):
        return self._nodes[address]

    def __iter__(self):
        return iter(self._nodes.values())

    def __len__(self):
        return len(self._nodes)

    @property
    def addresses(self):
        return list(self._nodes)

    def dependencies(self, address):
        return self._nodes[address].dependencies

    def dependents(self, address):
        return {node.address for node in self if address in node.dependencies}

    def validate(self):
        self._check_references()
        self._check_cycles()
        self._check_lifecycles()
        logger.debug(f"Resource graph valid: {len(self)} nodes")

    def _check_references(self):
        for node in self:
            for dependency in sorted(node.dependencies):
                if dependency not in self._nodes:
                    raise UnknownReferenceError(
                        f"{node.address} references undeclared {dependency}",
                        (node.address, dependency),
                    )

    def _check_cycles(self):
        # Depth-first search; a grey node met again closes a cycle.
        white, grey, black = 0, 1, 2
        colour = {address: white for address in self._nodes}
        path = []

        def visit(address):
            colour[address] = grey
            path.append(address)
            for dependency in sorted(self.dependencies(address)):
                if colour[dependency] == grey:
                    start = path.index(dependency)
                    raise CyclicDependencyError(path[start:] + [dependency])
                if colour[dependency] == white:
                    visit(dependency)
            path.pop()
            colour[address] = black

        for address in self._nodes:
            if colour[address] == white:
                visit(address)

    def _check_lifecycles(self):
        for node in self:
            if node.is_data or not node.lifecycle.create_before_destroy:
                continue
            for dependency in sorted(node.dependencies):
                target = self._nodes[dependency]
                if target.is_data:
                    continue
                if not target.lifecycle.create_before_destroy:
                    raise LifecycleConflictError(node.address, dependency)

    def levels(self):
        """Topological batches; nodes in one batch only depend on earlier batches."""
        remaining = {address: set(self.dependencies(address)) for address in self._nodes}
        batches = []
        while remaining:
            ready = sorted(address for address, deps in remaining.items() if not deps)
            if not ready:
                self._check_cycles()
                raise CyclicDependencyError(sorted(remaining))
            batches.append(ready)
            for address in ready:
                del remaining[address]
            for deps in remaining.values():
                deps.difference_update(ready)
        return batches

    def order(self):
        return [address for batch in self.levels() for address in batch]
