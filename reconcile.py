"""
Plan and apply a ResourceGraph against a provider.

This is a small stand-in for the provisioning engine: it refreshes data
sources, diffs desired attributes against the state store, and walks the
graph level by level issuing create/update/delete calls. Nodes in the same
level are independent and are dispatched concurrently.

Create-before-destroy replacements go through `replacement.Replacement`;
the old instance is kept as a deposed object until nothing in state refers
to it any more.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Protocol

from lifecycle_graph import Ref
from replacement import Replacement, ReplacementState

logger = logging.getLogger(__name__)


class _Unknown:
    def __repr__(self):
        return "<unknown>"


# Value only known after apply (an output of a node not yet created)
UNKNOWN = _Unknown()
_MISSING = object()


class Action(Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    READ = "read"
    NOOP = "noop"


class ProviderError(Exception):
    def __init__(self, message, retryable=False):
        super().__init__(message)
        self.retryable = retryable


class Provider(Protocol):
    def read(self, type: str, attributes: dict) -> dict: ...

    def create(self, type: str, attributes: dict) -> dict: ...

    def update(self, type: str, id: str, attributes: dict) -> dict: ...

    def delete(self, type: str, id: str) -> None: ...


@dataclass(frozen=True)
class Deposed:
    """A replaced instance kept until nothing refers to it."""
    id: str
    dependency_ids: frozenset = frozenset()


@dataclass
class ResourceState:
    type: str
    id: str
    attributes: dict
    outputs: dict
    dependencies: frozenset = frozenset()
    dependency_ids: frozenset = frozenset()
    deposed: List[Deposed] = field(default_factory=list)


class StateStore:
    """Last-known state, one entry per managed node address."""

    def __init__(self):
        self._resources: Dict[str, ResourceState] = {}
        self._lock = threading.Lock()

    def __contains__(self, address):
        return address in self._resources

    def __len__(self):
        return len(self._resources)

    def get(self, address) -> Optional[ResourceState]:
        return self._resources.get(address)

    def put(self, address, resource: ResourceState):
        with self._lock:
            self._resources[address] = resource

    def remove(self, address):
        with self._lock:
            self._resources.pop(address, None)

    def addresses(self):
        return list(self._resources)

    def referrers(self, resource_id, exclude=None):
        """Addresses whose live or deposed instances were resolved from `resource_id`."""
        found = set()
        for address, resource in list(self._resources.items()):
            if address == exclude:
                continue
            if resource_id in resource.dependency_ids:
                found.add(address)
            elif any(resource_id in old.dependency_ids for old in resource.deposed):
                found.add(f"{address} (deposed)")
        return found


@dataclass
class Change:
    address: str
    action: Action
    changed: tuple = ()


@dataclass
class Plan:
    changes: Dict[str, Change] = field(default_factory=dict)
    outputs: Dict[str, Optional[dict]] = field(default_factory=dict)

    def __getitem__(self, address):
        return self.changes[address]

    def __iter__(self):
        return iter(self.changes.values())

    def actions(self, action):
        return [change.address for change in self if change.action is action]

    @property
    def empty(self):
        return all(change.action in (Action.NOOP, Action.READ) for change in self)


@dataclass
class NodeError:
    address: str
    message: str

    def __str__(self):
        return f"{self.address}: {self.message}"


@dataclass
class ApplyResult:
    plan: Plan
    outcomes: Dict[str, str] = field(default_factory=dict)
    errors: List[NodeError] = field(default_factory=list)
    replacements: Dict[str, Replacement] = field(default_factory=dict)
    mutations: int = 0

    @property
    def ok(self):
        return not self.errors


def resolve(value, lookup):
    """Substitute every Ref inside an attribute value with `lookup(ref)`."""
    if isinstance(value, Ref):
        return lookup(value)
    if isinstance(value, dict):
        return {key: resolve(item, lookup) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve(item, lookup) for item in value]
    return value


def contains_unknown(value):
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, list):
        return any(contains_unknown(item) for item in value)
    return False


class Engine:
    def __init__(self, provider: Provider, state: Optional[StateStore] = None,
                 parallelism=10, max_attempts=3, backoff=1.0, sleep=time.sleep):
        self.provider = provider
        self.state = state if state is not None else StateStore()
        self.parallelism = parallelism
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.sleep = sleep
        self._counter_lock = threading.Lock()
        self._mutations = 0

    # -------------------------------------------------------------------------
    # Provider calls
    # -------------------------------------------------------------------------

    def _call(self, address, method, *args, mutating=True):
        for attempt in range(1, self.max_attempts + 1):
            if mutating:
                with self._counter_lock:
                    self._mutations += 1
            try:
                return method(*args)
            except ProviderError as e:
                if not e.retryable or attempt == self.max_attempts:
                    raise
                delay = self.backoff * 2 ** (attempt - 1)
                logger.warning(f"{address}: {e} (attempt {attempt}/{self.max_attempts}, retrying in {delay:g}s)")
                self.sleep(delay)

    # -------------------------------------------------------------------------
    # Plan
    # -------------------------------------------------------------------------

    def plan(self, graph) -> Plan:
        graph.validate()
        plan = Plan()
        outputs = plan.outputs

        def lookup(ref):
            known = outputs.get(ref.address)
            if known is None:
                return UNKNOWN
            return known.get(ref.attribute, UNKNOWN)

        for address in graph.order():
            node = graph[address]
            desired = resolve(node.attributes, lookup)

            if node.is_data:
                outputs[address] = None
                if not contains_unknown(desired):
                    try:
                        outputs[address] = self._call(address, self.provider.read, node.type, desired,
                                                      mutating=False)
                    except ProviderError as e:
                        logger.warning(f"{address}: refresh failed, will retry during apply: {e}")
                plan.changes[address] = Change(address, Action.READ)
                continue

            current = self.state.get(address)
            if current is None:
                plan.changes[address] = Change(address, Action.CREATE, tuple(sorted(desired)))
                outputs[address] = None
                continue

            changed = tuple(sorted(
                key for key in set(desired) | set(current.attributes)
                if desired.get(key, _MISSING) != current.attributes.get(key, _MISSING)
            ))
            if not changed:
                plan.changes[address] = Change(address, Action.NOOP)
                outputs[address] = current.outputs
            elif any(node.lifecycle.requires_replacement(key) for key in changed):
                plan.changes[address] = Change(address, Action.REPLACE, changed)
                outputs[address] = None
            else:
                plan.changes[address] = Change(address, Action.UPDATE, changed)
                outputs[address] = dict(current.outputs)
                outputs[address].update(
                    (key, value) for key, value in desired.items() if not contains_unknown(value)
                )

        for address in self.state.addresses():
            if address not in graph:
                plan.changes[address] = Change(address, Action.DELETE)

        for change in plan:
            if change.action not in (Action.NOOP, Action.READ):
                logger.info(f"{change.address}: will {change.action.value}")
        return plan

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    def apply(self, graph) -> ApplyResult:
        start = self._mutations
        plan = self.plan(graph)
        result = ApplyResult(plan)
        outputs = dict(plan.outputs)
        failed = set()

        for batch in graph.levels():
            runnable = []
            for address in batch:
                blocked = graph.dependencies(address) & failed
                if blocked:
                    failed.add(address)
                    result.outcomes[address] = "skipped"
                    logger.warning(f"{address}: skipped, dependency failed: {', '.join(sorted(blocked))}")
                else:
                    runnable.append(address)

            with ThreadPoolExecutor(max_workers=self.parallelism) as pool:
                futures = {
                    address: pool.submit(
                        self._apply_node, graph[address], plan[address], outputs, result.replacements
                    )
                    for address in runnable
                }
            for address, future in futures.items():
                try:
                    outcome, node_outputs = future.result()
                except ProviderError as e:
                    failed.add(address)
                    result.outcomes[address] = "failed"
                    result.errors.append(NodeError(address, str(e)))
                    logger.error(f"{address}: {e}")
                    continue
                outputs[address] = node_outputs
                result.outcomes[address] = outcome

        self._destroy_deposed(graph, result, failed)
        self._delete_orphans(plan, result)
        result.mutations = self._mutations - start
        return result

    def _apply_node(self, node, change, outputs, replacements):
        address = node.address
        dependency_ids = set()

        def lookup(ref):
            known = outputs.get(ref.address) or {}
            if ref.attribute not in known:
                raise ProviderError(f"{ref.address} does not export '{ref.attribute}'")
            if "id" in known:
                dependency_ids.add(known["id"])
            return known[ref.attribute]

        if change.action is Action.NOOP:
            return "unchanged", self.state.get(address).outputs

        attributes = resolve(node.attributes, lookup)

        if change.action is Action.READ:
            known = outputs.get(address)
            if known is None:
                known = self._call(address, self.provider.read, node.type, attributes, mutating=False)
            return "read", known

        record = dict(
            type=node.type,
            attributes=attributes,
            dependencies=frozenset(node.dependencies),
            dependency_ids=frozenset(dependency_ids),
        )
        current = self.state.get(address)

        if change.action is Action.CREATE:
            created = self._call(address, self.provider.create, node.type, attributes)
            self.state.put(address, ResourceState(id=created["id"], outputs=created, **record))
            logger.info(f"{address}: created {created['id']}")
            return "created", created

        if change.action is Action.UPDATE:
            updated = self._call(address, self.provider.update, node.type, current.id, attributes)
            self.state.put(address, ResourceState(
                id=current.id, outputs=updated, deposed=list(current.deposed), **record
            ))
            logger.info(f"{address}: updated {current.id}")
            return "updated", updated

        if node.lifecycle.create_before_destroy:
            replacement = Replacement(address, current.id)
            replacement.begin()
            replacements[address] = replacement
            # A failed create leaves the node pending with the old instance untouched.
            created = self._call(address, self.provider.create, node.type, attributes)
            replacement.created(created["id"])
            self.state.put(address, ResourceState(
                id=created["id"], outputs=created,
                deposed=list(current.deposed) + [Deposed(current.id, current.dependency_ids)], **record
            ))
            logger.info(f"{address}: created replacement {created['id']} for {current.id}")
            return "replaced", created

        self._call(address, self.provider.delete, node.type, current.id)
        self.state.remove(address)
        logger.info(f"{address}: destroyed {current.id} before replacing it")
        created = self._call(address, self.provider.create, node.type, attributes)
        self.state.put(address, ResourceState(id=created["id"], outputs=created, **record))
        logger.info(f"{address}: created {created['id']}")
        return "replaced", created

    def _destroy_deposed(self, graph, result, failed):
        # Dependents first: an old launch configuration goes before the old security group it names.
        addresses = [address for address in reversed(graph.order()) if address in self.state]
        addresses += [address for address in self.state.addresses() if address not in graph]
        for address in addresses:
            resource = self.state.get(address)
            for old in list(resource.deposed):
                replacement = result.replacements.get(address)
                if replacement is None or replacement.old_id != old.id:
                    replacement = Replacement.resume(address, old.id, resource.id)
                    result.replacements.setdefault(address, replacement)

                dependents = graph.dependents(address) if address in graph else set()
                if dependents & failed:
                    logger.warning(f"{address}: keeping {old.id}, dependents were not updated")
                    continue
                if replacement.state is ReplacementState.NEW_CREATED:
                    replacement.cut_over()

                referrers = self.state.referrers(old.id, exclude=address)
                if referrers:
                    logger.warning(f"{address}: keeping {old.id}, still referenced by {', '.join(sorted(referrers))}")
                    continue
                try:
                    self._call(address, self.provider.delete, resource.type, old.id)
                except ProviderError as e:
                    failed.add(address)
                    result.outcomes[address] = "failed"
                    result.errors.append(NodeError(address, f"destroying {old.id}: {e}"))
                    logger.error(f"{address}: destroying {old.id}: {e}")
                    continue
                replacement.destroyed()
                replacement.settle()
                resource.deposed.remove(old)
                self.state.put(address, resource)
                logger.info(f"{address}: destroyed {old.id}")

    def _delete_orphans(self, plan, result):
        orphans = set(plan.actions(Action.DELETE))
        # Dependents go first: only delete an orphan nothing else still depends on.
        while orphans:
            ready = sorted(
                address for address in orphans
                if not any(address in self.state.get(other).dependencies for other in orphans if other != address)
            ) or sorted(orphans)
            for address in ready:
                orphans.discard(address)
                resource = self.state.get(address)
                try:
                    for resource_id in [old.id for old in resource.deposed] + [resource.id]:
                        self._call(address, self.provider.delete, resource.type, resource_id)
                except ProviderError as e:
                    result.outcomes[address] = "failed"
                    result.errors.append(NodeError(address, str(e)))
                    logger.error(f"{address}: {e}")
                    continue
                self.state.remove(address)
                result.outcomes[address] = "deleted"
                logger.info(f"{address}: deleted {resource.id}")
