"""
Create-before-destroy replacement sequencing.

A replacement walks one node through

    STABLE -> PENDING_REPLACE -> NEW_CREATED -> TRAFFIC_CUTOVER -> OLD_DESTROYED -> STABLE

The old instance keeps serving until every dependent points at the new one,
so a load-balanced resource never drops to zero available instances.
"""

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class ReplacementState(Enum):
    STABLE = "stable"
    PENDING_REPLACE = "pending_replace"
    NEW_CREATED = "new_created"
    TRAFFIC_CUTOVER = "traffic_cutover"
    OLD_DESTROYED = "old_destroyed"


TRANSITIONS = {
    ReplacementState.STABLE: ReplacementState.PENDING_REPLACE,
    ReplacementState.PENDING_REPLACE: ReplacementState.NEW_CREATED,
    ReplacementState.NEW_CREATED: ReplacementState.TRAFFIC_CUTOVER,
    ReplacementState.TRAFFIC_CUTOVER: ReplacementState.OLD_DESTROYED,
    ReplacementState.OLD_DESTROYED: ReplacementState.STABLE,
}


class InvalidTransitionError(Exception):
    pass


class Replacement:
    def __init__(self, address, old_id):
        self.address = address
        self.old_id = old_id
        self.new_id = None
        self.state = ReplacementState.STABLE
        self.history = [self.state]

    @classmethod
    def resume(cls, address, old_id, new_id):
        """Pick up a replacement whose old instance survived an earlier apply."""
        replacement = cls(address, old_id)
        replacement.new_id = new_id
        replacement.state = ReplacementState.NEW_CREATED
        replacement.history = [replacement.state]
        return replacement

    def __repr__(self):
        return f"Replacement({self.address!r}, {self.state.value})"

    @property
    def finished(self):
        return self.state is ReplacementState.STABLE and len(self.history) > 1

    def _advance(self, expected):
        if self.state is not expected:
            raise InvalidTransitionError(
                f"{self.address}: cannot leave {self.state.value}, expected {expected.value}"
            )
        self.state = TRANSITIONS[expected]
        self.history.append(self.state)
        logger.debug(f"{self.address}: {expected.value} -> {self.state.value}")

    def begin(self):
        """A planned change requires recreating the node."""
        self._advance(ReplacementState.STABLE)

    def created(self, new_id):
        """The new instance exists; the old one is still in service."""
        self._advance(ReplacementState.PENDING_REPLACE)
        self.new_id = new_id

    def cut_over(self):
        """Dependents now reference the new instance."""
        self._advance(ReplacementState.NEW_CREATED)

    def destroyed(self):
        """The old instance has been deleted."""
        self._advance(ReplacementState.TRAFFIC_CUTOVER)

    def settle(self):
        """Record the new identity as the node's only instance."""
        self._advance(ReplacementState.OLD_DESTROYED)
        self.old_id = None
