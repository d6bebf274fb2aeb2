"""
OU tag propagator.

Pushes a unit's effective tags down its subtree when the hierarchy changes.
Children receive only the inherited subset (keys they do not own directly),
so a node's own tags always win. A key someone else sets on a node that had
inherited it becomes the node's own before anything is pushed down. Writes
carry the propagator's marker; events caused by those writes are discarded on
arrival instead of propagating again.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from itertools import repeat
from dataclasses import dataclass, field

from .errors import NotFoundError, PartialFailure, TaggingError
from .org_client import UNIT, OrgNode
from .policy import inherited_subset, merge_tags

logger = logging.getLogger(__name__)

SUCCEEDED = "SUCCEEDED"
UNCHANGED = "UNCHANGED"
FAILED = "FAILED"


@dataclass(frozen=True)
class UnitTagged:
    unit_id: str
    changed_keys: tuple = ()
    marker: str | None = None
    actor: str | None = None


@dataclass(frozen=True)
class UnitUntagged:
    unit_id: str
    removed_keys: tuple = ()
    marker: str | None = None
    actor: str | None = None


@dataclass(frozen=True)
class AccountTagged:
    account_id: str
    changed_keys: tuple = ()
    marker: str | None = None
    actor: str | None = None


@dataclass(frozen=True)
class AccountCreated:
    account_id: str
    parent_unit_id: str | None = None


@dataclass(frozen=True)
class AccountMoved:
    account_id: str
    old_parent_unit_id: str
    new_parent_unit_id: str


@dataclass
class NodeOutcome:
    node_id: str
    status: str
    written: dict = field(default_factory=dict)
    removed: list = field(default_factory=list)
    error: dict | None = None


@dataclass
class PropagationResult:
    event: object
    discarded: bool = False
    depth_exhausted: bool = False
    succeeded: list = field(default_factory=list)
    failed: list = field(default_factory=list)

    def record(self, outcome: NodeOutcome) -> None:
        if outcome.status == FAILED:
            self.failed.append(outcome)
        else:
            self.succeeded.append(outcome)

    @property
    def writes(self) -> int:
        return sum(1 for o in self.succeeded if o.status == SUCCEEDED)

    def raise_for_failures(self) -> None:
        if self.failed:
            raise PartialFailure(
                f"Propagation of {type(self.event).__name__} failed on {len(self.failed)} node(s)",
                [o.error for o in self.failed],
            )

    def to_dict(self) -> dict:
        return {
            "event": type(self.event).__name__,
            "discarded": self.discarded,
            "depth_exhausted": self.depth_exhausted,
            "writes": self.writes,
            "succeeded": [o.node_id for o in self.succeeded],
            "failed": [o.error for o in self.failed],
        }


class OUTagPropagator:
    def __init__(self, org_client, marker: str, actor: str | None = None, max_workers: int = 8, max_depth: int = 6):
        self.org = org_client
        self.marker = marker
        self.actor = actor
        self.max_workers = max_workers
        self.max_depth = max_depth

    def is_own_write(self, event) -> bool:
        if event.marker is not None and event.marker == self.marker:
            return True
        return bool(self.actor and event.actor and event.actor.endswith(self.actor))

    def handle(self, event) -> PropagationResult:
        if isinstance(event, (UnitTagged, UnitUntagged, AccountTagged)) and self.is_own_write(event):
            node_id = event.account_id if isinstance(event, AccountTagged) else event.unit_id
            logger.info(f"Discarding {type(event).__name__} on {node_id}: caused by a previous propagation")
            return PropagationResult(event=event, discarded=True)

        if isinstance(event, UnitTagged):
            logger.info(f"Unit {event.unit_id} tagged ({list(event.changed_keys)}), propagating")
            adopted = self._adopt(event.unit_id, event.changed_keys)
            if adopted.status == FAILED:
                result = PropagationResult(event=event)
                result.record(adopted)
            else:
                result = self._propagate_unit(event, event.unit_id)
        elif isinstance(event, AccountTagged):
            # Accounts have no subtree; only their ledger needs correcting.
            result = PropagationResult(event=event)
            result.record(self._adopt(event.account_id, event.changed_keys))
        elif isinstance(event, UnitUntagged):
            logger.info(f"Unit {event.unit_id} untagged ({list(event.removed_keys)}), propagating")
            result = self._propagate_unit(event, event.unit_id, removed_keys=tuple(event.removed_keys))
        elif isinstance(event, AccountCreated):
            result = self._propagate_account(event, event.account_id, event.parent_unit_id)
        elif isinstance(event, AccountMoved):
            # Tags inherited from the old parent are kept; moves only add.
            logger.info(
                f"Account {event.account_id} moved {event.old_parent_unit_id} -> {event.new_parent_unit_id}, "
                f"inheriting from the new parent"
            )
            result = self._propagate_account(event, event.account_id, event.new_parent_unit_id)
        else:
            raise TypeError(f"Unsupported hierarchy event: {event!r}")

        logger.info(
            f"Propagation of {type(event).__name__} done: writes={result.writes}, "
            f"succeeded={len(result.succeeded)}, failed={len(result.failed)}"
        )
        return result

    def _adopt(self, node_id: str, keys: tuple) -> NodeOutcome:
        """Make externally set keys direct tags of node_id, so they win over inheritance."""
        if not keys:
            return NodeOutcome(node_id=node_id, status=UNCHANGED)
        try:
            adopted = self.org.adopt_direct(node_id, keys, self.marker)
        except NotFoundError:
            raise
        except TaggingError as e:
            logger.warning(f"Could not adopt {list(keys)} on {node_id}: {e.kind}: {e.message}")
            error = e.to_dict()
            error["target"] = node_id
            return NodeOutcome(node_id=node_id, status=FAILED, error=error)
        return NodeOutcome(node_id=node_id, status=SUCCEEDED if adopted else UNCHANGED, removed=adopted)

    def _apply(self, child: OrgNode, parent_effective: dict, removed_keys: tuple = ()) -> NodeOutcome:
        """Bring one child's inherited tags in line with its parent's effective set."""
        inherited = inherited_subset(parent_effective, child.direct_tags)
        to_write = {k: v for k, v in inherited.items() if child.inherited_tags.get(k) != v}
        to_remove = [k for k in removed_keys if k in child.inherited_tags and k not in inherited]

        try:
            if to_write:
                self.org.set_tags(child.id, to_write, self.marker, inherited_keys=child.inherited_tags.keys())
            if to_remove:
                ledger = set(child.inherited_tags) | set(to_write)
                self.org.remove_tags(child.id, to_remove, self.marker, inherited_keys=ledger)
        except TaggingError as e:
            logger.warning(f"Propagation to {child.id} failed: {e.kind}: {e.message}")
            error = e.to_dict()
            error["target"] = child.id
            return NodeOutcome(node_id=child.id, status=FAILED, error=error)

        status = SUCCEEDED if to_write or to_remove else UNCHANGED
        return NodeOutcome(node_id=child.id, status=status, written=to_write, removed=to_remove)

    def _propagate_unit(self, event, unit_id: str, removed_keys: tuple = ()) -> PropagationResult:
        result = PropagationResult(event=event)
        basis = self.org.get_effective_tags(unit_id)

        frontier = [(unit_id, basis)]
        visited = {unit_id}
        depth = 0
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while frontier:
                if depth >= self.max_depth:
                    logger.warning(f"Depth bound {self.max_depth} reached below {unit_id}, stopping")
                    result.depth_exhausted = True
                    break

                next_frontier = []
                for parent_id, parent_effective in frontier:
                    try:
                        children = self.org.list_children(parent_id)
                    except TaggingError as e:
                        logger.warning(f"Could not list children of {parent_id}: {e.kind}: {e.message}")
                        error = e.to_dict()
                        error["target"] = parent_id
                        result.record(NodeOutcome(node_id=parent_id, status=FAILED, error=error))
                        continue

                    children = [c for c in children if c.id not in visited]
                    visited.update(c.id for c in children)
                    outcomes = pool.map(self._apply, children, repeat(parent_effective), repeat(removed_keys))
                    for child, outcome in zip(children, outcomes):
                        result.record(outcome)
                        if child.kind == UNIT:
                            next_frontier.append((child.id, merge_tags(parent_effective, child.direct_tags)))

                frontier = next_frontier
                depth += 1

        return result

    def _propagate_account(self, event, account_id: str, parent_id: str | None) -> PropagationResult:
        result = PropagationResult(event=event)
        node = self.org.get_node(account_id)
        if node.parent_id and node.parent_id != parent_id:
            logger.info(f"Account {account_id} now sits under {node.parent_id}, not {parent_id}; using current parent")
            parent_id = node.parent_id

        basis = self.org.get_effective_tags(parent_id)
        result.record(self._apply(node, basis))
        return result
