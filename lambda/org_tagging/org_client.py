"""
AWS Organizations hierarchy client.

Reads the tree (roots, units, accounts, parent/child edges, tags) and writes
tags on its nodes. Organizations keeps tags flat, so reserved tags record
engine metadata on every node the propagator writes to:

- MARKER_TAG_KEY: who made the last propagated write (self-feedback guard)
- LEDGER_TAG_KEY: space-separated keys held by inheritance, not owned directly.
  A ledger longer than one tag value continues in LEDGER_TAG_KEY:1,
  LEDGER_TAG_KEY:2 and so on.
"""

import logging
from dataclasses import dataclass, field

import boto3

from .errors import NotFoundError, TaggingError, call_with_retry
from .policy import merge_tags

logger = logging.getLogger(__name__)

MARKER_TAG_KEY = "org-tagging:marker"
LEDGER_TAG_KEY = "org-tagging:inherited"

# AWS tag values are limited to 256 characters
MAX_TAG_VALUE_LENGTH = 256

ACCOUNT = "account"
UNIT = "unit"


def is_reserved_key(key: str) -> bool:
    """True for the marker and every ledger chunk key."""
    return key in (MARKER_TAG_KEY, LEDGER_TAG_KEY) or key.startswith(LEDGER_TAG_KEY + ":")


def ledger_key(index: int) -> str:
    return LEDGER_TAG_KEY if index == 0 else f"{LEDGER_TAG_KEY}:{index}"


def ledger_tags(keys) -> dict:
    """
    Pack inherited keys into ledger tags, sorted, each value at most
    MAX_TAG_VALUE_LENGTH characters. No keys gives no ledger tags.
    """
    chunks: list[list[str]] = []
    length = 0
    for key in sorted(set(keys)):
        if chunks and length + 1 + len(key) <= MAX_TAG_VALUE_LENGTH:
            chunks[-1].append(key)
            length += 1 + len(key)
        else:
            chunks.append([key])
            length = len(key)
    return {ledger_key(i): " ".join(chunk) for i, chunk in enumerate(chunks)}


def ledger_keys(raw_tags: dict) -> set:
    """Every key recorded in the ledger tags of raw_tags."""
    keys = set()
    for key, value in raw_tags.items():
        if key != MARKER_TAG_KEY and is_reserved_key(key):
            keys.update(value.split())
    return keys


@dataclass
class OrgNode:
    """
    A node of the hierarchy, addressed by id.

    child_ids is only populated by get_node; nodes returned by list_children
    are shallow and leave it empty.
    """

    id: str
    kind: str
    parent_id: str | None
    child_ids: list[str] = field(default_factory=list)
    direct_tags: dict = field(default_factory=dict)
    inherited_tags: dict = field(default_factory=dict)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


def node_kind(node_id: str) -> str:
    if node_id.startswith("r-") or node_id.startswith("ou-"):
        return UNIT
    return ACCOUNT


def split_tags(raw_tags: dict) -> tuple[dict, dict]:
    """Split raw node tags into (direct, inherited) using the ledger tags."""
    ledger = ledger_keys(raw_tags)
    direct = {k: v for k, v in raw_tags.items() if not is_reserved_key(k) and k not in ledger}
    inherited = {k: v for k, v in raw_tags.items() if k in ledger and not is_reserved_key(k)}
    return direct, inherited


class OrgHierarchyClient:
    """Hierarchy reads and tag writes through the Organizations API."""

    def __init__(self, orgs_client=None, retry_attempts: int = 4, retry_base_delay: float = 0.5, max_depth: int = 6):
        self.orgs = orgs_client or boto3.client("organizations")
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.max_depth = max_depth
        self._root_id = None

    def _call(self, method: str, target: str, **kwargs) -> dict:
        return call_with_retry(
            getattr(self.orgs, method),
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            target=target,
            **kwargs,
        )

    def _paginate(self, method: str, result_key: str, target: str, **kwargs) -> list:
        items = []
        next_token = None
        while True:
            params = dict(kwargs)
            if next_token:
                params["NextToken"] = next_token
            resp = self._call(method, target, **params)
            items.extend(resp.get(result_key, []))
            next_token = resp.get("NextToken")
            if not next_token:
                return items

    # --- READ METHODS ---

    def get_root_id(self) -> str:
        if self._root_id is None:
            roots = self._paginate("list_roots", "Roots", "organization")
            if not roots:
                raise NotFoundError("Organization has no root", "organization")
            self._root_id = roots[0]["Id"]
        return self._root_id

    def get_parent_id(self, node_id: str) -> str | None:
        if node_id.startswith("r-"):
            return None
        parents = self._call("list_parents", node_id, ChildId=node_id).get("Parents", [])
        if not parents:
            raise NotFoundError(f"Hierarchy broken: no parent found for {node_id}", node_id)
        return parents[0]["Id"]

    def get_ancestor_ids(self, node_id: str) -> list[str]:
        """Ancestors of node_id, root first."""
        ancestors: list[str] = []
        current = self.get_parent_id(node_id)
        while current is not None:
            if current in ancestors or len(ancestors) > self.max_depth:
                raise TaggingError(f"Hierarchy broken: no root reached above {node_id}", node_id)
            ancestors.insert(0, current)
            current = self.get_parent_id(current)
        return ancestors

    def get_raw_tags(self, node_id: str) -> dict:
        tags = self._paginate("list_tags_for_resource", "Tags", node_id, ResourceId=node_id)
        return {tag["Key"]: tag["Value"] for tag in tags}

    def get_direct_tags(self, node_id: str) -> dict:
        return split_tags(self.get_raw_tags(node_id))[0]

    def get_inherited_tags(self, node_id: str) -> dict:
        return split_tags(self.get_raw_tags(node_id))[1]

    def get_effective_tags(self, node_id: str) -> dict:
        """Direct tags of the ancestor chain merged root first, node's own tags last."""
        chain = self.get_ancestor_ids(node_id) + [node_id]
        return merge_tags(*(self.get_direct_tags(n) for n in chain))

    def list_child_ids(self, parent_id: str) -> list[tuple[str, str]]:
        """(id, kind) of every child, accounts first."""
        children = []
        for child_type, kind in (("ACCOUNT", ACCOUNT), ("ORGANIZATIONAL_UNIT", UNIT)):
            found = self._paginate("list_children", "Children", parent_id, ParentId=parent_id, ChildType=child_type)
            children.extend((child["Id"], kind) for child in found)
        return children

    def list_children(self, parent_id: str) -> list[OrgNode]:
        nodes = []
        for child_id, kind in self.list_child_ids(parent_id):
            direct, inherited = split_tags(self.get_raw_tags(child_id))
            nodes.append(OrgNode(
                id=child_id,
                kind=kind,
                parent_id=parent_id,
                direct_tags=direct,
                inherited_tags=inherited,
            ))
        return nodes

    def get_node(self, node_id: str) -> OrgNode:
        kind = node_kind(node_id)
        direct, inherited = split_tags(self.get_raw_tags(node_id))
        child_ids = [child_id for child_id, _ in self.list_child_ids(node_id)] if kind == UNIT else []
        return OrgNode(
            id=node_id,
            kind=kind,
            parent_id=self.get_parent_id(node_id),
            child_ids=child_ids,
            direct_tags=direct,
            inherited_tags=inherited,
        )

    def list_accounts_in(self, unit_id: str) -> list[str]:
        """Every account below unit_id, breadth first, bounded by max_depth."""
        accounts = []
        frontier = [unit_id]
        depth = 0
        while frontier and depth < self.max_depth:
            next_frontier = []
            for parent_id in frontier:
                for child_id, kind in self.list_child_ids(parent_id):
                    if kind == ACCOUNT:
                        accounts.append(child_id)
                    else:
                        next_frontier.append(child_id)
            frontier = next_frontier
            depth += 1
        if frontier:
            logger.warning(f"Stopped account listing under {unit_id} at depth {self.max_depth}")
        return accounts

    def list_all_accounts(self) -> list[str]:
        accounts = self._paginate("list_accounts", "Accounts", "organization")
        return [a["Id"] for a in accounts if a.get("Status", "ACTIVE") == "ACTIVE"]

    def get_management_account_id(self) -> str:
        organization = self._call("describe_organization", "organization").get("Organization", {})
        return organization["MasterAccountId"]

    # --- WRITE METHODS ---

    def _tag(self, node_id: str, tags: dict) -> None:
        self._call(
            "tag_resource",
            node_id,
            ResourceId=node_id,
            Tags=[{"Key": k, "Value": v} for k, v in tags.items()],
        )

    def set_tags(self, node_id: str, tags: dict, marker: str, inherited_keys=None) -> None:
        """
        Write inherited tags to a node, stamping the marker and updating the ledger.

        inherited_keys is the node's current ledger; it is read when not supplied.
        """
        if not tags:
            return
        if inherited_keys is None:
            inherited_keys = self.get_inherited_tags(node_id).keys()
        ledger = ledger_tags(set(inherited_keys) | set(tags))
        self._tag(node_id, merge_tags(tags, {MARKER_TAG_KEY: marker}, ledger))
        logger.info(f"Tagged {node_id} with {sorted(tags)}")

    def remove_tags(self, node_id: str, keys, marker: str, inherited_keys=None) -> None:
        """Remove inherited keys from a node and drop them from its ledger."""
        keys = list(keys)
        if not keys:
            return
        if inherited_keys is None:
            inherited_keys = self.get_inherited_tags(node_id).keys()
        old_ledger = ledger_tags(inherited_keys)
        ledger = ledger_tags(set(inherited_keys) - set(keys))
        stale = [k for k in old_ledger if k not in ledger]
        self._call("untag_resource", node_id, ResourceId=node_id, TagKeys=keys + stale)
        self._tag(node_id, merge_tags({MARKER_TAG_KEY: marker}, ledger))
        logger.info(f"Removed inherited tags {sorted(keys)} from {node_id}")

    def adopt_direct(self, node_id: str, keys, marker: str) -> list[str]:
        """
        Take keys out of a node's ledger so their current values count as
        the node's own. Called when someone other than the propagator sets
        a key the node had inherited. Returns the keys adopted.
        """
        raw = self.get_raw_tags(node_id)
        inherited = ledger_keys(raw)
        adopted = sorted(inherited & set(keys))
        if not adopted:
            return []
        ledger = ledger_tags(inherited - set(adopted))
        stale = [k for k in raw if is_reserved_key(k) and k != MARKER_TAG_KEY and k not in ledger]
        if stale:
            self._call("untag_resource", node_id, ResourceId=node_id, TagKeys=stale)
        self._tag(node_id, merge_tags({MARKER_TAG_KEY: marker}, ledger))
        logger.info(f"Adopted {adopted} as direct tags of {node_id}")
        return adopted
