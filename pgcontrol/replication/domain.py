"""Topology domain models.

All models are frozen. A mutation produces a new model: `Node.transition()`
enforces the lifecycle table below and `ClusterTopology` exposes ``with_*``
helpers that bump ``generation``.

Lifecycle
---------
::

    provisioning --> bootstrapping --> streaming <--> lagging
         |                                 |             |
         +--> streaming (primary)          +--> unreachable <--+
                                           +--> promoted ------+
    any non-terminal state --> decommissioned (terminal)
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from ..core.enums import BOOTSTRAP_ORDER, BootstrapCheckpoint, NodeRole, NodeState, SlotState
from .config import NodeConfig
from .exceptions import InvalidSlotNameError, InvalidTransitionError, UnknownNodeError

SLOT_NAME_PATTERN = re.compile(r"^[a-z0-9_]{1,63}$")

ALLOWED_TRANSITIONS: dict[NodeState, frozenset[NodeState]] = {
    NodeState.PROVISIONING: frozenset({NodeState.BOOTSTRAPPING, NodeState.STREAMING, NodeState.DECOMMISSIONED}),
    NodeState.BOOTSTRAPPING: frozenset({NodeState.STREAMING, NodeState.LAGGING, NodeState.DECOMMISSIONED}),
    NodeState.STREAMING: frozenset(
        {NodeState.LAGGING, NodeState.UNREACHABLE, NodeState.PROMOTED, NodeState.DECOMMISSIONED}
    ),
    NodeState.LAGGING: frozenset(
        {NodeState.STREAMING, NodeState.UNREACHABLE, NodeState.PROMOTED, NodeState.DECOMMISSIONED}
    ),
    NodeState.UNREACHABLE: frozenset(
        {NodeState.STREAMING, NodeState.LAGGING, NodeState.PROMOTED, NodeState.DECOMMISSIONED}
    ),
    NodeState.PROMOTED: frozenset({NodeState.UNREACHABLE, NodeState.DECOMMISSIONED}),
    NodeState.DECOMMISSIONED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def slot_name_for(node_id: str, prefix: str = "replica_slot_") -> str:
    """Derive the physical slot name bound to a replica.

    Slot names may only contain lower-case letters, digits and underscores and
    are limited to 63 bytes.

    Examples
    --------
    >>> slot_name_for("pg-Replica.1")
    'replica_slot_pg_replica_1'
    """
    sanitized = re.sub(r"[^a-z0-9_]", "_", node_id.lower())
    return validate_slot_name(f"{prefix}{sanitized}"[:63])


def validate_slot_name(name: str) -> str:
    if not SLOT_NAME_PATTERN.match(name):
        msg = f"Invalid replication slot name {name!r}"
        raise InvalidSlotNameError(msg)
    return name


class BootstrapProgress(BaseModel):
    """Persisted bootstrap checkpoint for one replica."""

    model_config = ConfigDict(frozen=True)

    checkpoint: BootstrapCheckpoint = BootstrapCheckpoint.PENDING
    backup_failures: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=_utcnow)

    def reached(self, checkpoint: BootstrapCheckpoint) -> bool:
        return BOOTSTRAP_ORDER.index(self.checkpoint) >= BOOTSTRAP_ORDER.index(checkpoint)

    def advance(self, checkpoint: BootstrapCheckpoint) -> Self:
        return self.model_copy(update={"checkpoint": checkpoint, "updated_at": _utcnow()})

    def record_backup_failure(self) -> Self:
        return self.model_copy(update={"backup_failures": self.backup_failures + 1, "updated_at": _utcnow()})


class ReplicationSlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    bound_node_id: str | None = None
    host_node_id: str | None = None
    kind: Literal["physical"] = "physical"
    state: SlotState = SlotState.ABSENT
    restart_lsn: int | None = None

    def with_state(self, state: SlotState) -> Self:
        return self.model_copy(update={"state": state})


class Node(BaseModel):
    """A cluster member as tracked by the controller."""

    model_config = ConfigDict(frozen=True)

    config: NodeConfig
    role: NodeRole
    state: NodeState = NodeState.PROVISIONING
    upstream_id: str | None = None
    slot_name: str | None = None
    bootstrap: BootstrapProgress = Field(default_factory=BootstrapProgress)
    last_error: str | None = None
    promoted_at: datetime | None = None
    unreachable_since: datetime | None = None
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_serializer("config", when_used="json")
    def _config_without_password(self, config: NodeConfig) -> dict[str, Any]:
        # Persisted state never carries credentials; they are rebound from configuration on load.
        return config.model_dump(mode="json", exclude={"connection": {"password"}})

    @property
    def node_id(self) -> str:
        return self.config.node_id

    @property
    def is_active(self) -> bool:
        return self.state != NodeState.DECOMMISSIONED

    def transition(self, target: NodeState) -> Self:
        """Move to ``target`` if the lifecycle allows it.

        A transition to the current state is a no-op.

        Raises
        ------
        InvalidTransitionError
            If ``target`` is not reachable from the current state.
        """
        if target == self.state:
            return self
        if target not in ALLOWED_TRANSITIONS[self.state]:
            msg = f"Node {self.node_id!r} cannot move from {self.state} to {target}"
            raise InvalidTransitionError(msg, node_id=self.node_id)

        now = _utcnow()
        update: dict[str, object] = {"state": target, "updated_at": now}
        if target == NodeState.UNREACHABLE:
            update["unreachable_since"] = now
        elif self.state == NodeState.UNREACHABLE:
            update["unreachable_since"] = None
        if target == NodeState.PROMOTED:
            update["promoted_at"] = now
        return self.model_copy(update=update)

    def with_error(self, error: str | None) -> Self:
        return self.model_copy(update={"last_error": error, "updated_at": _utcnow()})


class ClusterTopology(BaseModel):
    """Current primary, ordered replica set and slot bindings."""

    model_config = ConfigDict(frozen=True)

    cluster_name: str
    primary_id: str
    replica_ids: tuple[str, ...] = ()
    nodes: dict[str, Node] = Field(default_factory=dict)
    slots: dict[str, ReplicationSlot] = Field(default_factory=dict)
    generation: int = 0
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def primary(self) -> Node:
        return self.node(self.primary_id)

    def node(self, node_id: str) -> Node:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise UnknownNodeError(node_id) from None

    def replicas(self) -> list[Node]:
        return [self.nodes[node_id] for node_id in self.replica_ids]

    def active_nodes(self) -> list[Node]:
        return [node for node in self.nodes.values() if node.is_active]

    def slot_for(self, node_id: str) -> ReplicationSlot | None:
        for slot in self.slots.values():
            if slot.bound_node_id == node_id:
                return slot
        return None

    def _bumped(self, **update: object) -> Self:
        return self.model_copy(update={**update, "generation": self.generation + 1, "updated_at": _utcnow()})

    def with_node(self, node: Node, *, enroll: bool = True) -> Self:
        """Insert or replace ``node``; new replicas are appended to the replica set unless ``enroll`` is False."""
        replica_ids = self.replica_ids
        if (
            enroll
            and node.role == NodeRole.REPLICA
            and node.node_id not in replica_ids
            and node.node_id != self.primary_id
        ):
            replica_ids = (*replica_ids, node.node_id)
        return self._bumped(nodes={**self.nodes, node.node_id: node}, replica_ids=replica_ids)

    def without_replica(self, node_id: str) -> Self:
        return self._bumped(replica_ids=tuple(rid for rid in self.replica_ids if rid != node_id))

    def with_slot(self, slot: ReplicationSlot) -> Self:
        return self._bumped(slots={**self.slots, slot.name: slot})

    def without_slot(self, name: str) -> Self:
        return self._bumped(slots={key: slot for key, slot in self.slots.items() if key != name})

    def with_primary(self, node_id: str) -> Self:
        """Make ``node_id`` the primary; callers update roles of the nodes involved."""
        return self._bumped(
            primary_id=node_id,
            replica_ids=tuple(rid for rid in self.replica_ids if rid != node_id),
        )

    def check_invariants(self) -> list[str]:
        """Return violations of the settled-topology invariants (empty when consistent)."""
        violations: list[str] = []

        primaries = [node.node_id for node in self.active_nodes() if node.role == NodeRole.PRIMARY]
        if primaries != [self.primary_id]:
            violations.append(f"expected exactly one primary ({self.primary_id}), found {sorted(primaries)}")

        for node in self.replicas():
            if node.state not in (NodeState.STREAMING, NodeState.LAGGING):
                continue
            bound = [slot for slot in self.slots.values() if slot.bound_node_id == node.node_id]
            if len(bound) != 1:
                violations.append(f"replica {node.node_id} has {len(bound)} bound slots")
            elif bound[0].state != SlotState.ACTIVE:
                violations.append(f"replica {node.node_id} slot {bound[0].name} is {bound[0].state}")

        slot_names = [node.slot_name for node in self.replicas() if node.slot_name]
        if len(slot_names) != len(set(slot_names)):
            violations.append("replicas share a slot name")

        return violations
