import logging
import math
import random
from dataclasses import asdict
from dataclasses import dataclass
from enum import Enum
from typing import Any
from typing import Iterable

from raftconfig import DEFAULT_NODE_COUNT
from raftconfig import DEFAULT_TIMINGS
from raftconfig import LATENCY_STEP_MS
from raftconfig import LAYOUT_RADIUS
from raftconfig import MAX_NODES
from raftconfig import MIN_PARTITION_NODES
from raftconfig import SPEED_MULTIPLIER_MAX
from raftconfig import SPEED_MULTIPLIER_MIN
from raftconfig import NodeID
from raftconfig import Position
from raftconfig import RaftTimings
from raftlog import LogEntry
from raftlogic import RaftNode
from rpc import Message
from rpc import RaftContent

logger = logging.getLogger(__name__)


class SendOutcome(Enum):
    SENT = "sent"
    DEAD_ENDPOINT = "dead_endpoint"
    PARTITIONED = "partitioned"
    DROPPED = "dropped"

    def __bool__(self):
        return self is SendOutcome.SENT


class RejectReason(Enum):
    NO_LEADER = "no leader available"
    LAST_ALIVE_NODE = "cannot remove or kill the last alive node"
    NOT_ENOUGH_NODES = f"need at least {MIN_PARTITION_NODES} alive nodes"
    CLUSTER_FULL = f"maximum of {MAX_NODES} nodes allowed"
    DUPLICATE_NODE = "node id already in use"
    UNKNOWN_NODE = "no such node"
    NOT_DEAD = "node is alive"
    ALREADY_DEAD = "node is already dead"


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a cluster mutator. Rejections are values, never exceptions."""

    value: Any = None
    reason: RejectReason | None = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    def __bool__(self):
        return self.ok

    @classmethod
    def rejected(cls, reason: RejectReason) -> "OperationResult":
        logger.info("operation rejected: %s", reason.value)
        return cls(reason=reason)


@dataclass(frozen=True)
class NetworkStatistics:
    total_nodes: int
    alive_nodes: int
    current_term: int
    leader: NodeID | None
    total_messages: int
    delivered_messages: int
    dropped_messages: int
    blocked_messages: int
    undeliverable_messages: int
    active_messages: int
    latency_ms: float
    drop_rate: float
    speed_multiplier: float
    partitions_active: bool
    current_time: float

    def as_dict(self) -> dict:
        return asdict(self)


class RaftNetwork:
    """Owns the nodes and every message between them.

    Messages are not delivered instantly: each one travels for a while, and may be dropped or blocked
    by a partition before it even leaves the sender.
    """

    def __init__(
        self,
        seed: int | None = None,
        timings: RaftTimings = DEFAULT_TIMINGS,
        max_nodes: int = MAX_NODES,
    ):
        self.seed = seed
        self.timings = timings
        self.max_nodes = max_nodes
        self.random = random.Random(seed)

        self.nodes: dict[NodeID, RaftNode] = {}
        self.in_flight: list[Message] = []
        self.partitions: set[frozenset[NodeID]] = set()
        self.latency_ms = 0.0
        self.drop_rate = 0.0
        self.speed_multiplier = 1.0
        self.current_time = 0.0

        self.next_message_id = 0
        self.total_messages = 0
        self.delivered_messages = 0
        self.dropped_messages = 0
        self.blocked_messages = 0
        self.undeliverable_messages = 0

    def __repr__(self):
        return f"RaftNetwork(nodes={list(self.nodes.values())}, in_flight={len(self.in_flight)})"

    # membership

    def add_node(self, node_id: NodeID | None = None, position: Position = (0.0, 0.0)) -> OperationResult:
        if len(self.nodes) >= self.max_nodes:
            return OperationResult.rejected(RejectReason.CLUSTER_FULL)
        if node_id is None:
            node_id = max(self.nodes, default=-1) + 1
        elif node_id in self.nodes:
            return OperationResult.rejected(RejectReason.DUPLICATE_NODE)

        node = RaftNode(node_id, position=position, timings=self.timings, seed=self.seed)
        self.nodes[node_id] = node
        logger.info("added node %s", node_id)
        return OperationResult(value=node)

    def remove_node(self, node_id: NodeID | None = None) -> OperationResult:
        if len(self.alive_nodes()) <= 1:
            return OperationResult.rejected(RejectReason.LAST_ALIVE_NODE)
        if node_id is None:
            node_id = max(self.nodes)
        if node_id not in self.nodes:
            return OperationResult.rejected(RejectReason.UNKNOWN_NODE)

        node = self.nodes.pop(node_id)
        self._discard_messages_to(node_id)
        self.partitions = {pair for pair in self.partitions if node_id not in pair}
        for other in self.nodes.values():
            other.forget_peer(node_id)
        logger.info("removed node %s", node_id)
        return OperationResult(value=node)

    def kill_node(self, node_id: NodeID) -> OperationResult:
        node = self.nodes.get(node_id)
        if node is None:
            return OperationResult.rejected(RejectReason.UNKNOWN_NODE)
        if not node.alive:
            return OperationResult.rejected(RejectReason.ALREADY_DEAD)
        if len(self.alive_nodes()) <= 1:
            return OperationResult.rejected(RejectReason.LAST_ALIVE_NODE)

        node.kill()
        self._discard_messages_to(node_id)
        for other in self.nodes.values():
            other.forget_peer(node_id)
        logger.info("killed node %s", node_id)
        return OperationResult(value=node)

    def _discard_messages_to(self, node_id: NodeID):
        """Messages already in flight to a node that dies or leaves never arrive, even if it comes back."""
        still_in_flight = []
        for message in self.in_flight:
            if message.receiver_id == node_id:
                message.drop()
                self.undeliverable_messages += 1
            else:
                still_in_flight.append(message)
        self.in_flight = still_in_flight

    def kill_random_node(self) -> OperationResult:
        alive = self.alive_nodes()
        if len(alive) <= 1:
            return OperationResult.rejected(RejectReason.LAST_ALIVE_NODE)
        return self.kill_node(self.random.choice(alive).node_id)

    def revive_node(self, node_id: NodeID) -> OperationResult:
        node = self.nodes.get(node_id)
        if node is None:
            return OperationResult.rejected(RejectReason.UNKNOWN_NODE)
        if node.alive:
            return OperationResult.rejected(RejectReason.NOT_DEAD)
        node.revive()
        logger.info("revived node %s", node_id)
        return OperationResult(value=node)

    def revive_all(self) -> OperationResult:
        revived = [self.revive_node(node.node_id).value for node in self.sorted_nodes() if not node.alive]
        return OperationResult(value=revived)

    # fault injection

    def partition(self, group_a: Iterable[NodeID], group_b: Iterable[NodeID]) -> OperationResult:
        if len(self.alive_nodes()) < MIN_PARTITION_NODES:
            return OperationResult.rejected(RejectReason.NOT_ENOUGH_NODES)

        group_a, group_b = list(group_a), list(group_b)
        for id_a in group_a:
            for id_b in group_b:
                if id_a == id_b:
                    continue
                self.partitions.add(frozenset((id_a, id_b)))
                for n_id in (id_a, id_b):
                    if n_id in self.nodes:
                        self.nodes[n_id].partitioned = True
        logger.info("partitioned %s from %s", group_a, group_b)
        return OperationResult(value=(group_a, group_b))

    def random_partition(self) -> OperationResult:
        alive_ids = [node.node_id for node in self.alive_nodes()]
        if len(alive_ids) < MIN_PARTITION_NODES:
            return OperationResult.rejected(RejectReason.NOT_ENOUGH_NODES)
        self.random.shuffle(alive_ids)
        mid = len(alive_ids) // 2
        return self.partition(sorted(alive_ids[:mid]), sorted(alive_ids[mid:]))

    def heal_partition(self):
        self.partitions.clear()
        for node in self.nodes.values():
            node.partitioned = False
        logger.info("network partition healed")

    def is_partitioned(self, node_id_1: NodeID, node_id_2: NodeID) -> bool:
        return frozenset((node_id_1, node_id_2)) in self.partitions

    def set_latency(self, latency_ms: float):
        self.latency_ms = max(0.0, float(latency_ms))

    def add_latency(self, latency_ms: float = LATENCY_STEP_MS) -> float:
        self.set_latency(self.latency_ms + latency_ms)
        logger.info("added %sms latency (total: %sms)", latency_ms, self.latency_ms)
        return self.latency_ms

    def set_drop_rate(self, rate: float):
        self.drop_rate = min(max(float(rate), 0.0), 1.0)

    def set_speed_multiplier(self, multiplier: float):
        self.speed_multiplier = min(max(float(multiplier), SPEED_MULTIPLIER_MIN), SPEED_MULTIPLIER_MAX)

    # transport

    def send(self, sender: RaftNode, receiver_id: NodeID, content: RaftContent) -> SendOutcome:
        receiver = self.nodes.get(receiver_id)
        if receiver is None or not sender.alive or not receiver.alive:
            return SendOutcome.DEAD_ENDPOINT

        if self.is_partitioned(sender.node_id, receiver_id):
            self.blocked_messages += 1
            logger.debug("%s -> %s blocked by partition: %s", sender.node_id, receiver_id, content)
            return SendOutcome.PARTITIONED

        if self.random.random() < self.drop_rate:
            self.dropped_messages += 1
            logger.debug("%s -> %s dropped: %s", sender.node_id, receiver_id, content)
            return SendOutcome.DROPPED

        jitter = self.random.uniform(-self.timings.latency_jitter_ms, self.timings.latency_jitter_ms)
        message = Message(
            id=self.next_message_id,
            sender_id=sender.node_id,
            receiver_id=receiver_id,
            content=content,
            created_at=self.current_time,
            transit_ms=self.timings.base_travel_ms + max(0.0, self.latency_ms + jitter),
        )
        self.next_message_id += 1
        self.in_flight.append(message)
        self.total_messages += 1
        sender.messages_sent += 1
        return SendOutcome.SENT

    def broadcast(self, sender: RaftNode, content: RaftContent) -> int:
        sent_count = 0
        for node in self.alive_nodes():
            if node.node_id != sender.node_id and self.send(sender, node.node_id, content):
                sent_count += 1
        return sent_count

    def advance(self, delta_ms: float):
        elapsed = delta_ms * self.speed_multiplier
        self.current_time += elapsed

        still_in_flight = []
        for message in self.in_flight:
            if not message.age(elapsed):
                still_in_flight.append(message)
                continue
            receiver = self.nodes.get(message.receiver_id)
            if receiver is not None and receiver.alive:
                message.deliver()
                receiver.receive(message)
                self.delivered_messages += 1
            else:
                message.drop()
                self.undeliverable_messages += 1
        self.in_flight = still_in_flight

        for node in self.sorted_nodes():
            if node.alive:
                node.tick(elapsed, self)

    # client

    def submit_client_command(self, command: str) -> OperationResult:
        leader = self.current_leader()
        if leader is None:
            return OperationResult.rejected(RejectReason.NO_LEADER)
        entry: LogEntry | None = leader.add_command(command)
        if entry is None:
            return OperationResult.rejected(RejectReason.NO_LEADER)
        return OperationResult(value=entry)

    # queries

    def sorted_nodes(self) -> list[RaftNode]:
        return [self.nodes[n_id] for n_id in sorted(self.nodes)]

    def alive_nodes(self) -> list[RaftNode]:
        return [node for node in self.sorted_nodes() if node.alive]

    def alive_node_ids(self) -> list[NodeID]:
        return [node.node_id for node in self.alive_nodes()]

    def alive_count(self) -> int:
        return len(self.alive_nodes())

    def current_leader(self) -> RaftNode | None:
        return next((node for node in self.alive_nodes() if node.role == "leader"), None)

    def current_term(self) -> int:
        return max((node.current_term for node in self.alive_nodes()), default=0)

    def node_at(self, x: float, y: float) -> RaftNode | None:
        return next((node for node in self.sorted_nodes() if node.contains(x, y)), None)

    def statistics(self) -> NetworkStatistics:
        leader = self.current_leader()
        return NetworkStatistics(
            total_nodes=len(self.nodes),
            alive_nodes=self.alive_count(),
            current_term=self.current_term(),
            leader=leader.node_id if leader is not None else None,
            total_messages=self.total_messages,
            delivered_messages=self.delivered_messages,
            dropped_messages=self.dropped_messages,
            blocked_messages=self.blocked_messages,
            undeliverable_messages=self.undeliverable_messages,
            active_messages=len(self.in_flight),
            latency_ms=self.latency_ms,
            drop_rate=self.drop_rate,
            speed_multiplier=self.speed_multiplier,
            partitions_active=bool(self.partitions),
            current_time=self.current_time,
        )

    def reset(self):
        self.in_flight = []
        self.partitions.clear()
        self.latency_ms = 0.0
        self.drop_rate = 0.0
        self.current_time = 0.0
        self.next_message_id = 0
        self.total_messages = 0
        self.delivered_messages = 0
        self.dropped_messages = 0
        self.blocked_messages = 0
        self.undeliverable_messages = 0
        for node in self.nodes.values():
            node.reset()
        logger.info("network reset")


def create_cluster(node_count: int = DEFAULT_NODE_COUNT, seed: int | None = None, **kwargs) -> RaftNetwork:
    """Network with `node_count` nodes (ids 0..n-1) laid out on a circle."""
    network = RaftNetwork(seed=seed, **kwargs)
    for i in range(node_count):
        angle = (i / node_count) * 2 * math.pi - math.pi / 2
        network.add_node(i, position=(LAYOUT_RADIUS * math.cos(angle), LAYOUT_RADIUS * math.sin(angle)))
    return network
