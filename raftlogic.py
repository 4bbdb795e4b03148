import logging
import random
from collections import deque
from dataclasses import dataclass
from dataclasses import field
from typing import TYPE_CHECKING
from typing import Callable

from raftconfig import DEFAULT_TIMINGS
from raftconfig import NODE_RADIUS
from raftconfig import NodeID
from raftconfig import NodeRole
from raftconfig import Position
from raftconfig import RaftTimings
from raftlog import LogEntry
from raftlog import RaftLog
from raftlog import log_to_str
from rpc import AppendEntries
from rpc import AppendEntriesResponse
from rpc import Message
from rpc import RequestVote
from rpc import RequestVoteResponse

if TYPE_CHECKING:
    from raftnet import RaftNetwork

logger = logging.getLogger(__name__)


@dataclass
class RaftState:
    # survives kill/revive
    log: RaftLog = field(default_factory=RaftLog)
    current_term: int = 0
    voted_for: NodeID | None = None

    # volatile, all servers. -1 means nothing committed/applied yet.
    commit_index: int = -1
    last_applied: int = -1

    # volatile, on leaders only
    # for each server, index of the next log entry to send to that server
    next_index: dict = field(default_factory=dict)
    # for each server, index of highest log entry known to be replicated on that server
    match_index: dict = field(default_factory=dict)


class RaftNode:
    """One participant. Never talks to other nodes directly: everything goes through the network."""

    def __init__(
        self,
        node_id: NodeID,
        position: Position = (0.0, 0.0),
        timings: RaftTimings = DEFAULT_TIMINGS,
        seed: int | None = None,
        apply_command: Callable[[LogEntry], None] | None = None,
    ):
        self.node_id = node_id
        self.x, self.y = position
        self.timings = timings
        self.role: NodeRole = "follower"
        self.state = RaftState()
        self.alive = True
        self.partitioned = False
        self.inbox: deque[Message] = deque()
        self.apply_command = apply_command or (lambda entry: ...)

        # simulated milliseconds seen by this node
        self.clock = 0.0
        self.time_last_heartbeat = -(timings.heartbeat_interval_ms + 1)
        # unseeded nodes draw their timeouts from fresh entropy like the network does
        self.random = random.Random() if seed is None else random.Random(f"{seed}:{node_id}")
        self.election_due = 0.0
        self.reset_election_timer()

        # statistics
        self.votes_received = 0
        self.messages_received = 0
        self.messages_sent = 0
        self.elections_started = 0

    def __repr__(self):
        return (
            f"RaftNode(node_id={self.node_id}, role='{self.role}', term={self.state.current_term}, "
            f"log={log_to_str(self.state.log)})"
        )

    @property
    def current_term(self) -> int:
        return self.state.current_term

    @property
    def voted_for(self) -> NodeID | None:
        return self.state.voted_for

    @property
    def log(self) -> RaftLog:
        return self.state.log

    @property
    def commit_index(self) -> int:
        return self.state.commit_index

    @property
    def next_index(self) -> dict:
        return self.state.next_index

    @property
    def match_index(self) -> dict:
        return self.state.match_index

    def tick(self, elapsed_ms: float, network: "RaftNetwork"):
        if not self.alive:
            return
        self.clock += elapsed_ms

        if self.role in ("follower", "candidate") and self.clock >= self.election_due:
            self.start_election(network)

        if self.role == "leader" and (self.clock - self.time_last_heartbeat) >= self.timings.heartbeat_interval_ms:
            self.send_heartbeats(network)

        # FIFO, drained completely on every tick
        while self.inbox and self.alive:
            message = self.inbox.popleft()
            self.messages_received += 1
            self.handle_message(message, network)

    def receive(self, message: Message):
        self.inbox.append(message)

    def handle_message(self, message: Message, network: "RaftNetwork"):
        prev_term = self.state.current_term
        prev_voted_for = self.state.voted_for

        self._handle_message(message, network)

        assert self.state.current_term >= prev_term, "term went backwards"
        if self.state.current_term == prev_term and prev_voted_for is not None:
            assert self.state.voted_for == prev_voted_for, "voted twice in the same term"

    def _handle_message(self, message: Message, network: "RaftNetwork"):
        content = message.content
        self.rule_check_term(content.term)

        match content:
            case RequestVote():
                self.handle_request_vote(content, network)
            case RequestVoteResponse():
                self.handle_request_vote_response(content, network)
            case AppendEntries():
                self.handle_append_entries(content, network)
            case AppendEntriesResponse():
                self.handle_append_entries_response(content)
            case _:
                raise ValueError(f"unknown message content: {content}")

    def rule_check_term(self, term: int):
        # figure 2 'Rules for servers':
        # "If RPC request or response contains term T > currentTerm, set currentTerm = T, convert to follower"
        if term > self.state.current_term:
            logger.info("Node %s saw term %s > %s", self.node_id, term, self.state.current_term)
            self.state.current_term = term
            self.state.voted_for = None
            if self.role != "follower":
                self.convert_to("follower")

    def convert_to(self, new_role: NodeRole):
        assert_transition_allowed(self.role, new_role)
        logger.info("Node %s converting from %s to %s (term %s)", self.node_id, self.role, new_role, self.current_term)
        if self.role == "leader" and new_role != "leader":
            self.state.next_index = {}
            self.state.match_index = {}
        self.role = new_role

    def start_election(self, network: "RaftNetwork"):
        if not self.alive:
            return

        # note we might convert from candidate to candidate: this starts a new election
        self.convert_to("candidate")
        self.state.current_term += 1
        self.state.voted_for = self.node_id
        self.votes_received = 1
        self.elections_started += 1
        self.reset_election_timer()
        logger.info("Node %s started election for term %s", self.node_id, self.current_term)

        network.broadcast(
            self,
            RequestVote(
                term=self.state.current_term,
                candidate_id=self.node_id,
                last_log_index=self.state.log.last_log_index(),
                last_log_term=self.state.log.last_log_term(),
            ),
        )
        # a cluster of one does not need anyone else's vote.
        self.check_majority(network)

    def check_majority(self, network: "RaftNetwork"):
        if self.role == "candidate" and self.votes_received > network.alive_count() / 2:
            self.become_leader(network)

    def become_leader(self, network: "RaftNetwork"):
        self.convert_to("leader")
        self.state.next_index = {
            n_id: len(self.state.log) for n_id in network.alive_node_ids() if n_id != self.node_id
        }
        self.state.match_index = {n_id: -1 for n_id in network.alive_node_ids() if n_id != self.node_id}
        logger.info("Node %s became leader for term %s", self.node_id, self.current_term)
        # immediately send heartbeats. Waiting for the next tick would work too.
        self.send_heartbeats(network)

    def send_heartbeats(self, network: "RaftNetwork") -> int:
        if not self.alive or self.role != "leader":
            return 0
        self.time_last_heartbeat = self.clock
        return network.broadcast(
            self,
            AppendEntries(
                term=self.state.current_term,
                leader_id=self.node_id,
                prev_log_index=-1,
                prev_log_term=-1,
                entries=(),
                leader_commit=self.state.commit_index,
            ),
        )

    def handle_request_vote(self, msg: RequestVote, network: "RaftNetwork"):
        # figure 2 'RequestVote RPC'
        vote_granted = (
            msg.term >= self.state.current_term
            and (self.state.voted_for is None or self.state.voted_for == msg.candidate_id)
            and not self.state.log.is_more_up_to_date(
                other_last_index=msg.last_log_index, other_last_term=msg.last_log_term
            )
        )

        if vote_granted:
            self.state.voted_for = msg.candidate_id
            self.reset_election_timer()

        network.send(self, msg.candidate_id, RequestVoteResponse(term=self.state.current_term, vote_granted=vote_granted))

    def handle_request_vote_response(self, msg: RequestVoteResponse, network: "RaftNetwork"):
        # need to double-check the term is correct to avoid using an old, delayed message
        if self.role != "candidate" or msg.term != self.state.current_term:
            logger.debug("Node %s ignoring stale vote response %s", self.node_id, msg)
            return

        if msg.vote_granted:
            self.votes_received += 1
            self.check_majority(network)

    def handle_append_entries(self, msg: AppendEntries, network: "RaftNetwork"):
        success = msg.term >= self.state.current_term
        if success:
            # legitimate leader request
            self.reset_election_timer()
            if self.role != "follower":
                self.convert_to("follower")
            # no prev_log_index/prev_log_term check: entries go straight to the tail.
            self.state.log.append_entries(list(msg.entries))

        network.send(self, msg.leader_id, AppendEntriesResponse(term=self.state.current_term, success=success))

    def handle_append_entries_response(self, msg: AppendEntriesResponse):
        # acknowledgements do not move match_index/commit_index in this reduced protocol.
        if self.role != "leader":
            logger.debug("Node %s ignoring append entries response, not leader anymore", self.node_id)

    def add_command(self, command: str) -> LogEntry | None:
        if self.role != "leader":
            return None
        entry = self.state.log.append_new_command_as_leader(leader_term=self.state.current_term, command=command)
        logger.info("Node %s appended %s", self.node_id, entry)
        return entry

    def commit_through(self, index: int) -> int:
        """Explicitly commit entries up to `index`, then apply everything committed.

        Nothing in the protocol calls this: commit index is never advanced from acknowledgements.
        """
        if index > self.state.commit_index:
            self.state.commit_index = max(self.state.commit_index, self.state.log.commit_through(index))

        while self.state.last_applied < self.state.commit_index:
            self.state.last_applied += 1
            entry = self.state.log[self.state.last_applied]
            entry.apply()
            self.apply_command(entry)
        return self.state.commit_index

    def forget_peer(self, node_id: NodeID):
        self.state.next_index.pop(node_id, None)
        self.state.match_index.pop(node_id, None)

    def kill(self):
        if self.role != "dead":
            self.convert_to("dead")
        self.alive = False
        self.inbox.clear()

    def revive(self):
        """Back as a follower. The log is durable, it survives."""
        if self.alive:
            return
        self.alive = True
        self.convert_to("follower")
        self.reset_election_timer()

    def reset(self):
        self.role = "follower"
        self.state = RaftState()
        self.alive = True
        self.partitioned = False
        self.inbox.clear()
        self.clock = 0.0
        self.time_last_heartbeat = -(self.timings.heartbeat_interval_ms + 1)
        self.reset_election_timer()
        self.votes_received = 0
        self.messages_received = 0
        self.messages_sent = 0
        self.elections_started = 0

    def reset_election_timer(self):
        self.election_due = self.clock + self.random.randrange(
            self.timings.election_timeout_min_ms, self.timings.election_timeout_max_ms
        )

    def contains(self, x: float, y: float) -> bool:
        return (x - self.x) ** 2 + (y - self.y) ** 2 <= NODE_RADIUS**2

    def info(self) -> dict:
        return {
            "id": self.node_id,
            "state": self.role,
            "term": self.state.current_term,
            "voted_for": self.state.voted_for,
            "log_length": len(self.state.log),
            "commit_index": self.state.commit_index,
            "alive": self.alive,
            "partitioned": self.partitioned,
            "votes_received": self.votes_received,
            "messages_received": self.messages_received,
            "messages_sent": self.messages_sent,
        }


ALLOWED_TRANSITIONS = {
    ("follower", "follower"),
    ("follower", "candidate"),
    ("candidate", "candidate"),
    ("candidate", "leader"),
    ("candidate", "follower"),
    ("leader", "follower"),
    ("follower", "dead"),
    ("candidate", "dead"),
    ("leader", "dead"),
    ("dead", "follower"),
}


def assert_transition_allowed(role: NodeRole, new_role: NodeRole):
    if (role, new_role) not in ALLOWED_TRANSITIONS:
        logger.error("forbidden transition from %s to %s detected!", role, new_role)
