from dataclasses import dataclass
from dataclasses import field
from typing import Union

from raftconfig import NodeID
from raftlog import LogEntry


@dataclass(frozen=True)
class RequestVote:
    term: int
    candidate_id: NodeID
    last_log_index: int
    last_log_term: int

    def as_dict(self):
        return {
            "term": self.term,
            "candidate_id": self.candidate_id,
            "last_log_index": self.last_log_index,
            "last_log_term": self.last_log_term,
        }


@dataclass(frozen=True)
class RequestVoteResponse:
    term: int
    vote_granted: bool

    def as_dict(self):
        return {
            "term": self.term,
            "vote_granted": self.vote_granted,
        }


@dataclass(frozen=True)
class AppendEntries:
    term: int
    leader_id: NodeID
    prev_log_index: int
    prev_log_term: int
    entries: tuple[LogEntry, ...]
    leader_commit: int

    def as_dict(self):
        return {
            "term": self.term,
            "leader_id": self.leader_id,
            "prev_log_index": self.prev_log_index,
            "prev_log_term": self.prev_log_term,
            "entries": [entry.as_dict() for entry in self.entries],
            "leader_commit": self.leader_commit,
        }

    def is_heartbeat(self) -> bool:
        return not self.entries


@dataclass(frozen=True)
class AppendEntriesResponse:
    term: int
    success: bool

    def as_dict(self):
        return {
            "term": self.term,
            "success": self.success,
        }


RaftContent = Union[RequestVote, RequestVoteResponse, AppendEntries, AppendEntriesResponse]


@dataclass
class Message:
    """Envelope for one content in transit. Owned by the network until delivered or dropped."""

    id: int
    sender_id: NodeID
    receiver_id: NodeID
    content: RaftContent
    created_at: float
    transit_ms: float
    elapsed_ms: float = 0
    delivered: bool = False
    dropped: bool = False
    term: int = field(init=False)

    def __post_init__(self):
        self.term = self.content.term

    @property
    def type(self) -> str:
        return self.content.__class__.__name__

    def age(self, elapsed_ms: float) -> bool:
        """Move the message along. Returns True once it has arrived."""
        if self.delivered or self.dropped:
            return False
        self.elapsed_ms += elapsed_ms
        return self.elapsed_ms >= self.transit_ms

    def deliver(self):
        self.delivered = True

    def drop(self):
        self.dropped = True

    def info(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "term": self.term,
            "age": self.elapsed_ms,
            "transit_ms": self.transit_ms,
            "delivered": self.delivered,
            "dropped": self.dropped,
            "content": self.content.as_dict(),
        }
