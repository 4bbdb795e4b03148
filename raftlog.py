from dataclasses import dataclass


@dataclass
class LogEntry:
    term: int
    index: int
    command: str
    committed: bool = False
    applied: bool = False

    def commit(self):
        if self.applied:
            # applied entries are frozen
            return
        self.committed = True

    def apply(self):
        assert self.committed, f"applying uncommitted entry {self}"
        self.applied = True

    def copy(self) -> "LogEntry":
        """Fresh, uncommitted copy: what a follower stores when it receives an entry."""
        return LogEntry(term=self.term, index=self.index, command=self.command)

    def as_dict(self) -> dict:
        return {
            "term": self.term,
            "index": self.index,
            "command": self.command,
            "committed": self.committed,
            "applied": self.applied,
        }


class RaftLog:
    """Reduced version of the log described in the paper.

    Indexing is 0-based and there is no placeholder entry: an empty log has last index -1 and last term 0.
    Followers append whatever a leader sends them, there are no prev_log_index/prev_log_term checks.
    """

    def __init__(self, log: list[LogEntry] | None = None):
        self.log: list[LogEntry] = list(log) if log is not None else []

    def __len__(self):
        return len(self.log)

    def __iter__(self):
        return iter(self.log)

    def __getitem__(self, index: int | slice):
        return self.log[index]

    def last_log_index(self) -> int:
        return len(self.log) - 1

    def last_log_term(self) -> int:
        return self.log[-1].term if self.log else 0

    def append_new_command_as_leader(self, leader_term: int, command: str) -> LogEntry:
        entry = LogEntry(term=leader_term, index=len(self.log), command=command)
        self.log.append(entry)
        return entry

    def append_entries(self, entries: list[LogEntry]) -> int:
        """Append copies of `entries` to the tail. Returns the number of entries appended."""
        for entry in entries:
            self.log.append(entry.copy())
        return len(entries)

    def commit_through(self, index: int) -> int:
        """Mark every entry up to and including `index` committed. Returns the new highest committed index."""
        index = min(max(index, -1), self.last_log_index())
        for entry in self.log[: index + 1]:
            entry.commit()
        return index

    def is_more_up_to_date(self, other_last_index: int, other_last_term: int) -> bool:
        """
        5.4.1 (end of section)
        If the logs have last entries with different terms, then the log with the later term is more up-to-date.
        If the logs end with the same term, then whichever log is longer is more up-to-date.
        """
        last_term = self.last_log_term()
        return last_term > other_last_term or (
            last_term == other_last_term and self.last_log_index() > other_last_index
        )

    def __repr__(self):
        return f"RaftLog(log={self.log})"


def log_to_str(raft_log: RaftLog) -> str:
    """Debug/testing utility"""
    if all(entry.term < 10 for entry in raft_log):
        return "".join([str(entry.term) for entry in raft_log])
    else:
        # not as nice but less ambiguous for when one wants to read very long logs.
        return ".".join([str(entry.term) for entry in raft_log])
