from console import Console
from raftconfig import ELECTION_TIMEOUT_MAX_MS
from raftnet import create_cluster
from rpc import RequestVote


def make_console(node_count=5, seed=1) -> Console:
    return Console(create_cluster(node_count, seed=seed))


def test_step_and_run_advance_time():
    shell = make_console()
    assert shell.handle("step").startswith("t=10ms")
    shell.handle("run 990")
    assert shell.network.current_time == 1000
    assert shell.handle("step 15").startswith("t=1015ms")


def test_request_without_leader_is_rejected():
    shell = make_console()
    assert shell.handle("request") == "rejected: no leader available"


def test_requests_once_a_leader_exists():
    shell = make_console()
    shell.handle(f"run {10 * ELECTION_TIMEOUT_MAX_MS}")
    leader = shell.network.current_leader()
    assert leader is not None

    assert shell.handle("request set x 1").startswith("accepted")
    assert shell.handle("request").startswith("accepted")
    assert shell.handle("burst") == "sent burst of 5 requests"
    assert [entry.command for entry in leader.log] == [
        "set x 1",
        "REQUEST_1",
        "BURST_2",
        "BURST_3",
        "BURST_4",
        "BURST_5",
        "BURST_6",
    ]


def test_membership_commands():
    shell = make_console(3)
    assert shell.handle("add") == "added node 3"
    assert shell.handle("remove") == "removed node 3"
    assert shell.handle("remove 9") == "rejected: no such node"
    assert shell.handle("kill 1") == "killed node 1"
    assert shell.handle("kill 1") == "rejected: node is already dead"
    assert shell.handle("revive") == "revived [1]"
    assert shell.handle("revive 1") == "rejected: node is alive"


def test_fault_commands():
    shell = make_console()
    assert shell.handle("partition 0,1 2,3,4") == "partition: group 1: [0, 1], group 2: [2, 3, 4]"
    assert shell.network.is_partitioned(1, 3)
    assert shell.handle("heal") == "network partition healed"
    assert shell.handle("partition").startswith("partition: group 1:")
    assert shell.handle("latency 100") == "latency: 100.0ms"
    assert shell.handle("latency +") == "latency: 150.0ms"
    assert shell.handle("droprate 0.5") == "drop rate: 0.5"
    assert shell.handle("speed 20") == "speed: 10.0x"


def test_stats_and_nodes():
    shell = make_console(3)
    stats = shell.handle("stats")
    assert "total_nodes: 3" in stats
    assert "leader: None" in stats
    assert shell.handle("nodes").splitlines()[0].startswith("0: follower")
    assert "'state': 'follower'" in shell.handle("node 2")
    assert shell.handle("node 7") == "no node 7"
    assert shell.handle("messages") == "no messages in flight"


def test_commit_command():
    shell = make_console(1)
    shell.handle(f"run {2 * ELECTION_TIMEOUT_MAX_MS}")
    shell.handle("request a")
    shell.handle("request b")

    assert shell.handle("commit 0 0") == "commit index: 0"
    assert shell.network.nodes[0].state.last_applied == 0


def test_reset_and_unknown():
    shell = make_console()
    shell.handle("run 5000")
    assert shell.handle("reset") == "simulation reset"
    assert shell.network.current_time == 0
    assert shell.handle("frobnicate") == "unknown command"
    assert shell.handle("") == ""


def test_messages_show_what_they_carry():
    shell = make_console(3)
    network = shell.network
    network.send(network.nodes[0], 2, RequestVote(term=3, candidate_id=0, last_log_index=-1, last_log_term=0))

    output = shell.handle("messages")
    assert "'type': 'RequestVote'" in output
    assert "'content': {'term': 3, 'candidate_id': 0, 'last_log_index': -1, 'last_log_term': 0}" in output
