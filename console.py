import logging
import traceback

from raftconfig import DEFAULT_NODE_COUNT
from raftconfig import SIMULATION_TICK_MS
from raftlog import log_to_str
from raftnet import RaftNetwork
from raftnet import create_cluster

HELP = """commands:
  step [ms]              advance the simulation by one tick (or ms)
  run <ms>               advance the simulation by ms, one tick at a time
  stats                  cluster statistics
  nodes                  one line per node
  node <id>              details for one node
  messages               messages in flight
  add | remove [id]      membership
  kill [id] | revive [id]
  partition [a,b c,d]    random split when no groups are given
  heal
  latency <ms> | latency +
  droprate <r> | speed <m>
  request [command] | burst
  commit <id> <index>    explicitly commit a node's log up to index
  reset
  logging on|off
  help"""


class Console:
    def __init__(self, network: RaftNetwork, tick_ms: float = SIMULATION_TICK_MS):
        self.network = network
        self.tick_ms = tick_ms
        self.request_counter = 0

    def run_for(self, duration_ms: float):
        elapsed = 0.0
        while elapsed < duration_ms:
            step = min(self.tick_ms, duration_ms - elapsed)
            self.network.advance(step)
            elapsed += step

    def next_command(self, prefix: str) -> str:
        self.request_counter += 1
        return f"{prefix}_{self.request_counter}"

    def handle(self, line: str) -> str:
        parts = line.split()
        if not parts:
            return ""
        cmd, args = parts[0], parts[1:]
        network = self.network

        match cmd:
            case "step":
                self.run_for(float(args[0]) if args else self.tick_ms)
                return self.summary()
            case "run":
                self.run_for(float(args[0]))
                return self.summary()
            case "stats":
                stats = network.statistics().as_dict()
                stats["leader"] = "None" if stats["leader"] is None else stats["leader"]
                return "\n".join(f"{key}: {value}" for key, value in stats.items())
            case "nodes":
                return "\n".join(
                    f"{node.node_id}: {node.role:<9} term={node.current_term} log='{log_to_str(node.log)}'"
                    f"{' (partitioned)' if node.partitioned else ''}"
                    for node in network.sorted_nodes()
                )
            case "node":
                node = network.nodes.get(int(args[0]))
                return f"no node {args[0]}" if node is None else str(node.info())
            case "messages":
                return "\n".join(str(message.info()) for message in network.in_flight) or "no messages in flight"
            case "add":
                return self.describe(network.add_node(), "added node {}")
            case "remove":
                return self.describe(network.remove_node(int(args[0]) if args else None), "removed node {}")
            case "kill":
                result = network.kill_node(int(args[0])) if args else network.kill_random_node()
                return self.describe(result, "killed node {}")
            case "revive":
                if args:
                    return self.describe(network.revive_node(int(args[0])), "revived node {}")
                revived = network.revive_all().value
                return f"revived {[node.node_id for node in revived]}"
            case "partition":
                if len(args) == 2:
                    group_a = [int(n_id) for n_id in args[0].split(",")]
                    group_b = [int(n_id) for n_id in args[1].split(",")]
                    result = network.partition(group_a, group_b)
                else:
                    result = network.random_partition()
                if not result:
                    return f"rejected: {result.reason.value}"
                return f"partition: group 1: {result.value[0]}, group 2: {result.value[1]}"
            case "heal":
                network.heal_partition()
                return "network partition healed"
            case "latency":
                if args and args[0] == "+":
                    network.add_latency()
                else:
                    network.set_latency(float(args[0]))
                return f"latency: {network.latency_ms}ms"
            case "droprate":
                network.set_drop_rate(float(args[0]))
                return f"drop rate: {network.drop_rate}"
            case "speed":
                network.set_speed_multiplier(float(args[0]))
                return f"speed: {network.speed_multiplier}x"
            case "request":
                command = " ".join(args) if args else self.next_command("REQUEST")
                result = network.submit_client_command(command)
                if not result:
                    return f"rejected: {result.reason.value}"
                return f"accepted {result.value}"
            case "burst":
                accepted = sum(bool(network.submit_client_command(self.next_command("BURST"))) for _ in range(5))
                return f"sent burst of {accepted} requests"
            case "commit":
                node = network.nodes.get(int(args[0]))
                if node is None:
                    return f"no node {args[0]}"
                return f"commit index: {node.commit_through(int(args[1]))}"
            case "reset":
                network.reset()
                self.request_counter = 0
                return "simulation reset"
            case "logging":
                if args == ["on"]:
                    logging.disable(level=logging.NOTSET)
                elif args == ["off"]:
                    logging.disable(level=logging.INFO)
                return f"logging {' '.join(args)}"
            case "help":
                return HELP
            case _:
                return "unknown command"

    @staticmethod
    def describe(result, success_template: str) -> str:
        if not result:
            return f"rejected: {result.reason.value}"
        return success_template.format(result.value.node_id)

    def summary(self) -> str:
        stats = self.network.statistics()
        leader = "None" if stats.leader is None else stats.leader
        return f"t={stats.current_time:.0f}ms term={stats.current_term} leader={leader} in flight={stats.active_messages}"


def console(node_count: int, seed: int | None):
    logging.basicConfig(level=logging.INFO)
    shell = Console(create_cluster(node_count, seed=seed))
    print(f"Created cluster with {node_count} nodes. Type 'help' for commands.")
    while True:
        try:
            line = input(f"raft t={shell.network.current_time:.0f}> ").strip()
        except EOFError:
            break
        # noinspection PyBroadException
        try:
            output = shell.handle(line)
        except Exception:
            print(traceback.format_exc())
            continue
        if output:
            print(output)


if __name__ == "__main__":
    import sys

    if len(sys.argv) > 3:
        print("usage: python console.py [node_count] [seed]\n" "you might want to use rlwrap as well for nicer input.")
        exit(1)
    console(
        int(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_NODE_COUNT,
        int(sys.argv[2]) if len(sys.argv) > 2 else None,
    )
