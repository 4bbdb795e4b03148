# Timing and sizing parameters for the simulated cluster. All durations are
# milliseconds of *simulated* time: the network scales wall-clock deltas by its
# speed multiplier before anything looks at them.
from dataclasses import dataclass
from typing import Literal

NodeID = int
NodeRole = Literal["leader", "candidate", "follower", "dead"]
Position = tuple[float, float]

# slow enough to watch: the paper uses 150-300ms, we stretch it by 20x.
HEARTBEAT_INTERVAL_MS = 1000
ELECTION_TIMEOUT_MIN_MS = 3000
ELECTION_TIMEOUT_MAX_MS = 6000

# every message takes at least this long to travel, on top of the configured latency.
BASE_TRAVEL_MS = 500
LATENCY_JITTER_MS = 10
LATENCY_STEP_MS = 50

MAX_NODES = 9
DEFAULT_NODE_COUNT = 5
# partitioning 2 nodes is not interesting: there's no majority side.
MIN_PARTITION_NODES = 3

SPEED_MULTIPLIER_MIN = 0.1
SPEED_MULTIPLIER_MAX = 10.0

# hit-testing radius for node_at, matches what the visualization draws.
NODE_RADIUS = 40
LAYOUT_RADIUS = 180

# resolution used by the Simulation driver and the console "run" command.
SIMULATION_TICK_MS = 10


@dataclass(frozen=True)
class RaftTimings:
    heartbeat_interval_ms: int = HEARTBEAT_INTERVAL_MS
    election_timeout_min_ms: int = ELECTION_TIMEOUT_MIN_MS
    election_timeout_max_ms: int = ELECTION_TIMEOUT_MAX_MS
    base_travel_ms: int = BASE_TRAVEL_MS
    latency_jitter_ms: int = LATENCY_JITTER_MS

    def __post_init__(self):
        assert 0 < self.election_timeout_min_ms < self.election_timeout_max_ms, "bad election timeout range"
        assert self.heartbeat_interval_ms > 0


DEFAULT_TIMINGS = RaftTimings()
