"""
Node Network: Spatial k-NN Graph + SIS Epidemic Simulation
Core simulation engine

Random points in 3D space are wired to their nearest neighbours and an
infection spreads over the resulting links one discrete tick at a time.
Healthy nodes can be infected by any infected neighbour, infected nodes
recover with a fixed probability, and a re-seeding pass keeps the process
from dying out. The renderer reads positions, links and infection flags
between ticks through `NetworkSimulation.render_frame()`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

import numpy as np
import networkx as nx


# =============================================================================
# Constants
# =============================================================================

K_NEIGHBORS = 6

RECOVERY_PROBABILITY = 0.04       # per infected node per tick
TRANSMISSION_PROBABILITY = 0.01   # per directed neighbour trial per tick
RESEED_THRESHOLD = 10             # safeguard fires below this many infected
RESEED_COUNT = 10                 # expected infections added per safeguard pass
INITIAL_INFECTED = 10             # expected infections at setup

DEFAULT_NETWORK_SIZE = 500
DEFAULT_EXTENT = 1.0              # positions uniform in [-extent, extent]^3


# =============================================================================
# Errors
# =============================================================================

class NetworkError(ValueError):
    """Base class for construction-time failures."""


class InsufficientNodes(NetworkError):
    """Fewer than k + 1 nodes: some node cannot rank k others."""

    def __init__(self, n: int, k: int):
        super().__init__(f"need at least {k + 1} nodes for k={k}, got {n}")
        self.n = n
        self.k = k


class InvalidProbability(NetworkError):
    """A supplied probability lies outside [0, 1]."""

    def __init__(self, name: str, value: float):
        super().__init__(f"{name} must lie in [0, 1], got {value!r}")
        self.name = name
        self.value = value


def _check_probability(name: str, value: float) -> None:
    # NaN fails both comparisons, so test the accepted range directly
    if not (0.0 <= value <= 1.0):
        raise InvalidProbability(name, value)


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass
class Node:
    """A point in the cloud. Only `infected` changes after construction."""
    id: int
    position: tuple[float, float, float] = (0.0, 0.0, 0.0)
    infected: bool = False
    neighbors: set = field(default_factory=set)


@dataclass(frozen=True)
class EpidemicParameters:
    """Per-tick probabilities of the SIS update.

    reseed_probability=None means `reseed_count / N`, resolved per call
    because N is only known from the state being stepped.
    """
    recovery_probability: float = RECOVERY_PROBABILITY
    transmission_probability: float = TRANSMISSION_PROBABILITY
    reseed_threshold: int = RESEED_THRESHOLD
    reseed_count: int = RESEED_COUNT
    reseed_probability: Optional[float] = None

    def __post_init__(self):
        _check_probability("recovery_probability", self.recovery_probability)
        _check_probability("transmission_probability", self.transmission_probability)
        if self.reseed_probability is not None:
            _check_probability("reseed_probability", self.reseed_probability)
        if self.reseed_threshold < 0:
            raise ValueError(f"reseed_threshold must be >= 0, got {self.reseed_threshold}")
        if self.reseed_count < 0:
            raise ValueError(f"reseed_count must be >= 0, got {self.reseed_count}")

    def resolve_reseed_probability(self, n: int) -> float:
        if self.reseed_probability is not None:
            return self.reseed_probability
        if n <= 0:
            return 0.0
        # small networks would otherwise ask for more than one infection per node
        return min(1.0, self.reseed_count / n)


@dataclass
class TickOutcome:
    """Result of one synchronous update."""
    state: np.ndarray
    primary_infected: int    # infected count before the safeguard pass
    reseeded: bool = False


@dataclass
class RenderFrame:
    """Everything the renderer needs to draw one tick."""
    tick: int
    positions: np.ndarray                   # (N, 3) float
    links: list                             # [(a, b)]
    infected: np.ndarray                    # (N,) bool
    link_infected: list                     # [(bool, bool)] aligned to links


@dataclass
class SimulationConfig:
    """All configurable parameters for a simulation run."""
    # Network
    network_size: int = DEFAULT_NETWORK_SIZE
    k_neighbors: int = K_NEIGHBORS
    extent: float = DEFAULT_EXTENT

    # Epidemic
    recovery_probability: float = RECOVERY_PROBABILITY
    transmission_probability: float = TRANSMISSION_PROBABILITY
    reseed_threshold: int = RESEED_THRESHOLD
    reseed_count: int = RESEED_COUNT
    reseed_probability: Optional[float] = None   # None = reseed_count / network_size
    initial_infected: int = INITIAL_INFECTED     # expected count, drawn per node

    # Reproducibility
    master_seed: Optional[int] = None

    def validate(self):
        if self.k_neighbors < 1:
            raise ValueError(f"k_neighbors must be >= 1, got {self.k_neighbors}")
        if self.network_size <= self.k_neighbors:
            raise InsufficientNodes(self.network_size, self.k_neighbors)
        if self.extent <= 0:
            raise ValueError(f"extent must be positive, got {self.extent}")
        if self.initial_infected < 0:
            raise ValueError(f"initial_infected must be >= 0, got {self.initial_infected}")
        _check_probability("initial infection probability", self.initial_infection_probability)
        # constructing the parameters validates the remaining probabilities
        self.epidemic_parameters()

    @property
    def initial_infection_probability(self) -> float:
        return self.initial_infected / self.network_size

    def epidemic_parameters(self) -> EpidemicParameters:
        return EpidemicParameters(
            recovery_probability=self.recovery_probability,
            transmission_probability=self.transmission_probability,
            reseed_threshold=self.reseed_threshold,
            reseed_count=self.reseed_count,
            reseed_probability=self.reseed_probability,
        )


@dataclass
class SimulationResult:
    """Output from a single simulation run."""
    network_size: int = 0
    ticks: int = 0

    # Prevalence = fraction of nodes infected; index 0 is the seeded state
    prevalence_timeline: list = field(default_factory=list)
    final_prevalence: float = 0.0
    peak_prevalence: float = 0.0
    peak_tick: int = 0
    mean_prevalence: float = 0.0

    # Safeguard activity
    reseed_events: int = 0
    reseed_ticks: list = field(default_factory=list)

    # Topology
    network_stats: dict = field(default_factory=dict)


@dataclass
class MonteCarloResult:
    """Aggregated results from a batch of runs with consecutive seeds."""
    n_runs: int = 0
    base_seed: int = 42
    network_size: int = DEFAULT_NETWORK_SIZE
    ticks: int = 0

    # Per-run arrays
    mean_prevalences: np.ndarray = field(default_factory=lambda: np.array([]))
    final_prevalences: np.ndarray = field(default_factory=lambda: np.array([]))
    peak_prevalences: np.ndarray = field(default_factory=lambda: np.array([]))
    reseed_counts: np.ndarray = field(default_factory=lambda: np.array([]))

    results: list = field(default_factory=list)

    # Aggregate stats over mean prevalence
    mean_prevalence: float = 0.0
    std_prevalence: float = 0.0
    ci_95_lower: float = 0.0
    ci_95_upper: float = 0.0
    mean_reseed_events: float = 0.0

    config_overrides: dict = field(default_factory=dict)


# =============================================================================
# Graph Builder
# =============================================================================

def generate_positions(n: int, rng: np.random.Generator,
                       extent: float = DEFAULT_EXTENT) -> np.ndarray:
    """Uniform random points in the cube [-extent, extent]^3."""
    return rng.uniform(-extent, extent, size=(n, 3))


def build_knn_graph(
    positions,
    k: int = K_NEIGHBORS,
) -> tuple[dict[int, set[int]], list[tuple[int, int]]]:
    """
    Link every point to its k nearest neighbours by Euclidean distance.

    Parameters:
        positions: array-like of shape (N, 3); row i is node i
        k: neighbours selected per node
    Returns:
        adjacency: {id: set of neighbour ids}, symmetric
        links: [(a, b)] one entry per selection, N * k in total. A pair
               selected from both ends appears in both directions.
    Raises:
        InsufficientNodes: N <= k
    """
    pts = np.asarray(positions, dtype=float)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise ValueError(f"positions must have shape (N, 3), got {pts.shape}")
    if k < 1:
        raise ValueError(f"k must be >= 1, got {k}")
    n = pts.shape[0]
    if n <= k:
        raise InsufficientNodes(n, k)

    adjacency: dict[int, set[int]] = {i: set() for i in range(n)}
    links: list[tuple[int, int]] = []

    for a in range(n):
        dists = np.linalg.norm(pts - pts[a], axis=1)
        # stable sort: equal distances keep id order
        order = np.argsort(dists, kind="stable")
        # drop a itself explicitly; duplicate points may sort ahead of it
        ranked = order[order != a]
        for b in ranked[:k]:
            b = int(b)
            adjacency[a].add(b)
            adjacency[b].add(a)
            links.append((a, b))

    return adjacency, links


def build_network(nodes: Sequence[Node], k: int = K_NEIGHBORS) -> list[tuple[int, int]]:
    """Fill each node's neighbour set in place and return the link list.

    Node ids must be 0..N-1 and match their index in `nodes`.
    """
    for idx, node in enumerate(nodes):
        if node.id != idx:
            raise ValueError(f"node at index {idx} has id {node.id}")
    positions = np.array([node.position for node in nodes], dtype=float).reshape(-1, 3)
    adjacency, links = build_knn_graph(positions, k)
    for node in nodes:
        node.neighbors = set(adjacency[node.id])
    return links


def to_networkx(adjacency: dict[int, set[int]], positions=None) -> nx.Graph:
    """Undirected networkx view of the adjacency, with optional `pos` attributes."""
    G = nx.Graph()
    G.add_nodes_from(adjacency)
    for a, nbrs in adjacency.items():
        for b in nbrs:
            G.add_edge(a, b)
    if positions is not None:
        pts = np.asarray(positions, dtype=float)
        nx.set_node_attributes(G, {i: tuple(pts[i]) for i in G.nodes}, "pos")
    return G


def count_mutual_links(links: list[tuple[int, int]]) -> int:
    """Number of unordered pairs present in both directions."""
    directed = set(links)
    return sum(1 for a, b in directed if a < b and (b, a) in directed)


def network_summary(adjacency: dict[int, set[int]], links: Optional[list] = None) -> dict:
    """Topology stats used by the validation report and the notebook."""
    G = to_networkx(adjacency)
    if G.number_of_nodes() == 0:
        raise ValueError("cannot summarise an empty network")
    degrees = np.array([d for _, d in G.degree()])
    summary = {
        "nodes": G.number_of_nodes(),
        "edges": G.number_of_edges(),
        "min_degree": int(degrees.min()),
        "mean_degree": float(degrees.mean()),
        "max_degree": int(degrees.max()),
        "avg_clustering": float(nx.average_clustering(G)),
        "components": nx.number_connected_components(G),
    }
    if links is not None:
        summary["links"] = len(links)
        summary["mutual_links"] = count_mutual_links(links)
    return summary


# =============================================================================
# Epidemic Simulator
# =============================================================================

def _state_array(state) -> np.ndarray:
    """Infection flags as a 1-d bool array indexed by node id."""
    if isinstance(state, Mapping):
        n = len(state)
        if set(state) != set(range(n)):
            raise ValueError(f"state must be keyed by node ids 0..{n - 1}")
        return np.array([state[i] for i in range(n)], dtype=bool)
    current = np.asarray(state, dtype=bool)
    if current.ndim != 1:
        raise ValueError(f"state must be one flag per node, got shape {current.shape}")
    return current


def advance(
    state,
    adjacency: dict[int, set[int]],
    rng,
    params: Optional[EpidemicParameters] = None,
) -> TickOutcome:
    """
    One synchronous SIS tick.

    Every trial reads `state` (the previous tick) and writes into a fresh
    buffer, so no node sees another node's update from the same tick.
    `state` is never modified.

    Draw order (fixed, so a scripted rng reproduces a tick exactly):
      for each infected node in id order: one recovery draw, then one
      transmission draw per neighbour in id order; then, if the safeguard
      fires, one reseed draw per node in id order.

    Parameters:
        state: {id: bool} or sequence of bool aligned to node id
        adjacency: {id: set of neighbour ids} keyed by exactly the ids in state
        rng: anything with a random() method returning a float in [0, 1)
        params: probabilities; defaults to EpidemicParameters()
    Returns:
        TickOutcome whose state is a bool array indexed by node id
    """
    if params is None:
        params = EpidemicParameters()
    current = _state_array(state)
    n = current.shape[0]
    if set(adjacency) != set(range(n)):
        raise ValueError(f"adjacency must be keyed by node ids 0..{n - 1}")

    next_state = np.zeros(n, dtype=bool)

    for a in np.flatnonzero(current):
        a = int(a)
        # recovery trial: below the recovery probability the node drops out
        if rng.random() >= params.recovery_probability:
            next_state[a] = True
        # transmission trial per neighbour, whatever the neighbour's state
        for b in sorted(adjacency[a]):
            if rng.random() < params.transmission_probability:
                next_state[b] = True

    primary_infected = int(next_state.sum())
    reseeded = False

    # Extinction safeguard: one trial per node of the previous population.
    # Only ever adds infections.
    if primary_infected < params.reseed_threshold:
        reseeded = True
        p_reseed = params.resolve_reseed_probability(n)
        for i in range(n):
            if rng.random() < p_reseed:
                next_state[i] = True

    return TickOutcome(state=next_state, primary_infected=primary_infected, reseeded=reseeded)


def step(state, adjacency: dict[int, set[int]], rng,
         params: Optional[EpidemicParameters] = None) -> np.ndarray:
    """Next infection state; see `advance`."""
    return advance(state, adjacency, rng, params).state


def seed_infections(n: int, rng, probability: float) -> np.ndarray:
    """Initial state: each node infected independently with `probability`."""
    _check_probability("initial infection probability", probability)
    state = np.zeros(n, dtype=bool)
    for i in range(n):
        if rng.random() < probability:
            state[i] = True
    return state


def link_infection(links: list[tuple[int, int]], infected) -> list[tuple[bool, bool]]:
    """Per-link endpoint flags for colouring each end of a line."""
    flags = np.asarray(infected, dtype=bool)
    return [(bool(flags[a]), bool(flags[b])) for a, b in links]


# =============================================================================
# Simulation Engine
# =============================================================================

class NetworkSimulation:
    """
    Owns positions, graph and infection state for one run.

    The graph is built once in `setup()` and never changes; `tick()` is the
    only place the infection state is replaced. A single numpy Generator,
    seeded from `config.master_seed`, drives positions, initial seeding and
    every per-tick trial.
    """

    def __init__(self, config: Optional[SimulationConfig] = None):
        self.config = config if config is not None else SimulationConfig()
        self.config.validate()
        self.params = self.config.epidemic_parameters()
        self.rng = np.random.default_rng(self.config.master_seed)

        # Network (fixed after setup)
        self.positions: Optional[np.ndarray] = None
        self.adjacency: dict[int, set[int]] = {}
        self.links: list[tuple[int, int]] = []

        # State
        self.infected: Optional[np.ndarray] = None
        self.tick_count: int = 0

        # Tracking
        self.prevalence_timeline: list[float] = []
        self.reseed_ticks: list[int] = []

    @property
    def is_setup(self) -> bool:
        return self.infected is not None

    def setup(self):
        """Place nodes, build the k-NN graph, seed the first infections."""
        cfg = self.config
        self.positions = generate_positions(cfg.network_size, self.rng, cfg.extent)
        self.adjacency, self.links = build_knn_graph(self.positions, cfg.k_neighbors)
        self.infected = seed_infections(
            cfg.network_size, self.rng, cfg.initial_infection_probability
        )
        self.tick_count = 0
        self.prevalence_timeline = [self.prevalence()]
        self.reseed_ticks = []
        return self

    def nodes(self) -> list[Node]:
        """Snapshot of the network as Node records."""
        self._require_setup()
        return [
            Node(
                id=i,
                position=tuple(float(c) for c in self.positions[i]),
                infected=bool(self.infected[i]),
                neighbors=set(self.adjacency[i]),
            )
            for i in range(self.config.network_size)
        ]

    def infected_count(self) -> int:
        self._require_setup()
        return int(self.infected.sum())

    def prevalence(self) -> float:
        return self.infected_count() / self.config.network_size

    def tick(self) -> TickOutcome:
        """Advance one tick and swap the new state in whole."""
        self._require_setup()
        outcome = advance(self.infected, self.adjacency, self.rng, self.params)
        self.infected = outcome.state
        self.tick_count += 1
        if outcome.reseeded:
            self.reseed_ticks.append(self.tick_count)
        self.prevalence_timeline.append(self.prevalence())
        return outcome

    def run(self, ticks: int) -> SimulationResult:
        """Set up if needed, advance `ticks` ticks, return the summary."""
        if ticks < 0:
            raise ValueError(f"ticks must be >= 0, got {ticks}")
        if not self.is_setup:
            self.setup()
        for _ in range(ticks):
            self.tick()
        return self._compile_results()

    def render_frame(self) -> RenderFrame:
        self._require_setup()
        return RenderFrame(
            tick=self.tick_count,
            positions=self.positions.copy(),
            links=list(self.links),
            infected=self.infected.copy(),
            link_infected=link_infection(self.links, self.infected),
        )

    def _require_setup(self):
        if not self.is_setup:
            raise RuntimeError("simulation not set up; call setup() first")

    def _compile_results(self) -> SimulationResult:
        timeline = list(self.prevalence_timeline)
        arr = np.array(timeline)
        peak_tick = int(np.argmax(arr))
        return SimulationResult(
            network_size=self.config.network_size,
            ticks=self.tick_count,
            prevalence_timeline=timeline,
            final_prevalence=timeline[-1],
            peak_prevalence=float(arr[peak_tick]),
            peak_tick=peak_tick,
            mean_prevalence=float(arr.mean()),
            reseed_events=len(self.reseed_ticks),
            reseed_ticks=list(self.reseed_ticks),
            network_stats=network_summary(self.adjacency, self.links),
        )


# =============================================================================
# Runners
# =============================================================================

def run_single_simulation(
    network_size: int = DEFAULT_NETWORK_SIZE,
    ticks: int = 500,
    seed: Optional[int] = None,
    **overrides,
) -> SimulationResult:
    """Convenience function to run a single simulation with defaults.

    Extra keyword arguments are SimulationConfig fields.
    """
    config = SimulationConfig(network_size=network_size, master_seed=seed, **overrides)
    return NetworkSimulation(config).run(ticks)


def run_monte_carlo(
    n_runs: int = 100,
    ticks: int = 500,
    network_size: int = DEFAULT_NETWORK_SIZE,
    base_seed: int = 42,
    config_overrides: Optional[dict] = None,
    verbose: bool = True,
) -> MonteCarloResult:
    """
    Run a batch of simulations, one after another.

    Run i uses master_seed = base_seed + i, so any single run can be
    reproduced with run_single_simulation(seed=base_seed + i).
    """
    if n_runs < 1:
        raise ValueError(f"n_runs must be >= 1, got {n_runs}")
    overrides = dict(config_overrides or {})

    results = []
    for i in range(n_runs):
        result = run_single_simulation(
            network_size=network_size, ticks=ticks, seed=base_seed + i, **overrides
        )
        results.append(result)
        if verbose and ((i + 1) % max(1, n_runs // 10) == 0 or i + 1 == n_runs):
            running = np.mean([r.mean_prevalence for r in results])
            print(f"  [{i+1}/{n_runs}] running mean prevalence: {running:.1%}")

    mc = MonteCarloResult(
        n_runs=n_runs,
        base_seed=base_seed,
        network_size=network_size,
        ticks=ticks,
        mean_prevalences=np.array([r.mean_prevalence for r in results]),
        final_prevalences=np.array([r.final_prevalence for r in results]),
        peak_prevalences=np.array([r.peak_prevalence for r in results]),
        reseed_counts=np.array([r.reseed_events for r in results]),
        results=results,
        config_overrides=overrides,
    )
    mc.mean_prevalence = float(mc.mean_prevalences.mean())
    mc.std_prevalence = float(mc.mean_prevalences.std(ddof=1)) if n_runs > 1 else 0.0
    half_width = 1.96 * mc.std_prevalence / math.sqrt(n_runs)
    mc.ci_95_lower = mc.mean_prevalence - half_width
    mc.ci_95_upper = mc.mean_prevalence + half_width
    mc.mean_reseed_events = float(mc.reseed_counts.mean())

    if verbose:
        print(f"\nMonte Carlo complete: {n_runs} runs x {ticks} ticks, {network_size} nodes")
        print(f"  Mean prevalence: {mc.mean_prevalence:.1%} "
              f"(95% CI {mc.ci_95_lower:.1%} .. {mc.ci_95_upper:.1%})")
        print(f"  Mean reseed events per run: {mc.mean_reseed_events:.1f}")
    return mc


# =============================================================================
# Sanity checks
# =============================================================================

def sanity_check_graph(network_size: int = 1000, seed: int = 42):
    """
    GRAPH SANITY CHECK: build one random network and print
    - degree range (every node holds its own k selections)
    - symmetry and self-loop checks
    - clustering, components, mutual link count
    """
    import time as _time

    print("=" * 70)
    print("GRAPH SANITY CHECK: k-NN Network Construction")
    print("=" * 70)

    rng = np.random.default_rng(seed)
    positions = generate_positions(network_size, rng)

    start = _time.perf_counter()
    adjacency, links = build_knn_graph(positions)
    elapsed = _time.perf_counter() - start
    print(f"\nBuilt {network_size}-node graph in {elapsed:.2f}s")

    stats = network_summary(adjacency, links)
    print(f"\n--- Topology ---")
    print(f"  Links (directed selections): {stats['links']} [expected {network_size * K_NEIGHBORS}]")
    print(f"  Mutual links: {stats['mutual_links']}")
    print(f"  Undirected edges: {stats['edges']}")
    print(f"  Degree: min={stats['min_degree']}  mean={stats['mean_degree']:.2f}  "
          f"max={stats['max_degree']}")
    print(f"  Avg clustering: {stats['avg_clustering']:.3f}")
    print(f"  Connected components: {stats['components']}")

    asymmetric = sum(1 for a, nbrs in adjacency.items() for b in nbrs if a not in adjacency[b])
    self_loops = sum(1 for a, nbrs in adjacency.items() if a in nbrs)
    print(f"\n--- Invariants ---")
    print(f"  Asymmetric entries: {asymmetric}")
    print(f"  Self loops: {self_loops}")
    print(f"  Min degree >= k: {stats['min_degree'] >= K_NEIGHBORS}")
    return stats


def sanity_check_epidemic(network_size: int = 500, ticks: int = 1000, seed: int = 42):
    """
    EPIDEMIC SANITY CHECK: run one simulation and print the prevalence
    trace at regular intervals plus safeguard activity.
    """
    print("=" * 70)
    print("EPIDEMIC SANITY CHECK: SIS Dynamics on k-NN Network")
    print("=" * 70)

    result = run_single_simulation(network_size=network_size, ticks=ticks, seed=seed)
    print(f"\n--- Prevalence trace ({network_size} nodes, {ticks} ticks) ---")
    stride = max(1, ticks // 10)
    for t in range(0, len(result.prevalence_timeline), stride):
        print(f"  tick {t:>5}: {result.prevalence_timeline[t]:.1%}")
    print(f"\n  Final: {result.final_prevalence:.1%}  "
          f"Peak: {result.peak_prevalence:.1%} at tick {result.peak_tick}  "
          f"Mean: {result.mean_prevalence:.1%}")
    print(f"  Reseed events: {result.reseed_events}")
    if result.reseed_ticks:
        shown = ", ".join(str(t) for t in result.reseed_ticks[:10])
        more = " ..." if len(result.reseed_ticks) > 10 else ""
        print(f"  First reseed ticks: {shown}{more}")
    return result


def final_validation(network_size: int = 500, ticks: int = 500, n_runs: int = 20):
    """Graph check, epidemic check and a small Monte Carlo batch."""
    sanity_check_graph(network_size=2 * network_size)
    print()
    sanity_check_epidemic(network_size=network_size, ticks=2 * ticks)
    print()
    print("=" * 70)
    print(f"MONTE CARLO: {n_runs} seeds x {ticks} ticks")
    print("=" * 70)
    run_monte_carlo(n_runs=n_runs, ticks=ticks, network_size=network_size)
    print("\n" + "=" * 70)
    print("FINAL VALIDATION COMPLETE")
    print("=" * 70)


if __name__ == "__main__":
    final_validation()
