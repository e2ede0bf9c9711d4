"""
tests/test_engine.py - Simulation Engine Tests

Validates setup, tick bookkeeping, render frames and the run helpers.
"""

import copy
from typing import Optional, get_type_hints

import numpy as np
import pytest

from simulation import (
    EpidemicParameters,
    InsufficientNodes,
    InvalidProbability,
    NetworkSimulation,
    SimulationConfig,
    SimulationResult,
    advance,
    final_validation,
    network_summary,
    run_monte_carlo,
    run_single_simulation,
    sanity_check_epidemic,
    sanity_check_graph,
    step,
)


def _sim(n=150, seed=42, **overrides):
    return NetworkSimulation(SimulationConfig(network_size=n, master_seed=seed, **overrides))


class TestConfig:
    """Construction-time validation."""

    def test_defaults(self):
        cfg = SimulationConfig()
        assert cfg.k_neighbors == 6
        assert cfg.recovery_probability == 0.04
        assert cfg.transmission_probability == 0.01
        assert cfg.reseed_threshold == 10

    def test_too_few_nodes(self):
        with pytest.raises(InsufficientNodes):
            NetworkSimulation(SimulationConfig(network_size=6))

    def test_bad_probability(self):
        with pytest.raises(InvalidProbability):
            NetworkSimulation(SimulationConfig(transmission_probability=-0.1))

    def test_initial_infected_above_size(self):
        with pytest.raises(InvalidProbability):
            NetworkSimulation(SimulationConfig(network_size=20, initial_infected=30))

    def test_bad_extent(self):
        with pytest.raises(ValueError):
            NetworkSimulation(SimulationConfig(extent=0.0))

    def test_parameters_follow_config(self):
        cfg = SimulationConfig(recovery_probability=0.2, reseed_probability=0.5)
        params = cfg.epidemic_parameters()
        assert params.recovery_probability == 0.2
        assert params.reseed_probability == 0.5


class TestSetup:
    """Positions, graph and initial infections."""

    def test_positions_in_extent(self):
        sim = _sim(extent=2.0).setup()
        assert sim.positions.shape == (150, 3)
        assert (np.abs(sim.positions) <= 2.0).all()

    def test_graph_built(self):
        sim = _sim().setup()
        assert len(sim.links) == 150 * 6
        assert sorted(sim.adjacency) == list(range(150))

    def test_initial_state(self):
        sim = _sim().setup()
        assert sim.infected.shape == (150,)
        assert sim.infected.dtype == bool
        assert sim.tick_count == 0
        assert sim.prevalence_timeline == [sim.prevalence()]

    def test_no_initial_infections(self):
        sim = _sim(initial_infected=0).setup()
        assert sim.infected_count() == 0

    def test_same_seed_same_network(self):
        a = _sim(seed=7).setup()
        b = _sim(seed=7).setup()
        assert np.array_equal(a.positions, b.positions)
        assert a.links == b.links
        assert np.array_equal(a.infected, b.infected)

    def test_nodes_snapshot(self):
        sim = _sim().setup()
        nodes = sim.nodes()
        assert [n.id for n in nodes] == list(range(150))
        assert nodes[3].neighbors == sim.adjacency[3]
        assert nodes[3].infected == bool(sim.infected[3])
        assert nodes[3].position == pytest.approx(tuple(sim.positions[3]))

    def test_requires_setup(self):
        sim = _sim()
        with pytest.raises(RuntimeError):
            sim.tick()
        with pytest.raises(RuntimeError):
            sim.render_frame()


class TestTicks:
    """Tick bookkeeping and immutability of the graph."""

    def test_tick_advances(self):
        sim = _sim().setup()
        outcome = sim.tick()
        assert sim.tick_count == 1
        assert len(sim.prevalence_timeline) == 2
        assert np.array_equal(sim.infected, outcome.state)

    def test_graph_unchanged_by_ticks(self):
        sim = _sim().setup()
        adjacency = copy.deepcopy(sim.adjacency)
        links = list(sim.links)
        positions = sim.positions.copy()
        sim.run(50)
        assert sim.adjacency == adjacency
        assert sim.links == links
        assert np.array_equal(sim.positions, positions)

    def test_reseed_recorded(self):
        # nobody infected at start and nobody recovers into infection: safeguard fires at tick 1
        sim = _sim(initial_infected=0).setup()
        outcome = sim.tick()
        assert outcome.reseeded
        assert sim.reseed_ticks == [1]

    def test_never_extinct_after_reseed_with_certain_trial(self):
        sim = _sim(initial_infected=0, reseed_probability=1.0).setup()
        sim.tick()
        assert sim.infected.all()


class TestRenderFrame:
    """Data handed to the renderer."""

    def test_frame_contents(self):
        sim = _sim().setup()
        sim.run(5)
        frame = sim.render_frame()
        assert frame.tick == 5
        assert frame.positions.shape == (150, 3)
        assert frame.infected.shape == (150,)
        assert len(frame.link_infected) == len(frame.links) == 900
        for (a, b), (fa, fb) in zip(frame.links, frame.link_infected):
            assert fa == bool(frame.infected[a])
            assert fb == bool(frame.infected[b])

    def test_frame_is_a_copy(self):
        sim = _sim().setup()
        infected = sim.infected.copy()
        frame = sim.render_frame()
        frame.infected[:] = ~frame.infected
        frame.positions[:] = 0.0
        assert not np.array_equal(sim.positions, frame.positions)
        assert np.array_equal(sim.infected, infected)


class TestRun:
    """run, run_single_simulation and run_monte_carlo."""

    def test_result_fields(self):
        result = _sim().run(100)
        assert isinstance(result, SimulationResult)
        assert result.ticks == 100
        assert len(result.prevalence_timeline) == 101
        assert all(0.0 <= p <= 1.0 for p in result.prevalence_timeline)
        assert result.final_prevalence == result.prevalence_timeline[-1]
        assert result.peak_prevalence == max(result.prevalence_timeline)
        assert result.prevalence_timeline[result.peak_tick] == result.peak_prevalence
        assert result.reseed_events == len(result.reseed_ticks)
        assert result.network_stats["links"] == 900

    def test_run_zero_ticks(self):
        result = _sim().run(0)
        assert result.ticks == 0
        assert len(result.prevalence_timeline) == 1

    def test_negative_ticks(self):
        with pytest.raises(ValueError):
            _sim().run(-1)

    def test_run_continues(self):
        sim = _sim()
        sim.run(10)
        result = sim.run(10)
        assert result.ticks == 20

    def test_single_simulation_reproducible(self):
        a = run_single_simulation(network_size=100, ticks=60, seed=3)
        b = run_single_simulation(network_size=100, ticks=60, seed=3)
        assert a.prevalence_timeline == b.prevalence_timeline
        assert a.reseed_ticks == b.reseed_ticks

    def test_single_simulation_overrides(self):
        result = run_single_simulation(network_size=100, ticks=10, seed=3,
                                       initial_infected=0, reseed_probability=0.0)
        assert result.final_prevalence == 0.0
        assert result.reseed_events == 10

    def test_monte_carlo(self):
        mc = run_monte_carlo(n_runs=3, ticks=30, network_size=80, base_seed=10, verbose=False)
        assert mc.n_runs == 3
        assert len(mc.mean_prevalences) == len(mc.reseed_counts) == len(mc.results) == 3
        assert mc.ci_95_lower <= mc.mean_prevalence <= mc.ci_95_upper
        assert mc.mean_prevalence == pytest.approx(np.mean(mc.mean_prevalences))

    def test_monte_carlo_run_reproducible(self):
        mc = run_monte_carlo(n_runs=2, ticks=30, network_size=80, base_seed=10, verbose=False)
        again = run_single_simulation(network_size=80, ticks=30, seed=11)
        assert mc.results[1].prevalence_timeline == again.prevalence_timeline

    def test_monte_carlo_prints(self, capsys):
        run_monte_carlo(n_runs=2, ticks=5, network_size=40, verbose=True)
        out = capsys.readouterr().out
        assert "Monte Carlo complete" in out

    def test_monte_carlo_needs_runs(self):
        with pytest.raises(ValueError):
            run_monte_carlo(n_runs=0, verbose=False)


class TestReports:
    """Printed sanity reports at small sizes."""

    def test_sanity_check_graph(self, capsys):
        stats = sanity_check_graph(network_size=60, seed=1)
        out = capsys.readouterr().out
        assert "GRAPH SANITY CHECK" in out
        assert "Self loops: 0" in out
        assert "Asymmetric entries: 0" in out
        assert stats["links"] == 60 * 6
        assert stats["min_degree"] >= 6

    def test_sanity_check_epidemic(self, capsys):
        result = sanity_check_epidemic(network_size=60, ticks=20, seed=1)
        out = capsys.readouterr().out
        assert "EPIDEMIC SANITY CHECK" in out
        assert "tick     0:" in out
        assert f"Reseed events: {result.reseed_events}" in out
        assert result.ticks == 20

    def test_final_validation(self, capsys):
        final_validation(network_size=40, ticks=10, n_runs=2)
        out = capsys.readouterr().out
        assert "MONTE CARLO: 2 seeds x 10 ticks" in out
        assert "FINAL VALIDATION COMPLETE" in out


class TestSignatures:
    """Parameters defaulting to None are annotated Optional."""

    def test_optional_defaults(self):
        assert get_type_hints(advance)["params"] == Optional[EpidemicParameters]
        assert get_type_hints(step)["params"] == Optional[EpidemicParameters]
        assert get_type_hints(network_summary)["links"] == Optional[list]
        assert get_type_hints(run_monte_carlo)["config_overrides"] == Optional[dict]
        hints = get_type_hints(NetworkSimulation.__init__)
        assert hints["config"] == Optional[SimulationConfig]
