"""Generate the simulation.ipynb analysis notebook for the node network."""
import json
import sys
import uuid

def cell_id():
    return str(uuid.uuid4())[:8]

# source must be list of lines with \n
def _split_source(source):
    lines = source.split('\n')
    src = [l + '\n' for l in lines[:-1]]
    if lines[-1]:
        src.append(lines[-1])
    return src

def code_lines(source):
    return {"cell_type": "code", "execution_count": None, "metadata": {}, "outputs": [],
            "source": _split_source(source), "id": cell_id()}

def md_lines(source):
    return {"cell_type": "markdown", "metadata": {}, "source": _split_source(source), "id": cell_id()}


def build_cells():
    cells = []

    # =====================================================================
    # Cell 0: Title
    # =====================================================================
    cells.append(md_lines("""# Node Network: k-NN Graph & SIS Epidemic
### Single-run traces, topology and Monte Carlo prevalence"""))

    # =====================================================================
    # Cell 1: Setup & Imports
    # =====================================================================
    cells.append(code_lines(r"""# Section 0: Setup & Imports
import os, time, warnings
from datetime import datetime
warnings.filterwarnings('ignore')

import numpy as np
import matplotlib
# Use Agg backend when not in Jupyter
try:
    get_ipython()
except NameError:
    matplotlib.use('Agg')
import matplotlib.pyplot as plt
import networkx as nx
import plotly.graph_objects as go

from simulation import (
    SimulationConfig, NetworkSimulation, K_NEIGHBORS,
    run_monte_carlo, to_networkx,
)

DARK_STYLE = {
    'figure.facecolor': '#050508', 'axes.facecolor': '#050508',
    'axes.edgecolor': '#1a1a2a', 'axes.labelcolor': '#909098',
    'text.color': '#b0b0b8', 'xtick.color': '#606068', 'ytick.color': '#606068',
    'grid.color': '#111118', 'grid.alpha': 0.25, 'grid.linewidth': 0.4,
    'grid.linestyle': ':', 'lines.linewidth': 1.2,
    'font.family': 'monospace', 'font.size': 9, 'figure.dpi': 150,
}

C_HEALTHY  = '#6699cc'
C_INFECTED = '#cc6666'
C_RESEED   = '#cc9944'
C_LINK     = '#333344'

RUN_TIMESTAMP = datetime.now().strftime('%Y-%m-%d_%H%M%S')
GRAPHS_DIR = os.path.join('graphs', f'run_{RUN_TIMESTAMP}')
os.makedirs(GRAPHS_DIR, exist_ok=True)

def save_fig(fig, num, name):
    path = os.path.join(GRAPHS_DIR, f'graph_{num:02d}_{name}.png')
    fig.savefig(path, dpi=150, bbox_inches='tight', facecolor=fig.get_facecolor())
    print(f'  [saved] {path}')
    plt.close(fig)

print(f'Setup complete. Output: {GRAPHS_DIR}/')"""))

    # =====================================================================
    # Cell 2-3: Single run
    # =====================================================================
    cells.append(md_lines("## Section 1: Single-Run Demonstration"))
    cells.append(code_lines(r"""# 1000 nodes, 2000 ticks, fixed seed
t0 = time.perf_counter()
sim = NetworkSimulation(SimulationConfig(network_size=1000, master_seed=42))
result = sim.run(2000)
frame = sim.render_frame()
print(f"  Done in {time.perf_counter()-t0:.1f}s | final={result.final_prevalence:.1%} "
      f"| peak={result.peak_prevalence:.1%} @ tick {result.peak_tick} "
      f"| reseeds={result.reseed_events}")
print(f"  Topology: {result.network_stats}")"""))

    # =====================================================================
    # Cell 4: Graph #1: 3D network
    # =====================================================================
    cells.append(code_lines(r"""# Graph #1: Network in 3D, coloured by infection at the last tick
xs, ys, zs = [], [], []
for a, b in frame.links:
    for idx in (a, b):
        xs.append(frame.positions[idx, 0]); ys.append(frame.positions[idx, 1]); zs.append(frame.positions[idx, 2])
    xs.append(None); ys.append(None); zs.append(None)

colors = [C_INFECTED if f else C_HEALTHY for f in frame.infected]
fig_p = go.Figure()
fig_p.add_trace(go.Scatter3d(x=xs, y=ys, z=zs, mode='lines', name='Links',
                             line=dict(color=C_LINK, width=1), hoverinfo='none'))
fig_p.add_trace(go.Scatter3d(x=frame.positions[:, 0], y=frame.positions[:, 1], z=frame.positions[:, 2],
                             mode='markers', name='Nodes', marker=dict(size=2.5, color=colors)))
fig_p.update_layout(title=f'Graph #1: Network at tick {frame.tick}', template='plotly_dark',
                    paper_bgcolor='#050508', showlegend=False)
fig_p.show()
fig_p.write_html(os.path.join(GRAPHS_DIR, 'graph_01_network.html'), include_plotlyjs='cdn')"""))

    # =====================================================================
    # Cell 5: Graph #2: prevalence curve
    # =====================================================================
    cells.append(code_lines(r"""# Graph #2: Prevalence over time, safeguard activations marked
with plt.rc_context(DARK_STYLE):
    fig, ax = plt.subplots(figsize=(10, 5))
    ax.plot([p * 100 for p in result.prevalence_timeline], color=C_INFECTED, label='Infected %')
    for t in result.reseed_ticks:
        ax.axvline(t, color=C_RESEED, alpha=0.3, linewidth=0.6)
    ax.set_xlabel('Tick'); ax.set_ylabel('Population %')
    ax.set_title('Graph #2: Prevalence (reseed ticks in amber)'); ax.legend(); ax.grid(True)
    save_fig(fig, 2, 'prevalence')"""))

    # =====================================================================
    # Cell 6: Graph #3: degree distribution
    # =====================================================================
    cells.append(code_lines(r"""# Graph #3: Degree distribution (own k selections plus incoming ones)
G = to_networkx(sim.adjacency, sim.positions)
degrees = [d for _, d in G.degree()]
with plt.rc_context(DARK_STYLE):
    fig, ax = plt.subplots(figsize=(8, 5))
    ax.hist(degrees, bins=range(K_NEIGHBORS, max(degrees) + 2), color=C_HEALTHY, align='left')
    ax.set_xlabel('Degree'); ax.set_ylabel('Nodes')
    ax.set_title(f'Graph #3: Degree Distribution (k={K_NEIGHBORS})'); ax.grid(True)
    save_fig(fig, 3, 'degree_distribution')"""))

    # =====================================================================
    # Cell 7-8: Monte Carlo
    # =====================================================================
    cells.append(md_lines("## Section 2: Monte Carlo"))
    cells.append(code_lines(r"""# Graph #4: Mean prevalence across seeds
mc = run_monte_carlo(n_runs=100, ticks=1000, network_size=500, base_seed=42)
with plt.rc_context(DARK_STYLE):
    fig, ax = plt.subplots(figsize=(8, 5))
    ax.hist(mc.mean_prevalences * 100, bins=20, color=C_INFECTED)
    ax.axvline(mc.mean_prevalence * 100, color='#ffffff', linestyle='--', label='Mean')
    ax.set_xlabel('Mean prevalence %'); ax.set_ylabel('Runs')
    ax.set_title('Graph #4: Monte Carlo Mean Prevalence'); ax.legend(); ax.grid(True)
    save_fig(fig, 4, 'mc_prevalence')"""))

    # =====================================================================
    # Cell 9: Key findings
    # =====================================================================
    cells.append(code_lines(r"""print("KEY FINDINGS")
print("=" * 60)
print(f"\n1. Mean prevalence: {mc.mean_prevalence:.1%} (95% CI {mc.ci_95_lower:.1%} .. {mc.ci_95_upper:.1%})")
print(f"\n2. Mean reseed events per run: {mc.mean_reseed_events:.1f}")
print(f"\n3. Mean degree: {result.network_stats['mean_degree']:.2f}, "
      f"clustering: {result.network_stats['avg_clustering']:.3f}")
print(f"\n4. Output saved to: {GRAPHS_DIR}/")"""))

    return cells


def build_notebook():
    """Notebook JSON (nbformat 4) as a dict."""
    return {
        "nbformat": 4,
        "nbformat_minor": 5,
        "metadata": {
            "kernelspec": {
                "display_name": "Python 3",
                "language": "python",
                "name": "python3"
            },
            "language_info": {
                "name": "python",
                "version": "3.12.0"
            }
        },
        "cells": build_cells()
    }


def write_notebook(path="simulation.ipynb"):
    notebook = build_notebook()
    with open(path, "w", encoding="utf-8") as f:
        json.dump(notebook, f, indent=1, ensure_ascii=False)
    print(f"Notebook written with {len(notebook['cells'])} cells")
    return notebook


if __name__ == "__main__":
    write_notebook(sys.argv[1] if len(sys.argv) > 1 else "simulation.ipynb")
