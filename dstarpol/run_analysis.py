"""
Main entry point for the D*+ polarization analysis.

Reads flat D*+ candidate trees, selects D*+ -> D0 pi+ candidates, computes
the soft-pion angular observables in the D*+ rest frame and fills the
sparse polarization histograms per truth origin (all / fromC / fromB / bkg),
plus the generated-level acceptance histograms for MC.

Supports serial execution, local multi-process parallelism via
ProcessPoolExecutor, and a local Dask cluster.
"""

import argparse
import glob
import logging
import multiprocessing
import os
import time
from concurrent.futures import ProcessPoolExecutor, as_completed

import matplotlib.pyplot as plt
import numpy as np
import yaml

from dstarpol.analysis.exceptions import ConfigurationError
from dstarpol.analysis.io import DEFAULT_TREE_NAME, read_events
from dstarpol.analysis.physics import DEFAULT_MASS_TABLE, PDG_D0, PDG_DSTAR
from dstarpol.analysis.pipeline import DstarPolarizationAnalysis

logger = logging.getLogger(__name__)

EXECUTORS = ("serial", "process", "dask")
COSINE_AXES = ("cos_theta_beam", "cos_theta_production", "cos_theta_helicity")


# Argument parsing and config loading
def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="D*+ polarization analysis with per-file parallel processing."
    )
    parser.add_argument(
        "--config",
        default="config/config.yaml",
        help="Path to YAML configuration file.",
    )
    parser.add_argument(
        "--n-workers",
        type=int,
        default=1,
        help="Number of workers for parallel file processing.",
    )
    parser.add_argument(
        "--executor",
        choices=EXECUTORS,
        default=None,
        help="Execution backend (default: from config, else serial for one worker).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level.",
    )
    return parser.parse_args(argv)


def load_config(path):
    with open(path) as f:
        config = yaml.safe_load(f)
    if not isinstance(config, dict):
        raise ConfigurationError(f"{path} does not contain a YAML mapping")
    return config


# Per-file analysis
def process_file(filename, config):
    """
    Per-file D*+ analysis.

    Steps:
      1. Read the events of the file.
      2. Apply the event selection and, for MC, fill the generated level.
      3. Select each D*+ candidate, compute its angular observables and
         deposit them in the channel of its truth origin.

    Returns (HistogramSet, info).
    """
    analysis = DstarPolarizationAnalysis.from_config(config)
    events = read_events(
        filename,
        read_mc=analysis.read_mc,
        tree_name=config.get("tree_name", DEFAULT_TREE_NAME),
    )
    histograms = analysis.process_events(events)

    info = {
        "filename": filename,
        "n_events": histograms.counter("events_read"),
        "n_selected_events": histograms.counter("events_selected"),
        "n_candidates": histograms.counter("candidates"),
        "n_selected_candidates": histograms.counter("candidates_selected"),
    }
    return histograms, info


def safe_process_file(fname, config):
    """
    Wrapper so that a bad file doesn't kill the whole job.
    """
    try:
        return process_file(fname, config)
    except Exception as e:
        logger.warning("Error in file %s: %s", fname, e)
        return None


# Execution backends
def run_serial(files, config):
    results = []
    for i, fname in enumerate(files, start=1):
        out = safe_process_file(fname, config)
        if out is not None:
            results.append(out)
        print(f"[{i}/{len(files)}] Completed {fname}")
    return results


def run_process_pool(files, config, n_workers):
    results = []
    with ProcessPoolExecutor(max_workers=n_workers) as pool:
        future_to_file = {
            pool.submit(safe_process_file, fname, config): fname
            for fname in files
        }
        for i, future in enumerate(as_completed(future_to_file), start=1):
            fname = future_to_file[future]
            try:
                out = future.result()
            except Exception as e:
                logger.error("%s: %s", fname, e)
                continue
            if out is not None:
                results.append(out)
            print(f"[{i}/{len(files)}] Completed {fname}")
    return results


def run_dask(files, config, n_workers):
    from dstarpol.distributed.executor import create_local_client, run_files

    client = create_local_client(n_workers=n_workers)
    try:
        pairs = run_files(client, files, safe_process_file, config)
    finally:
        client.close()
    results = []
    for i, (fname, out) in enumerate(pairs, start=1):
        if out is not None:
            results.append(out)
        print(f"[{i}/{len(files)}] Completed {fname}")
    return results


def merge_results(results):
    """Sum the per-file HistogramSets bin by bin. Returns (total, infos)."""
    if not results:
        raise RuntimeError("No successful per-file results; nothing to merge.")
    hists, infos = zip(*results)
    total = hists[0]
    for h in hists[1:]:
        total += h
    return total, list(infos)


# Outputs
def save_outputs(histograms, outdir):
    """
    Write the merged histograms to `outdir`.

    - counters.npz: counter labels and values
    - <name>.npz per sparse histogram: populated bin indices (with flow
      offset of the axis), weights and axis edges
    - <level>_<channel>_<axis>_{counts,edges}.npy: 1-D projections
    """
    os.makedirs(outdir, exist_ok=True)

    labels = list(histograms.counters.axes[0])
    np.savez(
        os.path.join(outdir, "counters.npz"),
        labels=np.array(labels),
        values=histograms.counters.values(),
    )

    for level, channel, sparse in histograms.histograms():
        bins, weights = sparse.to_arrays()
        edges = {f"edges_{ax.name}": ax.edges for ax in sparse.axes}
        np.savez(
            os.path.join(outdir, f"{sparse.name}.npz"),
            bins=bins,
            weights=weights,
            axis_names=np.array(sparse.axis_names),
            **edges,
        )

    for level, channel, sparse in histograms.histograms():
        for name in sparse.axis_names:
            if name not in ("delta_mass",) + COSINE_AXES:
                continue
            proj = sparse.project(name)
            stem = f"{level}_{channel}_{name}"
            np.save(os.path.join(outdir, f"{stem}_counts.npy"), proj.values())
            np.save(os.path.join(outdir, f"{stem}_edges.npy"), proj.axes[0].edges)


def reco_delta_mass(histograms):
    """Delta-mass counts and edges summed over the reconstructed channels."""
    counts = None
    edges = None
    for pair in histograms.reco.values():
        proj = pair.sparse.project("delta_mass")
        counts = proj.values() if counts is None else counts + proj.values()
        edges = proj.axes[0].edges
    return counts, edges


def _step_with_errors(ax, edges, counts, label):
    centers = 0.5 * (edges[:-1] + edges[1:])
    ax.step(edges[:-1], counts, where="post", label=label)
    ax.errorbar(
        centers,
        counts,
        yerr=np.sqrt(counts),
        fmt=".",
        markersize=2,
        linewidth=0.5,
    )


def make_plots(histograms, outdir, mass_table=DEFAULT_MASS_TABLE):
    delta_mass_pdg = mass_table[PDG_DSTAR] - mass_table[PDG_D0]

    # Delta-mass per reconstructed channel
    fig, ax = plt.subplots()
    for channel, pair in histograms.reco.items():
        if pair.sparse.sum() == 0:
            continue
        proj = pair.sparse.project("delta_mass")
        _step_with_errors(ax, proj.axes[0].edges, proj.values(), channel)
    ax.axvline(delta_mass_pdg, linestyle="--", label=r"PDG $\Delta M$")
    ax.set_xlabel(r"$M(K\pi\pi) - M(K\pi)$ [GeV/$c^2$]")
    ax.set_ylabel("Candidates")
    ax.set_title("D*+ mass difference")
    ax.legend(loc="best", frameon=False)
    fig.tight_layout()
    fig.savefig(os.path.join(outdir, "delta_mass.png"))
    plt.close(fig)

    # |cos(theta*)| per reference axis, all reconstructed channels together
    for name in COSINE_AXES:
        fig, ax = plt.subplots()
        for channel, pair in histograms.reco.items():
            if pair.sparse.sum() == 0:
                continue
            proj = pair.sparse.project(name)
            _step_with_errors(ax, proj.axes[0].edges, proj.values(), channel)
        ax.set_xlabel(rf"$|\cos(\theta^*)|$ ({name.rsplit('_', 1)[-1]})")
        ax.set_ylabel("Candidates")
        ax.set_ylim(bottom=0)
        ax.legend(loc="best", frameon=False)
        fig.tight_layout()
        fig.savefig(os.path.join(outdir, f"{name}.png"))
        plt.close(fig)

    # theta* vs phi* for every populated channel
    for level, channel, sparse in histograms.histograms():
        if "phi_beam" not in sparse.axis_names or sparse.sum() == 0:
            continue
        proj = sparse.project("theta_beam", "phi_beam")
        xedges = proj.axes[0].edges
        yedges = proj.axes[1].edges

        fig, ax = plt.subplots()
        X, Y = np.meshgrid(xedges, yedges)
        pcm = ax.pcolormesh(X, Y, proj.values().T)
        ax.set_xlabel(r"$\theta^*$ (beam)")
        ax.set_ylabel(r"$\varphi^*$ (beam)")
        ax.set_title(f"{level} - {channel}")
        fig.colorbar(pcm, ax=ax, label="Entries")
        fig.tight_layout()
        fig.savefig(os.path.join(outdir, f"theta_phi_{level}_{channel}.png"))
        plt.close(fig)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config(args.config)

    # fail on a bad configuration before touching any file
    analysis = DstarPolarizationAnalysis.from_config(config)

    pattern = os.path.join(config["data_dir"], config["file_pattern"])
    files = sorted(glob.glob(pattern))

    if not files:
        raise RuntimeError(f"No input files found for pattern {pattern}")

    print(f"Found {len(files)} input files.")

    analysis_cfg = config.get("analysis", {})
    plots = analysis_cfg.get("make_plots", True)

    # Decide how many workers to use
    n_workers = config.get("n_workers", args.n_workers)
    max_procs = multiprocessing.cpu_count() or 1
    if n_workers > max_procs:
        logger.info(
            "Requested %d workers but only %d cores available; using %d.",
            n_workers, max_procs, max_procs,
        )
        n_workers = max_procs

    executor = args.executor or config.get("executor")
    if executor is None:
        executor = "serial" if n_workers == 1 else "process"
    if executor not in EXECUTORS:
        raise ConfigurationError(f"unknown executor '{executor}', expected one of {EXECUTORS}")

    print(f"Using {executor} executor with {n_workers} worker(s).")

    start_time = time.perf_counter()

    if executor == "serial":
        results = run_serial(files, config)
    elif executor == "process":
        results = run_process_pool(files, config, n_workers)
    else:
        results = run_dask(files, config, n_workers)

    wall_time = time.perf_counter() - start_time

    total, infos = merge_results(results)

    outdir = config["output_dir"]
    save_outputs(total, outdir)
    if plots:
        make_plots(total, outdir, analysis.mass_table)

    counts, edges = reco_delta_mass(total)
    centers = 0.5 * (edges[:-1] + edges[1:])
    total_entries = counts.sum()
    if total_entries > 0:
        mean_dm = np.sum(centers * counts) / total_entries
        rms_dm = np.sqrt(np.sum(((centers - mean_dm) ** 2) * counts) / total_entries)
    else:
        mean_dm = float("nan")
        rms_dm = float("nan")

    total_events = total.counter("events_read")

    # Final summary
    print(f"Processed {len(infos)} files.")
    print(f"Events read: {total_events}, selected: {total.counter('events_selected')}")
    print(
        f"D*+ candidates: {total.counter('candidates')}, "
        f"selected: {total.counter('candidates_selected')}"
    )
    for channel, pair in total.reco.items():
        print(f"  reco {channel:>5}: {int(pair.sparse.sum())} entries")
    for channel, pair in total.gen.items():
        print(f"  gen  {channel:>5}: {int(pair.sparse.sum())} entries")
    print(f"<Delta M> = {mean_dm * 1000:.3f} MeV/c^2, RMS = {rms_dm * 1000:.3f} MeV/c^2")
    print(f"Total wall time: {wall_time:.2f} s")
    if wall_time > 0:
        print(f"Average processing rate: {total_events / wall_time:.1f} events/s")
    print(f"Saved outputs to {outdir}")


if __name__ == "__main__":
    main()
