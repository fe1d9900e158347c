"""
I/O utilities for reading D*+ candidate trees with uproot

The input is a flat tree with one entry per event. Event-level quantities
are scalars; tracks, D0 candidates, D*+ candidates and generated particles
are jagged branches indexed by position within the event.
"""

import logging

import awkward as ak
import uproot

from dstarpol.analysis.exceptions import BranchMissingError, DataLoadError
from dstarpol.analysis.models import (
    CascadeCandidate,
    Event,
    McHeader,
    McParticle,
    PrimaryVertex,
    Track,
    TwoProngCandidate,
)

logger = logging.getLogger(__name__)

DEFAULT_TREE_NAME = "DstarTree"

EVENT_BRANCHES = [
    "event_number",
    "vtx_x",
    "vtx_y",
    "vtx_z",
    "vtx_ncontrib",
    "magnetic_field",
    "centrality",
    "trigger_fired",
    "is_pileup",
]

TRACK_BRANCHES = [
    "trk_px",
    "trk_py",
    "trk_pz",
    "trk_charge",
    "trk_label",
    "trk_pv_contributor",
]

CANDIDATE_BRANCHES = [
    "d0_prong0",
    "d0_prong1",
    "dstar_soft",
    "dstar_d0",
]

MC_BRANCHES = [
    "mc_pdg",
    "mc_px",
    "mc_py",
    "mc_pz",
    "mc_mother",
    "mc_daughter_first",
    "mc_daughter_last",
    "mc_pileup",
    "mc_vtx_z",
]

DEFAULT_BRANCHES = EVENT_BRANCHES + TRACK_BRANCHES + CANDIDATE_BRANCHES


def _find_tree(file, tree_name=DEFAULT_TREE_NAME):
    """
    Detect the candidate TTree inside the ROOT file.

    Logic:
    1. If `tree_name` exists, use it.
    2. Otherwise, search for exactly one TTree.
    3. Otherwise, search for a TTree inside subdirectories.
    """
    keys = file.keys()
    if tree_name in keys:
        return file[tree_name]
    if f"{tree_name};1" in keys:
        return file[f"{tree_name};1"]

    tt_keys = [k for k, v in file.classnames().items() if v == "TTree"]
    if len(tt_keys) == 1:
        return file[tt_keys[0]]

    for key in keys:
        obj = file[key]
        if not hasattr(obj, "keys"):
            continue
        for subkey in obj.keys():
            full = f"{key}/{subkey}"
            if file[full].classname == "TTree":
                return file[full]

    raise DataLoadError(f"No TTree found in file {file.file_path}")


def load_events(filename, branches=None, tree_name=DEFAULT_TREE_NAME, optional_branches=()):
    """
    Load branches into an Awkward Array.

    Every branch in `branches` must exist. Branches in `optional_branches`
    are read when present and logged when absent.
    """
    if branches is None:
        branches = DEFAULT_BRANCHES

    with uproot.open(filename) as f:
        tree = _find_tree(f, tree_name)
        available = set(tree.keys())
        for name in branches:
            if name not in available:
                raise BranchMissingError(name, filename)
        missing = [name for name in optional_branches if name not in available]
        if missing:
            logger.warning("%s: optional branches not found: %s", filename, ", ".join(missing))
        to_read = list(branches) + [b for b in optional_branches if b in available]
        arrays = tree.arrays(to_read, library="ak")

    return arrays


def _mc_particles(record):
    n = len(record["mc_pdg"])
    particles = []
    for i in range(n):
        first = int(record["mc_daughter_first"][i])
        last = int(record["mc_daughter_last"][i])
        daughters = tuple(range(first, last + 1)) if 0 <= first <= last else ()
        particles.append(
            McParticle(
                label=i,
                pdg=int(record["mc_pdg"][i]),
                px=float(record["mc_px"][i]),
                py=float(record["mc_py"][i]),
                pz=float(record["mc_pz"][i]),
                mother=int(record["mc_mother"][i]),
                daughters=daughters,
                from_out_of_bunch_pileup=bool(record["mc_pileup"][i]),
            )
        )
    return particles


def build_event(record, read_mc=False):
    """
    Convert one entry (a dict of Python values) into an Event.

    A negative contributor count means no primary vertex was reconstructed.
    MC particles and header are only attached when all MC branches exist.
    """
    ncontrib = int(record["vtx_ncontrib"])
    vertex = None
    if ncontrib >= 0:
        vertex = PrimaryVertex(
            float(record["vtx_x"]), float(record["vtx_y"]), float(record["vtx_z"]), ncontrib
        )

    tracks = {}
    for i, (px, py, pz, charge, label, contrib) in enumerate(
        zip(
            record["trk_px"],
            record["trk_py"],
            record["trk_pz"],
            record["trk_charge"],
            record["trk_label"],
            record["trk_pv_contributor"],
        )
    ):
        tracks[i] = Track(i, float(px), float(py), float(pz), int(charge), int(label), bool(contrib))

    if len(record["d0_prong0"]) != len(record["d0_prong1"]):
        raise DataLoadError(f"event {record['event_number']}: D0 prong branches differ in length")
    if len(record["dstar_soft"]) != len(record["dstar_d0"]):
        raise DataLoadError(f"event {record['event_number']}: D*+ branches differ in length")

    two_prongs = [
        TwoProngCandidate((int(p0), int(p1)))
        for p0, p1 in zip(record["d0_prong0"], record["d0_prong1"])
    ]
    candidates = [
        CascadeCandidate(int(soft), int(d0))
        for soft, d0 in zip(record["dstar_soft"], record["dstar_d0"])
    ]

    mc_particles = mc_header = None
    if read_mc and all(name in record for name in MC_BRANCHES):
        mc_particles = _mc_particles(record)
        mc_header = McHeader(float(record["mc_vtx_z"]))

    return Event(
        event_number=int(record["event_number"]),
        primary_vertex=vertex,
        magnetic_field=float(record["magnetic_field"]),
        centrality=float(record["centrality"]),
        trigger_fired=bool(record["trigger_fired"]),
        is_pileup=bool(record["is_pileup"]),
        tracks=tracks,
        two_prongs=two_prongs,
        candidates=candidates,
        mc_particles=mc_particles,
        mc_header=mc_header,
    )


def iter_events(arrays, read_mc=False):
    """Yield Event objects from an Awkward Array of tree entries."""
    for record in ak.to_list(arrays):
        yield build_event(record, read_mc=read_mc)


def read_events(filename, read_mc=False, tree_name=DEFAULT_TREE_NAME):
    """Load a file and return its events as a list."""
    optional = MC_BRANCHES if read_mc else ()
    arrays = load_events(filename, tree_name=tree_name, optional_branches=optional)
    return list(iter_events(arrays, read_mc=read_mc))
