import math
import os
import sys

import pytest

# Absolute path to project root
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# Prepend the project root so the local dstarpol package overrides site-packages
sys.path.insert(0, PROJECT_ROOT)


def two_body(parent, m1, m2, direction):
    """
    Lab four-vectors of a two-body decay of the four-vector `parent`, with
    daughter 1 emitted along `direction` in the parent rest frame.
    """
    import vector

    M = parent.mass
    p_star = math.sqrt((M * M - (m1 + m2) ** 2) * (M * M - (m1 - m2) ** 2)) / (2 * M)
    n = math.sqrt(sum(c * c for c in direction))
    ux, uy, uz = (c / n for c in direction)
    d1 = vector.obj(px=p_star * ux, py=p_star * uy, pz=p_star * uz, mass=m1)
    d2 = vector.obj(px=-p_star * ux, py=-p_star * uy, pz=-p_star * uz, mass=m2)
    return d1.boost_p4(parent), d2.boost_p4(parent)


def _p3(v):
    return (float(v.px), float(v.py), float(v.pz))


def dstar_decay(momentum=(3.0, 1.0, 0.5)):
    """Lab momenta of D*+ -> D0 pi+, D0 -> K- pi+ with PDG masses."""
    import vector
    from dstarpol.analysis.physics import DEFAULT_MASS_TABLE as M

    dstar = vector.obj(px=momentum[0], py=momentum[1], pz=momentum[2], mass=M[413])
    d0, soft = two_body(dstar, M[421], M[211], (0.6, 0.8, 0.0))
    kaon, pion = two_body(d0, M[321], M[211], (0.0, 1.0, 0.2))
    return {
        "dstar": _p3(dstar),
        "d0": _p3(d0),
        "soft": _p3(soft),
        "kaon": _p3(kaon),
        "pion": _p3(pion),
    }


def make_dstar_event(origin=None, momentum=(3.0, 1.0, 0.5), event_number=1, **kwargs):
    """
    One event holding a single true D*+ -> D0 pi+ candidate.

    Tracks: 0 soft pion, 1 kaon, 2 pion. With `origin` ("prompt",
    "feed_down" or "unknown") a generated record is attached:
    0 ancestor, 1 D*+, 2 D0, 3 soft pi+, 4 K-, 5 pi+, plus 6 b quark
    above the B0 for "feed_down".
    """
    from dstarpol.analysis.models import (
        CascadeCandidate,
        Event,
        McHeader,
        McParticle,
        PrimaryVertex,
        Track,
        TwoProngCandidate,
    )

    p = dstar_decay(momentum)
    with_mc = origin is not None
    tracks = {
        0: Track(0, *p["soft"], charge=1, label=3 if with_mc else -1, pv_contributor=False),
        1: Track(1, *p["kaon"], charge=-1, label=4 if with_mc else -1, pv_contributor=True),
        2: Track(2, *p["pion"], charge=1, label=5 if with_mc else -1, pv_contributor=True),
    }

    mc_particles = mc_header = None
    if with_mc:
        ancestor_pdg = {"prompt": 4, "feed_down": 511, "unknown": 2212}[origin]
        beauty = origin == "feed_down"
        mc_particles = [
            McParticle(0, ancestor_pdg, *p["dstar"], mother=6 if beauty else -1, daughters=(1,)),
            McParticle(1, 413, *p["dstar"], mother=0, daughters=(2, 3)),
            McParticle(2, 421, *p["d0"], mother=1, daughters=(4, 5)),
            McParticle(3, 211, *p["soft"], mother=1),
            McParticle(4, -321, *p["kaon"], mother=2),
            McParticle(5, 211, *p["pion"], mother=2),
        ]
        if beauty:
            mc_particles.append(McParticle(6, 5, *p["dstar"], mother=-1, daughters=(0,)))
        mc_header = McHeader(vtx_z=1.0)

    fields = dict(
        event_number=event_number,
        primary_vertex=PrimaryVertex(0.0, 0.0, 1.0, 20),
        magnetic_field=0.5,
        centrality=10.0,
        tracks=tracks,
        two_prongs=[TwoProngCandidate((1, 2))],
        candidates=[CascadeCandidate(0, 0)],
        mc_particles=mc_particles,
        mc_header=mc_header,
    )
    fields.update(kwargs)
    return Event(**fields)


def cuts_config(**overrides):
    cfg = {
        "pt_bin_limits": [1.0, 5.0, 50.0],
        "d0_mass_window": 0.03,
        "delta_mass_window": 0.002,
        "min_d0_prong_pt": 0.1,
        "min_soft_pion_pt": 0.05,
        "max_soft_pion_pt": 50.0,
        "max_abs_cos_theta_star": 1.0,
        "presel_min_track_pt": 0.0,
        "presel_max_track_eta": 0.9,
        "max_vtx_z": 10.0,
        "min_vertex_contributors": 1,
    }
    cfg.update(overrides)
    return cfg


def analysis_config(**overrides):
    cfg = {
        "data_dir": "data",
        "file_pattern": "*.root",
        "output_dir": "output",
        "read_mc": False,
        "cuts": cuts_config(),
        "histograms": {"n_mass_bins": 50},
        "analysis": {"make_plots": False},
    }
    cfg.update(overrides)
    return cfg


@pytest.fixture
def make_event():
    pytest.importorskip("vector")
    return make_dstar_event


@pytest.fixture
def decay():
    pytest.importorskip("vector")
    return dstar_decay


@pytest.fixture
def cuts():
    from dstarpol.analysis.selection import DstarCuts

    return DstarCuts.from_config(cuts_config())


@pytest.fixture
def config():
    return analysis_config()


@pytest.fixture(name="two_body")
def two_body_fixture():
    pytest.importorskip("vector")
    return two_body


@pytest.fixture
def make_cuts():
    from dstarpol.analysis.selection import DstarCuts

    def _make(drop=(), **overrides):
        cfg = cuts_config(**overrides)
        for name in drop:
            del cfg[name]
        return DstarCuts.from_config(cfg)

    return _make
