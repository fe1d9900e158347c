"""
Histogram channels for the D*+ polarization analysis.

Each channel holds two sparse multi-dimensional histograms filled from the
same observables: the cos(theta*) one and the (theta*, phi*) one. The
routing tables map the truth origin of a candidate to its channel.

Binning follows the reconstruction defaults of the analysis: 500 bins in
M(K pi pi) - M(K pi) on [0.138, 0.160] GeV/c^2, pT binned in 1 GeV/c (or
0.1 GeV/c with fine binning) up to the last cut pT edge, 5 bins in
|cos(theta*)|.
"""

import math
from collections import defaultdict
from dataclasses import dataclass
from typing import NamedTuple

import hist
import numpy as np

from dstarpol.analysis.truth import Origin


RECO_CHANNELS = ("all", "fromC", "fromB", "bkg")
GEN_CHANNELS = ("fromC", "fromB")

RECO_CHANNEL_BY_ORIGIN = {
    Origin.PROMPT: "fromC",
    Origin.FEED_DOWN: "fromB",
    Origin.BACKGROUND: "bkg",
    Origin.UNMATCHED: "bkg",
}

GEN_CHANNEL_BY_ORIGIN = {
    Origin.PROMPT: "fromC",
    Origin.FEED_DOWN: "fromB",
    Origin.BACKGROUND: None,
    Origin.UNMATCHED: None,
}

COUNTER_LABELS = (
    "events_read",
    "events_analysed",
    "events_selected",
    "rejected_trigger",
    "rejected_no_vertex",
    "rejected_vertex_contributors",
    "rejected_vertex_z",
    "rejected_pileup",
    "rejected_centrality",
    "events_missing_mc",
    "candidates",
    "candidates_filled",
    "candidates_selected",
    "rejected_malformed",
    "rejected_preselection",
    "rejected_reco_fill",
    "rejected_pt_range",
    "rejected_cuts",
    "rejected_classifier",
    "rejected_degenerate_kinematics",
)


class RecoVector(NamedTuple):
    delta_mass: float
    pt: float
    y: float
    cos_theta_beam: float
    cos_theta_production: float
    cos_theta_helicity: float
    centrality: float


class RecoThetaPhiVector(NamedTuple):
    delta_mass: float
    pt: float
    theta_beam: float
    phi_beam: float


class GenVector(NamedTuple):
    pt: float
    y: float
    cos_theta_beam: float
    cos_theta_production: float
    cos_theta_helicity: float
    centrality: float


class GenThetaPhiVector(NamedTuple):
    pt: float
    theta_beam: float
    phi_beam: float


def reco_vectors(delta_mass, obs, centrality):
    """Split AngularObservables into the two reconstructed-level vectors."""
    return (
        RecoVector(
            delta_mass, obs.pt, obs.y, obs.cos_theta_beam,
            obs.cos_theta_production, obs.cos_theta_helicity, centrality,
        ),
        RecoThetaPhiVector(delta_mass, obs.pt, obs.theta_beam, obs.phi_beam),
    )


def gen_vectors(obs, centrality):
    """Split AngularObservables into the two generated-level vectors."""
    return (
        GenVector(
            obs.pt, obs.y, obs.cos_theta_beam,
            obs.cos_theta_production, obs.cos_theta_helicity, centrality,
        ),
        GenThetaPhiVector(obs.pt, obs.theta_beam, obs.phi_beam),
    )


def reco_channel(origin):
    """Reconstructed-level channel; `origin=None` means no truth was requested."""
    if origin is None:
        return "all"
    return RECO_CHANNEL_BY_ORIGIN[origin]


def gen_channel(origin, from_pileup=False):
    """Generated-level channel, or None when the particle is not histogrammed."""
    if from_pileup:
        return None
    return GEN_CHANNEL_BY_ORIGIN[origin]


class SparseHist:
    """
    N-dimensional histogram that only stores populated bins.

    Bin lookup uses `hist` axes, so under/overflow follow the axis traits.
    Dense views are obtained through `project`.
    """

    def __init__(self, *axes, name=None, label=None):
        self.axes = tuple(axes)
        self.name = name
        self.label = label
        self._bins = defaultdict(float)

    @property
    def ndim(self):
        return len(self.axes)

    @property
    def axis_names(self):
        return tuple(ax.name for ax in self.axes)

    def __len__(self):
        return len(self._bins)

    def fill(self, *values, weight=1.0):
        if len(values) != self.ndim:
            raise ValueError(f"{self.name}: expected {self.ndim} values, got {len(values)}")
        key = tuple(int(ax.index(v)) for ax, v in zip(self.axes, values))
        self._bins[key] += weight

    def sum(self):
        return float(sum(self._bins.values()))

    def _axis_position(self, name):
        try:
            return self.axis_names.index(name)
        except ValueError:
            raise KeyError(f"{self.name} has no axis '{name}'") from None

    def project(self, *names):
        """Dense hist.Hist over the named axes (all axes if none given)."""
        if not names:
            names = self.axis_names
        positions = [self._axis_position(n) for n in names]
        h = hist.Hist(*(self.axes[i] for i in positions), storage=hist.storage.Double())
        offsets = [1 if self.axes[i].traits.underflow else 0 for i in positions]
        view = h.view(flow=True)
        for key, weight in self._bins.items():
            view[tuple(key[i] + off for i, off in zip(positions, offsets))] += weight
        return h

    def to_arrays(self):
        """(bin indices of shape (n, ndim), weights) of the populated bins."""
        if not self._bins:
            return np.zeros((0, self.ndim), dtype=np.int64), np.zeros(0)
        keys = np.array(list(self._bins.keys()), dtype=np.int64)
        weights = np.array(list(self._bins.values()), dtype=float)
        return keys, weights

    def __iadd__(self, other):
        if self.axes != other.axes:
            raise ValueError(f"cannot add {other.name} to {self.name}: axes differ")
        for key, weight in other._bins.items():
            self._bins[key] += weight
        return self


class ChannelPair(NamedTuple):
    sparse: SparseHist
    theta_phi: SparseHist

    def merge(self, other):
        """Add the contents of another pair with the same binning."""
        sparse, theta_phi = self
        sparse += other.sparse
        theta_phi += other.theta_phi
        return self


@dataclass(frozen=True)
class HistogramConfig:
    """Binning of the channel histograms."""

    pt_max: float
    fine_pt_bins: bool = False
    n_mass_bins: int = 500
    mass_min: float = 0.138
    mass_max: float = 0.160
    n_cos_bins: int = 5
    n_y_bins: int = 100
    n_centrality_bins: int = 100
    n_angle_bins: int = 100

    @classmethod
    def from_config(cls, cfg, pt_max):
        cfg = cfg or {}
        return cls(
            pt_max=float(pt_max),
            fine_pt_bins=bool(cfg.get("fine_pt_bins", False)),
            n_mass_bins=int(cfg.get("n_mass_bins", 500)),
            mass_min=float(cfg.get("mass_min", 0.138)),
            mass_max=float(cfg.get("mass_max", 0.160)),
            n_cos_bins=int(cfg.get("n_cos_bins", 5)),
            n_y_bins=int(cfg.get("n_y_bins", 100)),
            n_centrality_bins=int(cfg.get("n_centrality_bins", 100)),
            n_angle_bins=int(cfg.get("n_angle_bins", 100)),
        )

    @property
    def n_pt_bins(self):
        n = max(int(self.pt_max), 1)
        return n * 10 if self.fine_pt_bins else n


def _axes(config):
    cos = r"$|\cos(\theta^*)|$"
    return {
        "delta_mass": hist.axis.Regular(
            config.n_mass_bins, config.mass_min, config.mass_max,
            name="delta_mass", label=r"$M(K\pi\pi) - M(K\pi)$ [GeV/$c^2$]",
        ),
        "pt": hist.axis.Regular(
            config.n_pt_bins, 0.0, config.pt_max, name="pt", label=r"$p_T$ [GeV/$c$]"
        ),
        "y": hist.axis.Regular(config.n_y_bins, -1.0, 1.0, name="y", label=r"$y$"),
        "cos_theta_beam": hist.axis.Regular(
            config.n_cos_bins, 0.0, 1.0, name="cos_theta_beam", label=cos + " (beam)"
        ),
        "cos_theta_production": hist.axis.Regular(
            config.n_cos_bins, 0.0, 1.0, name="cos_theta_production", label=cos + " (production)"
        ),
        "cos_theta_helicity": hist.axis.Regular(
            config.n_cos_bins, 0.0, 1.0, name="cos_theta_helicity", label=cos + " (helicity)"
        ),
        "centrality": hist.axis.Regular(
            config.n_centrality_bins, 0.0, 100.0, name="centrality", label="centrality (%)"
        ),
        "theta_beam": hist.axis.Regular(
            config.n_angle_bins, 0.0, math.pi, name="theta_beam", label=r"$\theta^*$ (beam)"
        ),
        "phi_beam": hist.axis.Regular(
            config.n_angle_bins, -math.pi, math.pi, name="phi_beam", label=r"$\varphi^*$ (beam)"
        ),
    }


def make_reco_channel(config, channel):
    axes = _axes(config)
    return ChannelPair(
        SparseHist(
            *(axes[n] for n in RecoVector._fields),
            name=f"sparse_reco_{channel}", label=f"Reco - {channel}",
        ),
        SparseHist(
            *(axes[n] for n in RecoThetaPhiVector._fields),
            name=f"sparse_reco_theta_phi_{channel}", label=f"Reco - {channel}",
        ),
    )


def make_gen_channel(config, channel, acceptance_level=False):
    axes = _axes(config)
    step = "Acc. step" if acceptance_level else "Gen. acc. step"
    return ChannelPair(
        SparseHist(
            *(axes[n] for n in GenVector._fields),
            name=f"sparse_acc_{channel}", label=f"MC ({step}) - {channel}",
        ),
        SparseHist(
            *(axes[n] for n in GenThetaPhiVector._fields),
            name=f"sparse_acc_theta_phi_{channel}", label=f"MC ({step}) - {channel}",
        ),
    )


def make_counter_hist():
    """Event and candidate bookkeeping, one category per processing step."""
    return hist.Hist(
        hist.axis.StrCategory(list(COUNTER_LABELS), name="step", label="Processing step"),
        storage=hist.storage.Int64(),
    )


class HistogramSet:
    """
    All output histograms of one processing unit.

    Channels are allocated once here and only filled afterwards. Sets built
    with the same configuration can be merged with `+=`.
    """

    def __init__(self, config, read_mc=False, acceptance_level=False):
        self.config = config
        self.read_mc = read_mc
        self.counters = make_counter_hist()
        self.reco = {ch: make_reco_channel(config, ch) for ch in RECO_CHANNELS}
        self.gen = {}
        if read_mc:
            self.gen = {ch: make_gen_channel(config, ch, acceptance_level) for ch in GEN_CHANNELS}

    def count(self, label):
        self.counters.fill(label)

    def counter(self, label):
        return int(self.counters[label])

    def deposit_reco(self, vector, theta_phi_vector, origin=None):
        """Fill both reconstructed-level histograms of one channel. Returns the channel."""
        channel = reco_channel(origin)
        pair = self.reco[channel]
        pair.sparse.fill(*vector)
        pair.theta_phi.fill(*theta_phi_vector)
        return channel

    def deposit_gen(self, vector, theta_phi_vector, origin, from_pileup=False):
        """Fill both generated-level histograms of the matching channel, if any."""
        channel = gen_channel(origin, from_pileup)
        if channel is None or channel not in self.gen:
            return None
        pair = self.gen[channel]
        pair.sparse.fill(*vector)
        pair.theta_phi.fill(*theta_phi_vector)
        return channel

    def histograms(self):
        """Iterate over (level, channel, SparseHist) for every channel histogram."""
        for level, channels in (("reco", self.reco), ("gen", self.gen)):
            for channel, pair in channels.items():
                yield level, channel, pair.sparse
                yield level, channel, pair.theta_phi

    def __iadd__(self, other):
        self.counters += other.counters
        for mine, theirs in ((self.reco, other.reco), (self.gen, other.gen)):
            for channel, pair in theirs.items():
                if channel not in mine:
                    mine[channel] = pair
                    continue
                mine[channel].merge(pair)
        return self
