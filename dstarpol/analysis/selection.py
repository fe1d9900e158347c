"""
Selection logic for the D*+ -> D0 pi+ analysis.

This module holds the cut configuration (DstarCuts), the helper that
completes candidates before selection (RecoHelper), the scoped ownership of
the D0 own primary vertex (VertexLease) and the per-candidate cut cascade
(CandidateSelector).
"""

import bisect
import enum
import logging
from dataclasses import dataclass

from dstarpol.analysis.exceptions import ConfigurationError, KinematicsError
from dstarpol.analysis.models import PrimaryVertex
from dstarpol.analysis.physics import (
    DEFAULT_MASS_TABLE,
    PDG_D0,
    PDG_DSTAR,
    PDG_KAON,
    PDG_PION,
    cos_theta_star,
    delta_invariant_mass,
    invariant_mass,
    sum_momenta,
)

logger = logging.getLogger(__name__)

PER_PT_BIN_CUTS = (
    "d0_mass_window",
    "delta_mass_window",
    "min_d0_prong_pt",
    "min_soft_pion_pt",
    "max_soft_pion_pt",
    "max_abs_cos_theta_star",
)


def kaon_pion(soft, prong0, prong1):
    """
    Assign the kaon and pion hypotheses of the D0 prongs.

    In D*+ -> D0 pi+, D0 -> K- pi+ the kaon carries the charge opposite to
    the soft pion. Returns (kaon, pion) or (None, None) if no prong does.
    """
    if prong0.charge == -soft.charge and prong1.charge == soft.charge:
        return prong0, prong1
    if prong1.charge == -soft.charge and prong0.charge == soft.charge:
        return prong1, prong0
    return None, None


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _numbers(name, values):
    """Tuple of floats from a YAML list, or ConfigurationError."""
    if isinstance(values, (str, bytes)) or not hasattr(values, "__iter__"):
        raise ConfigurationError(f"'cuts.{name}' must be a list of numbers, got {values!r}")
    values = tuple(values)
    if not all(_is_number(v) for v in values):
        raise ConfigurationError(f"'cuts.{name}' must only hold numbers, got {list(values)}")
    return tuple(float(v) for v in values)


@dataclass(frozen=True)
class DstarCuts:
    """
    Cut configuration. Read-only while an event is processed.

    Per-pT-bin cuts are tuples with one entry per bin defined by
    `pt_bin_limits` (n + 1 edges for n bins).
    """

    pt_bin_limits: tuple
    d0_mass_window: tuple
    delta_mass_window: tuple
    min_d0_prong_pt: tuple
    min_soft_pion_pt: tuple
    max_soft_pion_pt: tuple
    max_abs_cos_theta_star: tuple
    presel_min_track_pt: float = 0.0
    presel_max_track_eta: float = 0.9
    max_vtx_z: float = 10.0
    min_vertex_contributors: int = 1
    reject_pileup: bool = True
    centrality_range: tuple | None = None
    max_rapidity: float | None = None
    primary_without_daughters: bool = False

    @classmethod
    def from_config(cls, cfg):
        """
        Build the cuts from the `cuts` section of the YAML configuration.

        Per-pT-bin entries may be a single number (same cut in every bin) or
        a list with one value per bin.
        """
        if not isinstance(cfg, dict):
            raise ConfigurationError("'cuts' section must be a mapping")
        if "pt_bin_limits" not in cfg:
            raise ConfigurationError("'cuts.pt_bin_limits' is required")
        limits = _numbers("pt_bin_limits", cfg["pt_bin_limits"])
        if len(limits) < 2 or any(b <= a for a, b in zip(limits, limits[1:])):
            raise ConfigurationError(
                f"'cuts.pt_bin_limits' must be at least two increasing edges, got {list(limits)}"
            )
        n_bins = len(limits) - 1

        per_bin = {}
        for name in PER_PT_BIN_CUTS:
            if name not in cfg:
                raise ConfigurationError(f"'cuts.{name}' is required")
            value = cfg[name]
            if _is_number(value):
                per_bin[name] = (float(value),) * n_bins
            else:
                values = _numbers(name, value)
                if len(values) != n_bins:
                    raise ConfigurationError(
                        f"'cuts.{name}' has {len(values)} entries for {n_bins} pT bins"
                    )
                per_bin[name] = values

        centrality_range = cfg.get("centrality_range")
        if centrality_range is not None:
            centrality_range = _numbers("centrality_range", centrality_range)
            if len(centrality_range) != 2 or centrality_range[0] > centrality_range[1]:
                raise ConfigurationError(
                    f"'cuts.centrality_range' must be [low, high], got {list(centrality_range)}"
                )
        max_rapidity = cfg.get("max_rapidity")

        try:
            scalars = dict(
                presel_min_track_pt=float(cfg.get("presel_min_track_pt", 0.0)),
                presel_max_track_eta=float(cfg.get("presel_max_track_eta", 0.9)),
                max_vtx_z=float(cfg.get("max_vtx_z", 10.0)),
                min_vertex_contributors=int(cfg.get("min_vertex_contributors", 1)),
                max_rapidity=None if max_rapidity is None else float(max_rapidity),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"invalid 'cuts' entry: {exc}") from exc

        return cls(
            pt_bin_limits=limits,
            reject_pileup=bool(cfg.get("reject_pileup", True)),
            centrality_range=centrality_range,
            primary_without_daughters=bool(cfg.get("primary_without_daughters", False)),
            **scalars,
            **per_bin,
        )

    @property
    def n_pt_bins(self):
        return len(self.pt_bin_limits) - 1

    @property
    def pt_max(self):
        return self.pt_bin_limits[-1]

    def pt_bin(self, pt):
        """Index of the pT bin containing `pt`, or -1 outside the binning."""
        if pt < self.pt_bin_limits[0] or pt >= self.pt_bin_limits[-1]:
            return -1
        return bisect.bisect_right(self.pt_bin_limits, pt) - 1

    def is_in_fiducial_acceptance(self, pt, y):
        """
        Rapidity acceptance of a candidate.

        Without an explicit `max_rapidity`, |y| < 0.8 above 5 GeV/c and a
        pT-dependent window (|y| < 0.5 at pT = 0) below.
        """
        if self.max_rapidity is not None:
            return abs(y) < self.max_rapidity
        if pt > 5.0:
            return abs(y) <= 0.8
        max_y = -0.2 / 15.0 * pt * pt + 1.9 / 15.0 * pt + 0.5
        return -max_y <= y <= max_y

    def event_rejection_reasons(self, event):
        """
        List the counter labels of every event-level cut the event fails.

        An empty list means the event is selected.
        """
        reasons = []
        if not event.trigger_fired:
            reasons.append("rejected_trigger")
        vtx = event.primary_vertex
        if vtx is None:
            reasons.append("rejected_no_vertex")
        else:
            if vtx.n_contributors < self.min_vertex_contributors:
                reasons.append("rejected_vertex_contributors")
            if abs(vtx.z) > self.max_vtx_z:
                reasons.append("rejected_vertex_z")
        if self.reject_pileup and event.is_pileup:
            reasons.append("rejected_pileup")
        if self.centrality_range is not None:
            low, high = self.centrality_range
            if not low <= event.centrality <= high:
                reasons.append("rejected_centrality")
        return reasons

    def pre_select(self, tracks):
        """
        Cheap track-level filter run before the reconstruction fill.

        `tracks` is (soft, prong0, prong1); an unresolved track (None) fails.
        """
        if len(tracks) != 3 or any(t is None for t in tracks):
            return False
        for track in tracks:
            if track.pt < self.presel_min_track_pt:
                return False
            if abs(track.eta) > self.presel_max_track_eta:
                return False
        _, prong0, prong1 = tracks
        return prong0.charge * prong1.charge < 0

    def is_selected(self, candidate, two_prong, event, mass_table=DEFAULT_MASS_TABLE):
        """Full set of candidate cuts in the candidate's pT bin."""
        ibin = self.pt_bin(candidate.pt)
        if ibin < 0:
            return False
        soft = event.tracks.get(candidate.soft_track_id)
        prongs = [event.tracks.get(tid) for tid in two_prong.prong_ids]
        if soft is None or any(t is None for t in prongs):
            return False
        kaon, pion = kaon_pion(soft, *prongs)
        if kaon is None:
            return False

        m_kpi = invariant_mass(
            [kaon.momentum, pion.momentum], [mass_table[PDG_KAON], mass_table[PDG_PION]]
        )
        if abs(m_kpi - mass_table[PDG_D0]) > self.d0_mass_window[ibin]:
            return False

        delta_mass = delta_invariant_mass(soft.momentum, kaon.momentum, pion.momentum, mass_table)
        delta_mass_pdg = mass_table[PDG_DSTAR] - mass_table[PDG_D0]
        if abs(delta_mass - delta_mass_pdg) > self.delta_mass_window[ibin]:
            return False

        if min(kaon.pt, pion.pt) < self.min_d0_prong_pt[ibin]:
            return False
        if not self.min_soft_pion_pt[ibin] <= soft.pt <= self.max_soft_pion_pt[ibin]:
            return False

        try:
            cts = cos_theta_star(kaon.momentum, pion.momentum, mass_table)
        except KinematicsError:
            return False
        return abs(cts) <= self.max_abs_cos_theta_star[ibin]

    def recalc_own_primary_vertex(self, two_prong, event):
        """
        Give the D0 its own primary vertex, refitted without its prongs.

        Only the contributor count is updated: the event vertex position is
        kept. Returns False, leaving the candidate untouched, when too few
        contributors remain.
        """
        vtx = event.primary_vertex
        if vtx is None:
            return False
        removed = 0
        for tid in two_prong.prong_ids:
            track = event.tracks.get(tid)
            if track is not None and track.pv_contributor:
                removed += 1
        n_left = vtx.n_contributors - removed
        if n_left < max(self.min_vertex_contributors, 1):
            return False
        two_prong.set_own_primary_vertex(PrimaryVertex(vtx.x, vtx.y, vtx.z, n_left))
        return True


class RecoHelper:
    """
    Resolves daughter tracks and completes candidate kinematics.

    Candidates only store track ids and an index to their D0 daughter; the
    momenta are filled here before the candidate cuts run.
    """

    def get_prong(self, event, candidate, index):
        """
        Track of prong `index`. For a D*+ candidate index 0 is the soft
        track; for a D0 candidate indices 0 and 1 are its prongs.
        """
        if hasattr(candidate, "soft_track_id"):
            if index != 0:
                return None
            return event.tracks.get(candidate.soft_track_id)
        if not 0 <= index < len(candidate.prong_ids):
            return None
        return event.tracks.get(candidate.prong_ids[index])

    def fill_reco_cascade(self, event, candidate):
        """Complete D0 and D*+ momenta. Returns False if a track is missing."""
        two_prong = event.two_prong_for(candidate)
        if two_prong is None:
            return False
        soft = self.get_prong(event, candidate, 0)
        prongs = [self.get_prong(event, two_prong, i) for i in range(2)]
        if soft is None or any(t is None for t in prongs):
            return False
        two_prong.momentum = sum_momenta(prongs[0].momentum, prongs[1].momentum)
        candidate.momentum = sum_momenta(soft.momentum, two_prong.momentum)
        candidate.is_filled = True
        return True


class LeaseState(enum.Enum):
    NONE = "none"
    BORROWED = "borrowed"
    RECOMPUTED = "recomputed"


class VertexLease:
    """
    Pending obligation on a D0 candidate's own primary vertex.

    BORROWED: the event vertex was lent to a candidate that had none.
    RECOMPUTED: the candidate got a refitted vertex; `backup` is the vertex
    it owned before (None if it had none).

    `release()` puts the candidate back in its original state. It is
    idempotent, and the lease is also a context manager that releases on exit.
    """

    def __init__(self, two_prong=None, state=LeaseState.NONE, backup=None):
        self.two_prong = two_prong
        self.state = state
        self.backup = backup

    @classmethod
    def none(cls):
        return cls()

    @classmethod
    def borrow(cls, two_prong, vertex):
        two_prong.set_own_primary_vertex(vertex)
        return cls(two_prong, LeaseState.BORROWED)

    @property
    def pending(self):
        return self.state is not LeaseState.NONE

    def recompute(self, cuts, event, two_prong=None):
        """
        Replace the candidate vertex by one refitted without its daughters.

        On failure the previous owned vertex is restored immediately and any
        borrow is dropped, so no obligation remains.
        """
        two_prong = self.two_prong if self.two_prong is not None else two_prong
        if self.state is LeaseState.BORROWED:
            backup = None
        else:
            backup = two_prong.own_primary_vertex
        if cuts.recalc_own_primary_vertex(two_prong, event):
            self.two_prong = two_prong
            self.state = LeaseState.RECOMPUTED
            self.backup = backup
            return True
        two_prong.unset_own_primary_vertex()
        if backup is not None:
            two_prong.set_own_primary_vertex(backup)
        self.state = LeaseState.NONE
        self.backup = None
        return False

    def release(self):
        if self.state is LeaseState.NONE:
            return
        self.two_prong.unset_own_primary_vertex()
        if self.state is LeaseState.RECOMPUTED and self.backup is not None:
            self.two_prong.set_own_primary_vertex(self.backup)
        self.state = LeaseState.NONE
        self.backup = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __repr__(self):
        return f"VertexLease(state={self.state.name}, backup={self.backup!r})"


class RejectReason(enum.Enum):
    """Rejection outcomes; values are the counter labels."""

    MALFORMED_INPUT = "rejected_malformed"
    FAILED_PRESELECTION = "rejected_preselection"
    FAILED_RECO_FILL = "rejected_reco_fill"
    OUT_OF_PT_RANGE = "rejected_pt_range"
    FAILED_CUTS = "rejected_cuts"
    FAILED_CLASSIFIER = "rejected_classifier"


@dataclass(frozen=True)
class SelectionResult:
    """Verdict of CandidateSelector.select. The caller releases `lease`."""

    accepted: bool
    pt_bin: int = -1
    reason: RejectReason | None = None
    lease: VertexLease = None

    def __post_init__(self):
        if self.lease is None:
            object.__setattr__(self, "lease", VertexLease.none())

    @classmethod
    def accept(cls, pt_bin, lease):
        return cls(True, pt_bin, None, lease)

    @classmethod
    def reject(cls, reason, lease=None):
        return cls(False, -1, reason, lease)


class CandidateSelector:
    """
    Sequential cut cascade for D*+ candidates.

    Stages, each short-circuiting with its own RejectReason:
      1. malformed input
      2. daughter-track resolution and pre-selection
      3. reconstruction fill
      4. borrow the event vertex if the D0 has none
      5. pT-bin lookup
      6. candidate cuts
      7. optional vertex recomputation without daughters
      8. optional classifier, which overrides the cut verdict

    Rejections at stages 5 and 6 release the borrowed vertex before
    returning. Otherwise the lease travels with the result and the caller
    releases it once done with the candidate.
    """

    def __init__(self, cuts, reco_helper, classifier=None, counters=None,
                 mass_table=DEFAULT_MASS_TABLE):
        self.cuts = cuts
        self.reco_helper = reco_helper
        self.classifier = classifier
        self.counters = counters
        self.mass_table = mass_table

    def _count(self, label):
        if self.counters is not None:
            self.counters.fill(label)

    def _reject(self, reason, lease=None):
        self._count(reason.value)
        return SelectionResult.reject(reason, lease)

    def select(self, event, candidate, two_prong):
        if event is None or candidate is None or two_prong is None or self.reco_helper is None:
            logger.warning(
                "Malformed D*+ candidate input (event=%s, candidate=%s, D0=%s, helper=%s); skipping",
                event is not None, candidate is not None, two_prong is not None,
                self.reco_helper is not None,
            )
            return self._reject(RejectReason.MALFORMED_INPUT)
        self._count("candidates")

        tracks = (
            self.reco_helper.get_prong(event, candidate, 0),
            self.reco_helper.get_prong(event, two_prong, 0),
            self.reco_helper.get_prong(event, two_prong, 1),
        )
        if not self.cuts.pre_select(tracks):
            return self._reject(RejectReason.FAILED_PRESELECTION)

        if not self.reco_helper.fill_reco_cascade(event, candidate):
            return self._reject(RejectReason.FAILED_RECO_FILL)
        self._count("candidates_filled")

        lease = VertexLease.none()
        if two_prong.own_primary_vertex is None:
            lease = VertexLease.borrow(two_prong, event.primary_vertex)

        pt_bin = self.cuts.pt_bin(candidate.pt)
        if pt_bin < 0:
            lease.release()
            return self._reject(RejectReason.OUT_OF_PT_RANGE, lease)

        if not self.cuts.is_selected(candidate, two_prong, event, self.mass_table):
            lease.release()
            return self._reject(RejectReason.FAILED_CUTS, lease)

        if self.cuts.primary_without_daughters:
            lease.recompute(self.cuts, event, two_prong)

        if self.classifier is not None:
            if not self.classifier.is_selected(candidate, two_prong, event):
                return self._reject(RejectReason.FAILED_CLASSIFIER, lease)

        self._count("candidates_selected")
        return SelectionResult.accept(pt_bin, lease)
