"""
Event data model for the D*+ -> D0 pi+ analysis.

Reconstructed objects:
- Track: one charged track with its MC label
- PrimaryVertex: immutable vertex value
- TwoProngCandidate: D0 -> K pi hypothesis with a mutable own-primary-vertex slot
- CascadeCandidate: D*+ hypothesis built from a soft track and a D0 candidate

Generated objects:
- McParticle, McHeader

Event is the per-event container handed to the analysis pipeline.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Track:
    """Reconstructed charged track."""

    track_id: int
    px: float
    py: float
    pz: float
    charge: int
    label: int = -1
    pv_contributor: bool = False

    @property
    def momentum(self):
        return (self.px, self.py, self.pz)

    @property
    def pt(self):
        return math.hypot(self.px, self.py)

    @property
    def p(self):
        return math.sqrt(self.px * self.px + self.py * self.py + self.pz * self.pz)

    @property
    def eta(self):
        p = self.p
        if p == abs(self.pz):
            return 1e9 if self.pz >= 0 else -1e9
        return 0.5 * math.log((p + self.pz) / (p - self.pz))


@dataclass(frozen=True)
class PrimaryVertex:
    """Primary-vertex value: position and number of contributing tracks."""

    x: float
    y: float
    z: float
    n_contributors: int


@dataclass
class TwoProngCandidate:
    """
    D0 candidate made of two prong tracks.

    The momentum is unset until the reconstruction fill completes it.
    `own_primary_vertex` is either unset (the event vertex applies) or holds
    a vertex owned by this candidate; see `selection.VertexLease` for the
    rules on who clears it.
    """

    prong_ids: tuple[int, int]
    momentum: tuple[float, float, float] | None = None
    own_primary_vertex: PrimaryVertex | None = None

    def set_own_primary_vertex(self, vertex):
        self.own_primary_vertex = vertex

    def unset_own_primary_vertex(self):
        self.own_primary_vertex = None


@dataclass
class CascadeCandidate:
    """D*+ candidate: soft track plus a D0 candidate referenced by index."""

    soft_track_id: int
    two_prong_index: int
    is_filled: bool = False
    momentum: tuple[float, float, float] | None = None

    @property
    def pt(self):
        if self.momentum is None:
            return 0.0
        return math.hypot(self.momentum[0], self.momentum[1])

    @property
    def p(self):
        if self.momentum is None:
            return 0.0
        px, py, pz = self.momentum
        return math.sqrt(px * px + py * py + pz * pz)


@dataclass(frozen=True)
class McParticle:
    """Generated particle. Labels index the event's MC particle list."""

    label: int
    pdg: int
    px: float
    py: float
    pz: float
    mother: int = -1
    daughters: tuple[int, ...] = ()
    from_out_of_bunch_pileup: bool = False

    @property
    def momentum(self):
        return (self.px, self.py, self.pz)

    @property
    def pt(self):
        return math.hypot(self.px, self.py)

    @property
    def p(self):
        return math.sqrt(self.px * self.px + self.py * self.py + self.pz * self.pz)

    @property
    def eta(self):
        p = self.p
        if p == abs(self.pz):
            return 1e9 if self.pz >= 0 else -1e9
        return 0.5 * math.log((p + self.pz) / (p - self.pz))


@dataclass(frozen=True)
class McHeader:
    """Event-level generator information."""

    vtx_z: float


@dataclass
class Event:
    """One event as handed over by the host reader."""

    event_number: int
    primary_vertex: PrimaryVertex | None
    magnetic_field: float
    centrality: float = -999.0
    trigger_fired: bool = True
    is_pileup: bool = False
    tracks: dict[int, Track] = field(default_factory=dict)
    two_prongs: list[TwoProngCandidate] = field(default_factory=list)
    candidates: list[CascadeCandidate] = field(default_factory=list)
    mc_particles: list[McParticle] | None = None
    mc_header: McHeader | None = None

    def two_prong_for(self, candidate):
        """Return the D0 daughter of a D*+ candidate, or None for a dangling index."""
        idx = candidate.two_prong_index
        if 0 <= idx < len(self.two_prongs):
            return self.two_prongs[idx]
        return None
