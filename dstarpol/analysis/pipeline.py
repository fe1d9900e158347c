"""
Per-event driver of the D*+ polarization analysis.

For every event: event-level bookkeeping and cuts, the generated-level
acceptance fill (MC only), then each D*+ candidate goes through the
selector, the angular transform and the histogram router.
"""

import logging
from types import MappingProxyType

from dstarpol.analysis.classifier import MulticlassClassifier
from dstarpol.analysis.exceptions import ConfigurationError, KinematicsError
from dstarpol.analysis.histograms import HistogramConfig, HistogramSet, gen_vectors, reco_vectors
from dstarpol.analysis.physics import (
    DEFAULT_MASS_TABLE,
    PDG_D0,
    PDG_DSTAR,
    PDG_PION,
    compute_observables,
    delta_invariant_mass,
    invariant_mass,
    rapidity,
)
from dstarpol.analysis.selection import CandidateSelector, DstarCuts, RecoHelper, kaon_pion
from dstarpol.analysis.truth import (
    check_dstar_decay,
    check_origin,
    classify_candidate,
    daughters_in_acceptance,
    is_from_out_of_bunch_pileup,
)

logger = logging.getLogger(__name__)

# |B| below this (in T) means the field was not set for the run
MIN_MAGNETIC_FIELD = 0.001


def mass_table_from_config(cfg):
    """PDG mass table with optional `{pdg: mass}` overrides from the config."""
    if not cfg:
        return DEFAULT_MASS_TABLE
    table = dict(DEFAULT_MASS_TABLE)
    try:
        table.update({int(k): float(v) for k, v in cfg.items()})
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid 'pdg_masses' entry: {exc}") from exc
    return MappingProxyType(table)


class DstarPolarizationAnalysis:
    """
    Processing unit owning one HistogramSet.

    Every collaborator is injected; `from_config` wires them from the YAML
    configuration.
    """

    def __init__(self, cuts, histograms, classifier=None, read_mc=False,
                 fill_acceptance_level=False, search_up_to_quark=True,
                 mass_table=DEFAULT_MASS_TABLE, reco_helper=None):
        self.cuts = cuts
        self.histograms = histograms
        self.read_mc = read_mc
        self.fill_acceptance_level = fill_acceptance_level
        self.search_up_to_quark = search_up_to_quark
        self.mass_table = mass_table
        self.selector = CandidateSelector(
            cuts,
            reco_helper if reco_helper is not None else RecoHelper(),
            classifier=classifier,
            counters=histograms.counters,
            mass_table=mass_table,
        )

    @classmethod
    def from_config(cls, config):
        cuts = DstarCuts.from_config(config.get("cuts"))
        mass_table = mass_table_from_config(config.get("pdg_masses"))
        read_mc = bool(config.get("read_mc", False))
        fill_acceptance_level = bool(config.get("fill_acceptance_level", False))
        hist_config = HistogramConfig.from_config(config.get("histograms"), cuts.pt_max)
        classifier = MulticlassClassifier.from_config(
            config.get("classifier"), cuts.pt_bin_limits, mass_table
        )
        return cls(
            cuts,
            HistogramSet(hist_config, read_mc=read_mc, acceptance_level=fill_acceptance_level),
            classifier=classifier,
            read_mc=read_mc,
            fill_acceptance_level=fill_acceptance_level,
            search_up_to_quark=bool(config.get("search_up_to_quark", True)),
            mass_table=mass_table,
        )

    @property
    def classifier(self):
        return self.selector.classifier

    def process_events(self, events):
        """Run `process_event` over an iterable of events. Returns the HistogramSet."""
        for event in events:
            self.process_event(event)
        return self.histograms

    def process_event(self, event):
        """
        Process one event. Returns True if its candidates were analysed.

        Events without a primary vertex or without magnetic field are
        dropped before any cut is evaluated. With MC enabled the generated
        level is filled for every analysed event, selected or not.
        """
        h = self.histograms
        h.count("events_read")
        if event.primary_vertex is None or abs(event.magnetic_field) < MIN_MAGNETIC_FIELD:
            return False
        h.count("events_analysed")

        reasons = self.cuts.event_rejection_reasons(event)
        for reason in reasons:
            h.count(reason)

        if self.read_mc:
            if event.mc_particles is None or event.mc_header is None:
                logger.warning(
                    "Event %d: MC particles or header missing, skipping its candidates",
                    event.event_number,
                )
                h.count("events_missing_mc")
                return False
            self.fill_gen_acceptance(event)

        if reasons:
            return False
        h.count("events_selected")

        for candidate in event.candidates:
            self.process_candidate(event, candidate)
        return True

    def process_candidate(self, event, candidate):
        """
        Select one D*+ candidate and deposit its observables.

        Returns the channel that was filled, or None if the candidate was
        rejected. The vertex lease of the selection is released before
        returning on every path.
        """
        two_prong = None
        if event is not None and candidate is not None:
            two_prong = event.two_prong_for(candidate)
        result = self.selector.select(event, candidate, two_prong)
        with result.lease:
            if not result.accepted:
                return None

            soft = event.tracks[candidate.soft_track_id]
            kaon, pion = kaon_pion(
                soft, *(event.tracks[tid] for tid in two_prong.prong_ids)
            )
            delta_mass = delta_invariant_mass(
                soft.momentum, kaon.momentum, pion.momentum, self.mass_table
            )

            origin = None
            if self.read_mc:
                _, origin = classify_candidate(
                    event, candidate, two_prong, self.search_up_to_quark
                )

            try:
                obs = self.reco_observables(candidate, two_prong, soft)
            except KinematicsError as exc:
                logger.warning(
                    "Event %d: degenerate D*+ kinematics, candidate skipped (%s)",
                    event.event_number, exc,
                )
                self.histograms.count("rejected_degenerate_kinematics")
                return None

            vector, theta_phi_vector = reco_vectors(delta_mass, obs, event.centrality)
            return self.histograms.deposit_reco(vector, theta_phi_vector, origin)

    def reco_observables(self, candidate, two_prong, soft):
        """
        Angular observables of a reconstructed D*+.

        The mother is the soft pion plus the D0 at their PDG masses; the
        rapidity is the candidate one under the D*+ mass hypothesis.
        """
        m_pi = self.mass_table[PDG_PION]
        mother_mass = invariant_mass(
            [soft.momentum, two_prong.momentum], [m_pi, self.mass_table[PDG_D0]]
        )
        obs = compute_observables(candidate.momentum, mother_mass, soft.momentum, m_pi)
        return obs._replace(y=rapidity(candidate.momentum, self.mass_table[PDG_DSTAR]))

    def fill_gen_acceptance(self, event):
        """
        Fill the generated-level channels with every D*+ -> D0 pi+ -> K pi pi
        in acceptance. Returns the number of deposits.

        With `fill_acceptance_level` the D*+ must be in fiducial acceptance
        and its decay products in the detector acceptance; otherwise |y| < 1
        is enough.
        """
        if abs(event.mc_header.vtx_z) > self.cuts.max_vtx_z:
            return 0
        particles = event.mc_particles
        m_dstar = self.mass_table[PDG_DSTAR]
        filled = 0
        for particle in particles:
            if abs(particle.pdg) != PDG_DSTAR:
                continue
            decay = check_dstar_decay(particles, particle)
            if decay is None:
                continue

            y = rapidity(particle.momentum, m_dstar)
            if self.fill_acceptance_level:
                if not self.cuts.is_in_fiducial_acceptance(particle.pt, y):
                    continue
                if not daughters_in_acceptance(particles, decay):
                    continue
            elif abs(y) >= 1.0:
                continue

            origin = check_origin(particles, particle, self.search_up_to_quark)
            pileup = is_from_out_of_bunch_pileup(particles, particle.label)
            soft = particles[decay[0]]
            try:
                obs = compute_observables(
                    particle.momentum, m_dstar, soft.momentum, self.mass_table[PDG_PION]
                )
            except KinematicsError as exc:
                logger.warning(
                    "Event %d: degenerate generated D*+ %d skipped (%s)",
                    event.event_number, particle.label, exc,
                )
                self.histograms.count("rejected_degenerate_kinematics")
                continue

            vector, theta_phi_vector = gen_vectors(obs, event.centrality)
            if self.histograms.deposit_gen(vector, theta_phi_vector, origin, pileup) is not None:
                filled += 1
        return filled
