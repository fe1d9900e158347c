"""
Monte Carlo truth utilities.

Matching of reconstructed D*+ candidates to generated particles, origin
classification (prompt charm or beauty feed-down) and the generated-level
decay and acceptance checks used for the efficiency histograms.
"""

import enum

from dstarpol.analysis.physics import PDG_D0, PDG_DSTAR, PDG_KAON, PDG_PION


class Origin(enum.Enum):
    """Truth-level origin of a candidate."""

    PROMPT = "prompt"
    FEED_DOWN = "feed_down"
    # matched to a generated D*+ whose origin cannot be determined
    BACKGROUND = "background"
    UNMATCHED = "unmatched"


def is_beauty_hadron(pdg):
    """True for B mesons (5xx) and b baryons (5xxx)."""
    a = abs(pdg)
    return 500 < a < 600 or 5000 < a < 6000


def check_origin(particles, particle, search_up_to_quark=True):
    """
    Walk up the ancestry of a generated particle.

    A beauty-hadron ancestor gives FEED_DOWN, any other chain PROMPT. With
    `search_up_to_quark` the chain must also reach a c or b quark, otherwise
    the origin is undetermined (BACKGROUND). A b quark without a beauty
    hadron below it counts as a quark, not as feed-down.
    """
    from_beauty = False
    found_quark = False
    label = particle.mother
    visited = set()
    while 0 <= label < len(particles) and label not in visited:
        visited.add(label)
        mother = particles[label]
        if is_beauty_hadron(mother.pdg):
            from_beauty = True
        if abs(mother.pdg) in (4, 5):
            found_quark = True
        label = mother.mother
    if search_up_to_quark and not found_quark:
        return Origin.BACKGROUND
    return Origin.FEED_DOWN if from_beauty else Origin.PROMPT


def is_from_out_of_bunch_pileup(particles, label):
    """True if the particle or one of its ancestors comes from an out-of-bunch collision."""
    visited = set()
    while 0 <= label < len(particles) and label not in visited:
        visited.add(label)
        particle = particles[label]
        if particle.from_out_of_bunch_pileup:
            return True
        label = particle.mother
    return False


def _particle(particles, label):
    if 0 <= label < len(particles):
        return particles[label]
    return None


def check_dstar_decay(particles, dstar):
    """
    Check a generated D*+ -> D0 pi+, D0 -> K- pi+ decay (or its conjugate).

    Returns the labels (soft pion, kaon, pion), or None for any other decay.
    """
    if abs(dstar.pdg) != PDG_DSTAR or len(dstar.daughters) != 2:
        return None
    sign = 1 if dstar.pdg > 0 else -1
    d0 = soft = None
    for label in dstar.daughters:
        dau = _particle(particles, label)
        if dau is None:
            return None
        if dau.pdg == sign * PDG_D0:
            d0 = dau
        elif dau.pdg == sign * PDG_PION:
            soft = dau
    if d0 is None or soft is None or len(d0.daughters) != 2:
        return None

    kaon = pion = None
    for label in d0.daughters:
        dau = _particle(particles, label)
        if dau is None:
            return None
        if dau.pdg == -sign * PDG_KAON:
            kaon = dau
        elif dau.pdg == sign * PDG_PION:
            pion = dau
    if kaon is None or pion is None:
        return None
    return soft.label, kaon.label, pion.label


def daughters_in_acceptance(particles, labels, max_eta=0.9, min_pt=0.1, min_pt_soft=0.06):
    """
    Detector acceptance of the decay products.

    The soft pion (daughter of the D*+) has a looser pT threshold.
    """
    for label in labels:
        dau = _particle(particles, label)
        if dau is None:
            return False
        mother = _particle(particles, dau.mother)
        is_soft = mother is not None and abs(mother.pdg) == PDG_DSTAR
        threshold = min_pt_soft if is_soft else min_pt
        if abs(dau.eta) > max_eta or dau.pt < threshold:
            return False
    return True


def match_dstar(event, candidate, two_prong):
    """
    Label of the generated D*+ a reconstructed candidate comes from, or -1.

    The two D0 prongs must be the K and pi of one generated D0 with exactly
    those daughters, and the soft track together with that D0 must be the
    only daughters of one generated D*+.
    """
    particles = event.mc_particles
    if not particles:
        return -1
    soft = event.tracks.get(candidate.soft_track_id)
    prongs = [event.tracks.get(tid) for tid in two_prong.prong_ids]
    if soft is None or any(t is None for t in prongs):
        return -1
    labels = [t.label for t in prongs]
    if any(label < 0 for label in labels) or soft.label < 0:
        return -1

    gen_prongs = [_particle(particles, label) for label in labels]
    if any(p is None for p in gen_prongs):
        return -1
    if sorted(abs(p.pdg) for p in gen_prongs) != sorted((PDG_PION, PDG_KAON)):
        return -1
    d0_label = gen_prongs[0].mother
    if d0_label < 0 or gen_prongs[1].mother != d0_label:
        return -1
    d0 = _particle(particles, d0_label)
    if d0 is None or abs(d0.pdg) != PDG_D0 or set(d0.daughters) != set(labels):
        return -1

    gen_soft = _particle(particles, soft.label)
    if gen_soft is None or abs(gen_soft.pdg) != PDG_PION:
        return -1
    dstar_label = d0.mother
    if dstar_label < 0 or gen_soft.mother != dstar_label:
        return -1
    dstar = _particle(particles, dstar_label)
    if dstar is None or abs(dstar.pdg) != PDG_DSTAR:
        return -1
    if set(dstar.daughters) != {d0_label, soft.label}:
        return -1
    return dstar_label


def classify_candidate(event, candidate, two_prong, search_up_to_quark=True):
    """Return (label, Origin) of a reconstructed candidate."""
    label = match_dstar(event, candidate, two_prong)
    if label < 0:
        return label, Origin.UNMATCHED
    origin = check_origin(event.mc_particles, event.mc_particles[label], search_up_to_quark)
    return label, origin
