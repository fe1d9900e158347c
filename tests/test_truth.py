import dataclasses

import pytest
pytest.importorskip("vector")
from dstarpol.analysis import truth
from dstarpol.analysis.models import McParticle
from dstarpol.analysis.truth import Origin


@pytest.mark.parametrize("pdg", [511, -521, 531, 5122, -5332])
def test_is_beauty_hadron_true(pdg):
    assert truth.is_beauty_hadron(pdg)


@pytest.mark.parametrize("pdg", [5, -5, 4, 211, 421, 413, 4122, 2212])
def test_is_beauty_hadron_false(pdg):
    assert not truth.is_beauty_hadron(pdg)


@pytest.mark.parametrize(
    "origin, expected",
    [("prompt", Origin.PROMPT), ("feed_down", Origin.FEED_DOWN), ("unknown", Origin.BACKGROUND)],
)
def test_check_origin_walks_ancestry(make_event, origin, expected):
    particles = make_event(origin).mc_particles

    assert truth.check_origin(particles, particles[1]) is expected


def test_check_origin_without_quark_search_defaults_to_prompt(make_event):
    particles = make_event("unknown").mc_particles

    assert truth.check_origin(particles, particles[1], search_up_to_quark=False) is Origin.PROMPT


def _chain(*pdgs):
    """Generated D*+ (label 0) whose ancestors are `pdgs`, nearest first."""
    n = len(pdgs)
    particles = [McParticle(0, 413, 1.0, 0.0, 0.0, mother=1 if n else -1)]
    for i, pdg in enumerate(pdgs, start=1):
        particles.append(McParticle(i, pdg, 1.0, 0.0, 0.0, mother=i + 1 if i < n else -1))
    return particles


def test_beauty_hadron_without_quark_is_undetermined():
    particles = _chain(511, 2212)

    assert truth.check_origin(particles, particles[0]) is Origin.BACKGROUND
    assert truth.check_origin(particles, particles[0], search_up_to_quark=False) is Origin.FEED_DOWN


def test_beauty_hadron_from_b_quark_is_feed_down():
    particles = _chain(511, 5, 2212)

    assert truth.check_origin(particles, particles[0]) is Origin.FEED_DOWN


def test_bare_b_quark_is_not_feed_down():
    particles = _chain(5, 2212)

    assert truth.check_origin(particles, particles[0]) is Origin.PROMPT


def test_check_origin_stops_on_ancestry_loop():
    particles = [
        McParticle(0, 413, 1.0, 0.0, 0.0, mother=1),
        McParticle(1, 2212, 0.0, 0.0, 1.0, mother=0),
    ]

    assert truth.check_origin(particles, particles[0]) is Origin.BACKGROUND


def test_check_dstar_decay_returns_soft_kaon_pion(make_event):
    particles = make_event("prompt").mc_particles

    assert truth.check_dstar_decay(particles, particles[1]) == (3, 4, 5)


def test_check_dstar_decay_rejects_other_d0_decays(make_event):
    particles = make_event("prompt").mc_particles
    # D0 -> K- K+
    particles[5] = dataclasses.replace(particles[5], pdg=321)

    assert truth.check_dstar_decay(particles, particles[1]) is None
    assert truth.check_dstar_decay(particles, particles[2]) is None


def test_daughters_in_acceptance_soft_pion_threshold(make_event):
    particles = make_event("prompt").mc_particles
    assert truth.daughters_in_acceptance(particles, (3, 4, 5))

    # 0.07 GeV/c passes for the soft pion but not for a D0 daughter
    particles[3] = dataclasses.replace(particles[3], px=0.07, py=0.0, pz=0.0)
    assert truth.daughters_in_acceptance(particles, (3, 4, 5))
    particles[4] = dataclasses.replace(particles[4], px=0.07, py=0.0, pz=0.0)
    assert not truth.daughters_in_acceptance(particles, (3, 4, 5))


def test_daughters_in_acceptance_eta_limit(make_event):
    particles = make_event("prompt").mc_particles
    particles[5] = dataclasses.replace(particles[5], px=0.5, py=0.0, pz=5.0)

    assert not truth.daughters_in_acceptance(particles, (3, 4, 5))


def test_out_of_bunch_pileup_is_inherited(make_event):
    particles = make_event("prompt").mc_particles
    assert not truth.is_from_out_of_bunch_pileup(particles, 1)

    particles[0] = dataclasses.replace(particles[0], from_out_of_bunch_pileup=True)
    assert truth.is_from_out_of_bunch_pileup(particles, 1)


def test_match_dstar_on_true_candidate(make_event):
    event = make_event("prompt")
    candidate = event.candidates[0]

    assert truth.match_dstar(event, candidate, event.two_prong_for(candidate)) == 1


def test_match_dstar_fails_for_foreign_soft_pion(make_event):
    event = make_event("prompt")
    event.tracks[0] = dataclasses.replace(event.tracks[0], label=5)
    candidate = event.candidates[0]

    assert truth.match_dstar(event, candidate, event.two_prong_for(candidate)) == -1


def test_classify_candidate(make_event):
    event = make_event("feed_down")
    candidate = event.candidates[0]
    two_prong = event.two_prong_for(candidate)

    assert truth.classify_candidate(event, candidate, two_prong) == (1, Origin.FEED_DOWN)

    event.tracks[1] = dataclasses.replace(event.tracks[1], label=-1)
    assert truth.classify_candidate(event, candidate, two_prong) == (-1, Origin.UNMATCHED)
