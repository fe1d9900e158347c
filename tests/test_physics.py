import math

import numpy as np
import pytest
pytest.importorskip("vector")
from dstarpol.analysis import physics
from dstarpol.analysis.exceptions import KinematicsError

M = physics.DEFAULT_MASS_TABLE


def test_build_four_vector_components_and_mass():
    four = physics.build_four_vector((1.0, 2.0, 2.0), 4.0)

    assert four.px == pytest.approx(1.0)
    assert four.py == pytest.approx(2.0)
    assert four.pz == pytest.approx(2.0)
    # E^2 = |p|^2 + m^2 = 9 + 16
    assert four.E == pytest.approx(5.0)


def test_rest_frame_of_itself_has_zero_momentum():
    mother = physics.build_four_vector((1.0, -2.0, 3.0), 2.0)

    probe = physics.rest_frame_momentum(mother, mother)

    assert np.allclose(probe, 0.0, atol=1e-9)


def test_invariant_mass_of_decay_products_is_parent_mass(decay):
    p = decay()

    m_d0 = physics.invariant_mass([p["kaon"], p["pion"]], [M[321], M[211]])
    m_dstar = physics.invariant_mass(
        [p["kaon"], p["pion"], p["soft"]], [M[321], M[211], M[211]]
    )

    assert m_d0 == pytest.approx(M[421], abs=1e-9)
    assert m_dstar == pytest.approx(M[413], abs=1e-9)


def test_invariant_mass_requires_one_mass_per_particle():
    with pytest.raises(ValueError):
        physics.invariant_mass([(1.0, 0.0, 0.0)], [0.1, 0.2])


def test_delta_invariant_mass_matches_pdg_difference(decay):
    p = decay()

    dm = physics.delta_invariant_mass(p["soft"], p["kaon"], p["pion"])

    assert dm == pytest.approx(M[413] - M[421], abs=1e-9)


def test_delta_invariant_mass_uses_injected_mass_table(decay):
    p = decay()
    heavier_pion = dict(M)
    heavier_pion[211] = 0.2

    dm_default = physics.delta_invariant_mass(p["soft"], p["kaon"], p["pion"])
    dm_custom = physics.delta_invariant_mass(p["soft"], p["kaon"], p["pion"], heavier_pion)

    assert dm_custom != pytest.approx(dm_default)


def test_cos_theta_star_along_and_across_flight_direction(two_body):
    import vector

    d0 = vector.obj(px=2.0, py=0.0, pz=0.0, mass=M[421])

    kaon, pion = two_body(d0, M[321], M[211], (1.0, 0.0, 0.0))
    cts_along = physics.cos_theta_star((kaon.px, kaon.py, kaon.pz), (pion.px, pion.py, pion.pz))

    kaon, pion = two_body(d0, M[321], M[211], (0.0, 1.0, 0.0))
    cts_across = physics.cos_theta_star((kaon.px, kaon.py, kaon.pz), (pion.px, pion.py, pion.pz))

    assert cts_along == pytest.approx(1.0, abs=1e-9)
    assert cts_across == pytest.approx(0.0, abs=1e-9)


def test_compute_observables_reference_values():
    # mother along x, soft daughter slower than the mother: in the rest
    # frame it moves along -x
    obs = physics.compute_observables((1.0, 0.0, 0.0), 2.01, (0.05, 0.0, 0.0), 0.1396)

    mother = physics.build_four_vector((1.0, 0.0, 0.0), 2.01)
    soft = physics.build_four_vector((0.05, 0.0, 0.0), 0.1396)
    probe = physics.rest_frame_momentum(mother, soft)
    assert probe[0] == pytest.approx(-0.01793, abs=1e-5)

    assert obs.mass == pytest.approx(2.01)
    assert obs.pt == pytest.approx(1.0)
    assert obs.p == pytest.approx(1.0)
    assert obs.y == pytest.approx(0.0, abs=1e-12)
    assert obs.cos_theta_helicity == pytest.approx(1.0)
    assert obs.cos_theta_production == pytest.approx(0.0, abs=1e-12)
    assert obs.cos_theta_beam == pytest.approx(0.0, abs=1e-12)
    assert obs.theta_beam == pytest.approx(math.pi / 2)
    assert obs.phi_beam == pytest.approx(math.pi)


def test_compute_observables_ranges():
    rng = np.random.default_rng(42)
    for _ in range(50):
        mother = rng.normal(0.0, 3.0, size=3)
        mother[0] += 0.1
        soft = rng.normal(0.0, 0.5, size=3)
        obs = physics.compute_observables(mother, M[413], soft, M[211])

        for cos in (obs.cos_theta_beam, obs.cos_theta_production, obs.cos_theta_helicity):
            assert 0.0 <= cos <= 1.0
        assert 0.0 <= obs.theta_beam <= math.pi
        assert -math.pi < obs.phi_beam <= math.pi
        assert not any(math.isnan(v) for v in obs)


def test_compute_observables_invariant_under_rotation_about_beam():
    mother = np.array([2.0, 1.0, 0.7])
    soft = np.array([0.3, 0.05, 0.1])
    alpha = 0.9
    rot = np.array(
        [
            [math.cos(alpha), -math.sin(alpha), 0.0],
            [math.sin(alpha), math.cos(alpha), 0.0],
            [0.0, 0.0, 1.0],
        ]
    )

    ref = physics.compute_observables(mother, M[413], soft, M[211])
    rotated = physics.compute_observables(rot @ mother, M[413], rot @ soft, M[211])

    assert rotated.cos_theta_beam == pytest.approx(ref.cos_theta_beam)
    assert rotated.cos_theta_production == pytest.approx(ref.cos_theta_production)
    assert rotated.cos_theta_helicity == pytest.approx(ref.cos_theta_helicity)
    assert rotated.theta_beam == pytest.approx(ref.theta_beam)
    assert rotated.pt == pytest.approx(ref.pt)
    # phi* turns with the event
    dphi = (rotated.phi_beam - ref.phi_beam) % (2 * math.pi)
    assert dphi == pytest.approx(alpha)


@pytest.mark.parametrize(
    "mother",
    [(0.0, 0.0, 1.0), (0.0, 0.0, 0.0), (0.0, 0.0, -2.0)],
)
def test_compute_observables_rejects_zero_transverse_momentum(mother):
    with pytest.raises(KinematicsError):
        physics.compute_observables(mother, M[413], (0.1, 0.0, 0.0), M[211])


def test_rapidity_of_transverse_particle_is_zero():
    assert physics.rapidity((1.0, 1.0, 0.0), M[413]) == pytest.approx(0.0, abs=1e-12)
