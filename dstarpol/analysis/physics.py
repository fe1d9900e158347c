"""
Kinematics for the D*+ -> D0 pi+ polarization analysis.

Four-vectors are scikit-hep `vector` objects; the rest-frame angles of the
soft pion are computed with NumPy. PDG masses are never looked up globally:
every function that needs one receives a mass table (see DEFAULT_MASS_TABLE).
"""

import math
from types import MappingProxyType
from typing import NamedTuple

import numpy as np
import vector

from dstarpol.analysis.exceptions import KinematicsError


PDG_PION = 211
PDG_KAON = 321
PDG_D0 = 421
PDG_DSTAR = 413

# GeV/c^2
DEFAULT_MASS_TABLE = MappingProxyType(
    {
        PDG_PION: 0.13957039,
        PDG_KAON: 0.493677,
        PDG_D0: 1.86484,
        PDG_DSTAR: 2.01026,
    }
)

BEAM_AXIS = np.array([0.0, 0.0, 1.0])


class AngularObservables(NamedTuple):
    """Output of compute_observables. Angles refer to the mother rest frame."""

    mass: float
    pt: float
    y: float
    p: float
    cos_theta_beam: float
    cos_theta_production: float
    cos_theta_helicity: float
    theta_beam: float
    phi_beam: float


def build_four_vector(momentum, mass):
    """
    Construct a four-vector from Cartesian momentum and a mass hypothesis.

    Parameters
    ----------
    momentum : sequence of 3 floats
        (px, py, pz) in GeV/c.
    mass : float
        Mass hypothesis in GeV/c^2.

    Returns
    -------
    vector.MomentumObject4D
    """
    px, py, pz = momentum
    return vector.obj(px=float(px), py=float(py), pz=float(pz), mass=float(mass))


def sum_momenta(*momenta):
    """Component-wise sum of 3-momenta."""
    return tuple(float(sum(c)) for c in zip(*momenta))


def invariant_mass(momenta, masses):
    """
    Invariant mass of a system of particles.

    Parameters
    ----------
    momenta : sequence of (px, py, pz)
    masses : sequence of float
        One mass hypothesis per particle.
    """
    total = None
    for momentum, mass in zip(momenta, masses, strict=True):
        four = build_four_vector(momentum, mass)
        total = four if total is None else total + four
    if total is None:
        return 0.0
    return float(total.mass)


def rapidity(momentum, mass):
    """Rapidity of a particle with the given momentum and mass hypothesis."""
    return float(build_four_vector(momentum, mass).rapidity)


def delta_invariant_mass(soft_momentum, kaon_momentum, pion_momentum, mass_table=DEFAULT_MASS_TABLE):
    """
    M(K pi pi_soft) - M(K pi) with PDG masses for the three tracks.
    """
    m_pi = mass_table[PDG_PION]
    m_k = mass_table[PDG_KAON]
    m_kpipi = invariant_mass(
        [kaon_momentum, pion_momentum, soft_momentum], [m_k, m_pi, m_pi]
    )
    m_kpi = invariant_mass([kaon_momentum, pion_momentum], [m_k, m_pi])
    return m_kpipi - m_kpi


def rest_frame_momentum(mother, daughter):
    """
    Three-momentum of `daughter` in the rest frame of `mother`.

    Both arguments are four-vectors; the result is a NumPy array (px, py, pz).
    """
    boosted = daughter.boostCM_of_p4(mother)
    return np.array([boosted.px, boosted.py, boosted.pz], dtype=float)


def cos_theta_star(kaon_momentum, pion_momentum, mass_table=DEFAULT_MASS_TABLE):
    """
    Cosine of the kaon emission angle in the D0 rest frame, measured with
    respect to the D0 flight direction.
    """
    d0_momentum = np.array(sum_momenta(kaon_momentum, pion_momentum))
    d0_p = np.linalg.norm(d0_momentum)
    if d0_p <= 0.0:
        raise KinematicsError("D0 candidate with zero momentum has no flight direction")
    d0 = build_four_vector(d0_momentum, mass_table[PDG_D0])
    kaon = build_four_vector(kaon_momentum, mass_table[PDG_KAON])
    kaon_cm = rest_frame_momentum(d0, kaon)
    kaon_cm_p = np.linalg.norm(kaon_cm)
    if kaon_cm_p <= 0.0:
        raise KinematicsError("kaon at rest in the D0 rest frame")
    return float(np.dot(kaon_cm, d0_momentum) / (kaon_cm_p * d0_p))


def compute_observables(mother_momentum, mother_mass, soft_momentum, soft_mass):
    """
    Polarization observables of a two-body decay.

    The soft daughter is boosted into the mother rest frame (the probe
    vector) and compared with three lab-frame reference axes:

    - production: (py/pt, -px/pt, 0), normal to the mother pT in the
      transverse plane
    - helicity: mother momentum direction
    - beam: z axis

    Parameters
    ----------
    mother_momentum, soft_momentum : sequence of 3 floats
        Lab-frame (px, py, pz) in GeV/c.
    mother_mass, soft_mass : float
        Mass hypotheses in GeV/c^2.

    Returns
    -------
    AngularObservables
        The three cosines are absolute values in [0, 1], theta* is in
        [0, pi] and phi* in (-pi, pi].

    Raises
    ------
    KinematicsError
        If the mother pt or p is not strictly positive, or the probe vector
        vanishes; none of the angles are defined in that case.
    """
    px, py, pz = (float(c) for c in mother_momentum)
    pt = math.hypot(px, py)
    p = math.sqrt(px * px + py * py + pz * pz)
    if not pt > 0.0 or not p > 0.0:
        raise KinematicsError(
            f"mother momentum ({px}, {py}, {pz}) has pt={pt}, p={p}; "
            "reference axes need pt > 0 and p > 0"
        )

    mother = build_four_vector((px, py, pz), mother_mass)
    soft = build_four_vector(soft_momentum, soft_mass)
    probe = rest_frame_momentum(mother, soft)
    probe_p = float(np.linalg.norm(probe))
    if not probe_p > 0.0:
        raise KinematicsError("soft daughter is at rest in the mother rest frame")

    normal_axis = np.array([py / pt, -px / pt, 0.0])
    helicity_axis = np.array([px / p, py / p, pz / p])

    cos_beam = float(np.dot(BEAM_AXIS, probe)) / probe_p
    cos_production = float(np.dot(normal_axis, probe)) / probe_p
    cos_helicity = float(np.dot(helicity_axis, probe)) / probe_p

    # rounding can push |cos| a few ulp above one
    theta_beam = math.acos(min(max(cos_beam, -1.0), 1.0))
    phi_beam = math.atan2(probe[1], probe[0])
    if phi_beam <= -math.pi:
        phi_beam = math.pi

    return AngularObservables(
        mass=float(mother_mass),
        pt=pt,
        y=float(mother.rapidity),
        p=p,
        cos_theta_beam=min(abs(cos_beam), 1.0),
        cos_theta_production=min(abs(cos_production), 1.0),
        cos_theta_helicity=min(abs(cos_helicity), 1.0),
        theta_beam=theta_beam,
        phi_beam=phi_beam,
    )
