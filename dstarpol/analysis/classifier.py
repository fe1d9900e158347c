"""
Machine-learning gate for D*+ candidates.

A classifier turns a candidate into a feature vector, asks a model for
per-class probabilities (background, prompt, non-prompt) and compares them
with per-pT-bin thresholds. Any object exposing `predict_proba(X)` can be
used as the model. Trained networks are loaded from PyTorch checkpoints
(see torch_model); SoftmaxModel is a NumPy linear model given inline in the
YAML or as a `.npz` file.
"""

import bisect
import logging
from pathlib import Path

import numpy as np

from dstarpol.analysis.exceptions import ConfigurationError, KinematicsError
from dstarpol.analysis.physics import (
    DEFAULT_MASS_TABLE,
    PDG_DSTAR,
    PDG_KAON,
    PDG_PION,
    cos_theta_star,
    delta_invariant_mass,
    invariant_mass,
    rapidity,
)
from dstarpol.analysis.selection import kaon_pion

logger = logging.getLogger(__name__)


def _candidate_tracks(candidate, two_prong, event):
    soft = event.tracks[candidate.soft_track_id]
    prong0, prong1 = (event.tracks[tid] for tid in two_prong.prong_ids)
    kaon, pion = kaon_pion(soft, prong0, prong1)
    if kaon is None:
        raise KinematicsError("D0 prongs do not match the K pi charge pattern")
    return soft, kaon, pion


FEATURE_FUNCTIONS = {
    "pt_cand": lambda c, s, k, pi, ev, mt: c.pt,
    "y_cand": lambda c, s, k, pi, ev, mt: rapidity(c.momentum, mt[PDG_DSTAR]),
    "delta_mass": lambda c, s, k, pi, ev, mt: delta_invariant_mass(
        s.momentum, k.momentum, pi.momentum, mt
    ),
    "d0_mass": lambda c, s, k, pi, ev, mt: invariant_mass(
        [k.momentum, pi.momentum], [mt[PDG_KAON], mt[PDG_PION]]
    ),
    "cos_theta_star": lambda c, s, k, pi, ev, mt: cos_theta_star(k.momentum, pi.momentum, mt),
    "pt_soft": lambda c, s, k, pi, ev, mt: s.pt,
    "pt_kaon": lambda c, s, k, pi, ev, mt: k.pt,
    "pt_pion": lambda c, s, k, pi, ev, mt: pi.pt,
    "magnetic_field": lambda c, s, k, pi, ev, mt: ev.magnetic_field,
}


def extract_features(candidate, two_prong, event, feature_names, mass_table=DEFAULT_MASS_TABLE):
    """
    Build the model input for one candidate.

    Returns a (1, n_features) float array in the order of `feature_names`.
    """
    soft, kaon, pion = _candidate_tracks(candidate, two_prong, event)
    row = [
        float(FEATURE_FUNCTIONS[name](candidate, soft, kaon, pion, event, mass_table))
        for name in feature_names
    ]
    return np.asarray(row, dtype=float).reshape(1, -1)


class SoftmaxModel:
    """Multinomial logistic regression: softmax(X @ W.T + b)."""

    def __init__(self, weights, biases):
        self.weights = np.atleast_2d(np.asarray(weights, dtype=float))
        self.biases = np.asarray(biases, dtype=float)
        if self.biases.shape != (self.weights.shape[0],):
            raise ConfigurationError(
                f"model has {self.weights.shape[0]} classes but {self.biases.size} biases"
            )

    @classmethod
    def from_npz(cls, path):
        with np.load(Path(path)) as data:
            return cls(data["weights"], data["biases"])

    @property
    def n_features(self):
        return self.weights.shape[1]

    def predict_proba(self, X):
        logits = np.asarray(X, dtype=float) @ self.weights.T + self.biases
        logits -= logits.max(axis=1, keepdims=True)
        expo = np.exp(logits)
        return expo / expo.sum(axis=1, keepdims=True)


def load_model(model_cfg):
    """
    Build the model described by the `classifier.model` config block.

    - `checkpoint`: PyTorch payload checkpoint, optionally with `device`
    - `path`: `.npz` file holding SoftmaxModel `weights` and `biases`
    - `weights` and `biases` given inline
    """
    if not isinstance(model_cfg, dict):
        raise ConfigurationError("'classifier.model' must be a mapping")
    if "checkpoint" in model_cfg:
        from dstarpol.analysis.torch_model import TorchModel

        return TorchModel.from_checkpoint(model_cfg["checkpoint"], device=model_cfg.get("device", "cpu"))
    if "path" in model_cfg:
        return SoftmaxModel.from_npz(model_cfg["path"])
    return SoftmaxModel(model_cfg["weights"], model_cfg["biases"])


class MulticlassClassifier:
    """
    Per-pT-bin multiclass selection.

    `thresholds[i]` holds one cut per class for pT bin i; `directions` tells
    whether a class score must stay below ("lt") or above ("gt") its cut.
    The default directions reject background-like and keep signal-like
    candidates for classes (background, prompt, non-prompt).
    """

    def __init__(self, model, feature_names, pt_bin_limits, thresholds,
                 directions=("lt", "gt", "gt"), mass_table=DEFAULT_MASS_TABLE):
        self.model = model
        self.feature_names = list(feature_names)
        self.pt_bin_limits = tuple(float(x) for x in pt_bin_limits)
        self.thresholds = np.asarray(thresholds, dtype=float)
        self.directions = tuple(directions)
        self.mass_table = mass_table

        unknown = [f for f in self.feature_names if f not in FEATURE_FUNCTIONS]
        if unknown:
            raise ConfigurationError(f"unknown classifier features: {unknown}")
        n_bins = len(self.pt_bin_limits) - 1
        if self.thresholds.shape != (n_bins, len(self.directions)):
            raise ConfigurationError(
                f"classifier thresholds must have shape ({n_bins}, {len(self.directions)}), "
                f"got {self.thresholds.shape}"
            )
        if any(d not in ("lt", "gt") for d in self.directions):
            raise ConfigurationError(f"threshold directions must be 'lt' or 'gt': {self.directions}")

    @classmethod
    def from_config(cls, cfg, pt_bin_limits, mass_table=DEFAULT_MASS_TABLE):
        """
        Build from the `classifier` config section. Returns None when the
        section is missing or disabled.

        See `load_model` for the accepted model blocks. Thresholds default
        to the cut pT binning unless the section defines its own
        `pt_bin_limits`.
        """
        if not cfg or not cfg.get("enabled", False):
            return None
        try:
            model_cfg = cfg["model"]
            features = cfg["features"]
            thresholds = cfg["thresholds"]
        except KeyError as exc:
            raise ConfigurationError(f"classifier section misses {exc.args[0]!r}") from exc
        try:
            model = load_model(model_cfg)
        except KeyError as exc:
            raise ConfigurationError(f"'classifier.model' misses {exc.args[0]!r}") from exc
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"cannot load classifier model: {exc}") from exc
        if model.n_features != len(features):
            raise ConfigurationError(
                f"model expects {model.n_features} features, {len(features)} configured"
            )
        return cls(
            model,
            features,
            cfg.get("pt_bin_limits", pt_bin_limits),
            thresholds,
            directions=tuple(cfg.get("directions", ("lt", "gt", "gt"))),
            mass_table=mass_table,
        )

    def pt_bin(self, pt):
        if pt < self.pt_bin_limits[0] or pt >= self.pt_bin_limits[-1]:
            return -1
        return bisect.bisect_right(self.pt_bin_limits, pt) - 1

    def score(self, candidate, two_prong, event):
        """Class probabilities for one candidate, as a 1-D array."""
        features = extract_features(candidate, two_prong, event, self.feature_names, self.mass_table)
        return np.asarray(self.model.predict_proba(features), dtype=float)[0]

    def passes(self, scores, pt_bin):
        if not 0 <= pt_bin < len(self.thresholds):
            return False
        for value, cut, direction in zip(scores, self.thresholds[pt_bin], self.directions):
            if direction == "lt" and not value < cut:
                return False
            if direction == "gt" and not value > cut:
                return False
        return True

    def is_selected(self, candidate, two_prong, event):
        """Binary verdict with the thresholds of the candidate pT bin."""
        ibin = self.pt_bin(candidate.pt)
        try:
            scores = self.score(candidate, two_prong, event)
        except (KinematicsError, KeyError) as exc:
            logger.debug("Classifier could not score candidate: %s", exc)
            return False
        return self.passes(scores, ibin)
