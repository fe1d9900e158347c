"""
PyTorch model for the D*+ classifier gate.

Checkpoints are "payload" dicts saved with torch.save:
  { "state_dict": ..., "input_dim": int, "num_classes": int,
    "cfg": {"hidden_dim", "num_layers", "dropout_rate", ...},
    "scaler": None | {"mean": array, "std": array}, ... }
"""

import logging
from pathlib import Path

import numpy as np
import torch
import torch.nn as nn

from dstarpol.analysis.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class DstarClassifierNet(nn.Module):
    """MLP with one output logit per class (background, prompt, non-prompt)."""

    def __init__(self, input_dim, num_classes=3, hidden_dim=512, num_layers=4, dropout_rate=0.3):
        super().__init__()
        layers = []
        in_dim = input_dim
        h = hidden_dim

        for _ in range(num_layers):
            layers.append(nn.Linear(in_dim, h))
            layers.append(nn.ReLU())
            layers.append(nn.BatchNorm1d(h))
            layers.append(nn.Dropout(dropout_rate))
            in_dim = h
            h = max(h // 2, 8)

        layers.append(nn.Linear(in_dim, num_classes))
        self.network = nn.Sequential(*layers)

    def forward(self, x):
        return self.network(x)


class TorchModel:
    """
    `predict_proba` over a trained DstarClassifierNet.

    Inputs are standardised with the checkpoint scaler, if it has one, and
    the class probabilities are the softmax of the logits.
    """

    def __init__(self, network, scaler=None, device="cpu"):
        self.device = device
        self.network = network.to(device)
        self.network.eval()
        self.mean = self.std = None
        if scaler is not None:
            self.mean = np.asarray(scaler["mean"], dtype=np.float32).reshape(1, -1)
            self.std = np.asarray(scaler["std"], dtype=np.float32).reshape(1, -1)

    @classmethod
    def from_checkpoint(cls, path, device="cpu"):
        ckpt = torch.load(Path(path), map_location="cpu", weights_only=False)
        if not (isinstance(ckpt, dict) and "state_dict" in ckpt and "input_dim" in ckpt):
            raise ConfigurationError(
                f"{path} is not a payload checkpoint. "
                f"Expected dict with keys: state_dict, input_dim, num_classes, cfg, scaler."
            )

        cfg = ckpt.get("cfg") or {}
        network = DstarClassifierNet(
            input_dim=int(ckpt["input_dim"]),
            num_classes=int(ckpt.get("num_classes", 3)),
            hidden_dim=int(cfg.get("hidden_dim", 512)),
            num_layers=int(cfg.get("num_layers", 4)),
            dropout_rate=float(cfg.get("dropout_rate", 0.3)),
        )
        try:
            network.load_state_dict(ckpt["state_dict"], strict=True)
        except RuntimeError as exc:
            raise ConfigurationError(f"{path}: state_dict does not match the network: {exc}") from exc

        logger.info(
            "Loaded classifier %s (%d features, %d classes)",
            path, network.network[0].in_features, network.network[-1].out_features,
        )
        return cls(network, scaler=ckpt.get("scaler"), device=device)

    @property
    def n_features(self):
        return self.network.network[0].in_features

    @torch.no_grad()
    def predict_proba(self, X):
        X = np.asarray(X, dtype=np.float32)
        if self.mean is not None:
            X = (X - self.mean) / self.std
        x = torch.tensor(X, dtype=torch.float32, device=self.device)
        probs = torch.softmax(self.network(x), dim=1)
        return probs.detach().cpu().numpy()
