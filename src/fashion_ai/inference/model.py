from __future__ import annotations

from typing import Final, Protocol

import torch
import torch.nn as nn
from torch import Tensor

ARCHES: Final[tuple[str, ...]] = ("fashion_cnn", "resnet18")
_CNN_HIDDEN: Final[int] = 128
_RESNET_FEATURES: Final[int] = 512


class TorchModel(Protocol):
    """Anything that maps an NHWC ``[N, 28, 28, 1]`` batch to ``[N, n_classes]`` probabilities."""

    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> Tensor: ...
    def load_state_dict(self, sd: dict[str, Tensor]) -> object: ...


class FashionCNN(nn.Module):
    """Two conv blocks and a dense head, the classic Fashion-MNIST baseline."""

    def __init__(self, n_classes: int) -> None:
        super().__init__()
        self.features = nn.Sequential(
            nn.Conv2d(1, 32, kernel_size=3),
            nn.ReLU(),
            nn.MaxPool2d(2),
            nn.Conv2d(32, 64, kernel_size=3),
            nn.ReLU(),
            nn.MaxPool2d(2),
        )
        self.hidden = nn.Linear(64 * 5 * 5, _CNN_HIDDEN)
        self.fc = nn.Linear(_CNN_HIDDEN, n_classes)

    def forward(self, x: Tensor) -> Tensor:
        x = self.features(x)
        x = torch.flatten(x, 1)
        x = torch.relu(self.hidden(x))
        return self.fc(x)


class NhwcSoftmaxModel:
    """Wrap an NCHW logits network so it takes NHWC input and returns probabilities.

    State dicts load into and come out of the wrapped network unchanged.
    """

    def __init__(self, net: nn.Module) -> None:
        self._net = net

    @property
    def net(self) -> nn.Module:
        return self._net

    def eval(self) -> object:
        self._net.eval()
        return self

    def __call__(self, x: Tensor) -> Tensor:
        logits = self._net(x.permute(0, 3, 1, 2))
        return torch.softmax(logits, dim=1)

    def load_state_dict(self, sd: dict[str, Tensor]) -> object:
        return self._net.load_state_dict(sd)

    def state_dict(self) -> dict[str, Tensor]:
        return dict(self._net.state_dict())


def build_model(arch: str, n_classes: int) -> NhwcSoftmaxModel:
    if arch == "fashion_cnn":
        return NhwcSoftmaxModel(FashionCNN(n_classes))
    if arch == "resnet18":
        return NhwcSoftmaxModel(_build_resnet18(n_classes))
    raise ValueError(f"unsupported arch: {arch}")


def _build_resnet18(n_classes: int) -> nn.Module:
    from torchvision import models as tv_models

    inner = tv_models.resnet18(weights=None, num_classes=int(n_classes))
    # CIFAR-style stem for 28x28 single-channel input
    inner.conv1 = nn.Conv2d(1, 64, kernel_size=3, stride=1, padding=1, bias=False)
    inner.maxpool = nn.Identity()
    return inner


def build_fresh_state_dict(arch: str, n_classes: int) -> dict[str, Tensor]:
    return build_model(arch, n_classes).state_dict()


def validate_state_dict(sd: dict[str, Tensor], arch: str, n_classes: int) -> None:
    if arch not in ARCHES:
        raise ValueError(f"unsupported arch: {arch}")
    w = sd.get("fc.weight")
    b = sd.get("fc.bias")
    if w is None or b is None:
        raise ValueError("missing classifier weights in state dict")
    if w.ndim != 2 or b.ndim != 1:
        raise ValueError("invalid classifier tensor dimensions")
    if int(w.shape[0]) != n_classes or int(b.shape[0]) != n_classes:
        raise ValueError("classifier head size does not match n_classes")
    expected_in = _CNN_HIDDEN if arch == "fashion_cnn" else _RESNET_FEATURES
    if int(w.shape[1]) != expected_in:
        raise ValueError("classifier head in_features does not match backbone")
    stem_key = "features.0.weight" if arch == "fashion_cnn" else "conv1.weight"
    stem = sd.get(stem_key)
    if stem is None or stem.ndim != 4 or int(stem.shape[1]) != 1:
        raise ValueError(f"missing or invalid {stem_key} for 1-channel input")
    if arch == "resnet18":
        if "bn1.weight" not in sd or "bn1.bias" not in sd:
            raise ValueError("missing bn1 parameters")
        if not all(any(k.startswith(f"layer{i}.") for k in sd) for i in range(1, 5)):
            raise ValueError("missing resnet layer blocks")
