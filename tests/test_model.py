from __future__ import annotations

import pytest
import torch

from fashion_ai.inference.model import (
    FashionCNN,
    build_fresh_state_dict,
    build_model,
    validate_state_dict,
)


@pytest.mark.parametrize("arch", ["fashion_cnn", "resnet18"])
def test_built_model_maps_nhwc_to_probabilities(arch: str) -> None:
    model = build_model(arch, 10)
    model.eval()
    with torch.no_grad():
        out = model(torch.rand((2, 28, 28, 1)))
    assert list(out.shape) == [2, 10]
    assert torch.allclose(out.sum(dim=1), torch.ones(2), atol=1e-5)
    validate_state_dict(build_fresh_state_dict(arch, 10), arch, 10)


def test_fashion_cnn_logits_shape() -> None:
    net = FashionCNN(10)
    assert list(net(torch.zeros((1, 1, 28, 28))).shape) == [1, 10]


def test_unknown_arch_rejected() -> None:
    with pytest.raises(ValueError):
        build_model("vgg", 10)
    with pytest.raises(ValueError):
        validate_state_dict({}, "vgg", 10)


def test_validate_state_dict_catches_head_and_stem_problems() -> None:
    sd = build_fresh_state_dict("fashion_cnn", 10)
    with pytest.raises(ValueError):
        validate_state_dict(sd, "fashion_cnn", 5)
    bad_stem = dict(sd)
    bad_stem["features.0.weight"] = torch.zeros((32, 3, 3, 3))
    with pytest.raises(ValueError):
        validate_state_dict(bad_stem, "fashion_cnn", 10)
    no_head = {k: v for k, v in sd.items() if not k.startswith("fc.")}
    with pytest.raises(ValueError):
        validate_state_dict(no_head, "fashion_cnn", 10)
