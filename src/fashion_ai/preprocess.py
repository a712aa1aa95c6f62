from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Final

import torch
from PIL import Image, ImageOps
from torch import Tensor

from .config import ResizePolicy
from .errors import AppError, ErrorCode, app_error
from .inference.types import PreprocessOutput

IMAGE_SIZE: Final[int] = 28
_PREPROCESS_SIGNATURE: Final[str] = "v1/gray-mean+resize28-{policy}+unit+nhwc"
_NATIVE_MODES: Final[dict[str, int]] = {"L": 1, "RGB": 3, "RGBA": 4}
_ALPHA_MODES: Final[frozenset[str]] = frozenset({"P", "LA", "PA"})


@dataclass(frozen=True)
class PreprocessOptions:
    resize_policy: ResizePolicy = "bilinear"
    visualize: bool = False
    visualize_max_kb: int = 16


def run_preprocess(img: Image.Image, opts: PreprocessOptions) -> PreprocessOutput:
    """Turn a decoded image into the model input tensor ``[1, 28, 28, 1]``.

    Grayscale is the plain mean of R, G and B (alpha ignored), resized with
    ``opts.resize_policy`` and scaled into ``[0, 1]``.
    """
    try:
        gray = _to_grayscale(img)
        resized = _resize(gray, IMAGE_SIZE, IMAGE_SIZE, opts.resize_policy)
        unit = torch.clamp(resized / 255.0, 0.0, 1.0)
        t = unit.reshape(1, IMAGE_SIZE, IMAGE_SIZE, 1).contiguous()

        visual: bytes | None = None
        if opts.visualize:
            visual = _visualize_png(unit, opts.visualize_max_kb)
        return PreprocessOutput(tensor=t, visual_png=visual)
    except AppError:
        raise
    except (ValueError, OSError, RuntimeError, TypeError) as exc:
        raise app_error(ErrorCode.invalid_image, str(exc)) from None


def preprocess_signature(policy: ResizePolicy = "bilinear") -> str:
    return _PREPROCESS_SIGNATURE.format(policy=policy)


def _to_grayscale(img: Image.Image) -> Tensor:
    width, height = img.size
    if width <= 0 or height <= 0:
        raise app_error(ErrorCode.invalid_image, "image has zero width or height")
    tmp = ImageOps.exif_transpose(img)
    if tmp is None:
        raise app_error(ErrorCode.invalid_image, "EXIF transpose failed")
    src: Image.Image = tmp
    if src.mode not in _NATIVE_MODES:
        src = src.convert("RGBA" if src.mode in _ALPHA_MODES else "RGB")
    channels = _NATIVE_MODES[src.mode]
    width, height = src.size

    buf = bytearray(src.tobytes())
    if len(buf) != width * height * channels:
        raise app_error(ErrorCode.invalid_image, "unexpected pixel buffer size")
    pixels = torch.frombuffer(buf, dtype=torch.uint8).reshape(height, width, channels)
    if channels == 1:
        return pixels[:, :, 0].to(dtype=torch.float32)
    return pixels[:, :, :3].to(dtype=torch.float32).mean(dim=2)


def _resize(gray: Tensor, out_h: int, out_w: int, policy: ResizePolicy) -> Tensor:
    if policy == "nearest":
        return _resize_nearest(gray, out_h, out_w)
    if policy == "bilinear":
        return _resize_bilinear(gray, out_h, out_w)
    raise ValueError(f"unknown resize policy: {policy}")


def _source_positions(n_in: int, n_out: int) -> tuple[Tensor, Tensor, Tensor]:
    # No corner alignment and no half-pixel offset: pos = r * (n_in / n_out)
    pos = torch.arange(n_out, dtype=torch.float32) * (n_in / n_out)
    lo = torch.clamp(torch.floor(pos).to(dtype=torch.long), max=n_in - 1)
    hi = torch.clamp(lo + 1, max=n_in - 1)
    frac = pos - lo.to(dtype=torch.float32)
    return lo, hi, frac


def _resize_bilinear(gray: Tensor, out_h: int, out_w: int) -> Tensor:
    in_h, in_w = int(gray.shape[0]), int(gray.shape[1])
    y0, y1, fy = _source_positions(in_h, out_h)
    x0, x1, fx = _source_positions(in_w, out_w)
    # Horizontal pass on the two source rows, then vertical blend
    top = gray[y0]
    bottom = gray[y1]
    top = top[:, x0] + (top[:, x1] - top[:, x0]) * fx
    bottom = bottom[:, x0] + (bottom[:, x1] - bottom[:, x0]) * fx
    return top + (bottom - top) * fy.unsqueeze(1)


def _resize_nearest(gray: Tensor, out_h: int, out_w: int) -> Tensor:
    in_h, in_w = int(gray.shape[0]), int(gray.shape[1])
    ys, _, _ = _source_positions(in_h, out_h)
    xs, _, _ = _source_positions(in_w, out_w)
    return gray[ys][:, xs]


def _visualize_png(unit: Tensor, max_kb: int) -> bytes | None:
    scale = 4
    data = bytes(torch.round(unit * 255.0).to(dtype=torch.uint8).flatten().tolist())
    img = Image.frombytes("L", (IMAGE_SIZE, IMAGE_SIZE), data)
    vis = img.resize((IMAGE_SIZE * scale, IMAGE_SIZE * scale), resample=Image.Resampling.NEAREST)
    buf = io.BytesIO()
    vis.save(buf, format="PNG", optimize=True)
    b = buf.getvalue()
    if len(b) > max_kb * 1024:
        return None
    return b
