"""Preprocessing variants for the renewal CAPTCHA.

The challenge is a short run of digits drawn over noise lines.  Each
variant re-encodes it differently so the classifier gets several chances
at the same answer:

  original          untouched bytes
  white-background  binarized, black text on white
  black-background  binarized, white text on black
  high-contrast     normalized then hard-thresholded
  edge-detection    Laplacian edges, inverted, thresholded

Before any derived variant runs, solid black pixels (the site paints
anti-bot fill in pure #000000) are replaced with white.

Everything here is pure: bytes in, bytes out, no I/O.  ``save_variants``
is the one filesystem helper and lives apart from ``transform``.
"""

from __future__ import annotations

import io
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import numpy as np
from PIL import Image, ImageFilter, ImageOps

logger = logging.getLogger(__name__)

CANVAS_SIZE = (300, 90)
BRIGHTNESS_THRESHOLD = 150
CONTRAST = 0.3
HIGH_CONTRAST_THRESHOLD = 150
EDGE_THRESHOLD = 200

# 3x3 Laplacian-style sharpening kernel.
EDGE_KERNEL = ImageFilter.Kernel(
    (3, 3), (-1, -1, -1, -1, 8, -1, -1, -1, -1), scale=1,
)

PNG = "image/png"

VARIANT_NAMES = (
    "original",
    "white-background",
    "black-background",
    "high-contrast",
    "edge-detection",
)


@dataclass(frozen=True)
class ChallengeImage:
    """Raw CAPTCHA as served by the site."""
    data: bytes
    mime_type: str = PNG


@dataclass(frozen=True)
class TransformVariant:
    name: str
    data: bytes
    mime_type: str = PNG


def _decode(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img.convert("RGB")


def _encode(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _contrast_lut(amount: float) -> list[int]:
    factor = (amount + 1) / (1 - amount)
    return [min(255, max(0, int(factor * (v - 127) + 127))) for v in range(256)]


def _threshold_lut(cutoff: int) -> list[int]:
    return [0 if v < cutoff else 255 for v in range(256)]


_CONTRAST_LUT = _contrast_lut(CONTRAST)


def replace_black(img: Image.Image) -> Image.Image:
    """Turn exact #000000 pixels white."""
    arr = np.array(img.convert("RGB"))
    arr[np.all(arr == 0, axis=2)] = 255
    return Image.fromarray(arr)


def binarize(img: Image.Image, threshold: int = BRIGHTNESS_THRESHOLD) -> Image.Image:
    """Mean-of-RGB below *threshold* -> black, everything else -> white."""
    arr = np.asarray(img.convert("RGB"), dtype=np.uint16)
    dark = arr.sum(axis=2) < threshold * 3
    return Image.fromarray(np.where(dark, 0, 255).astype(np.uint8))


def _canonical(img: Image.Image) -> Image.Image:
    # resize, contrast, greyscale, normalize
    img = img.resize(CANVAS_SIZE, Image.Resampling.BILINEAR)
    img = img.convert("L").point(_CONTRAST_LUT)
    return ImageOps.autocontrast(img)


def white_background(img: Image.Image) -> Image.Image:
    return _canonical(binarize(img))


def black_background(img: Image.Image) -> Image.Image:
    return ImageOps.invert(white_background(img))


def high_contrast(img: Image.Image) -> Image.Image:
    img = img.resize(CANVAS_SIZE, Image.Resampling.BILINEAR).convert("L")
    img = ImageOps.autocontrast(img)
    return img.point(_threshold_lut(HIGH_CONTRAST_THRESHOLD))


def edge_detection(img: Image.Image) -> Image.Image:
    img = img.resize(CANVAS_SIZE, Image.Resampling.BILINEAR).convert("L")
    img = ImageOps.invert(img.filter(EDGE_KERNEL))
    return img.point(_threshold_lut(EDGE_THRESHOLD))


DERIVED_TRANSFORMS: dict[str, Callable[[Image.Image], Image.Image]] = {
    "white-background": white_background,
    "black-background": black_background,
    "high-contrast": high_contrast,
    "edge-detection": edge_detection,
}


def _run_transform(name: str, fn: Callable, source: Image.Image) -> TransformVariant:
    return TransformVariant(name=name, data=_encode(fn(source)), mime_type=PNG)


def transform(image: ChallengeImage, max_workers: int = 4) -> list[TransformVariant]:
    """Build every variant of *image*, in ``VARIANT_NAMES`` order.

    A transform that raises is logged and left out; the rest still run.
    ``original`` survives even when the image cannot be decoded at all.
    """
    variants: dict[str, TransformVariant] = {
        "original": TransformVariant("original", image.data, image.mime_type),
    }

    try:
        source = replace_black(_decode(image.data))
    except Exception as e:
        logger.warning("Could not decode challenge image (%s): %s", image.mime_type, e)
        return [variants["original"]]

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {
            executor.submit(_run_transform, name, fn, source.copy()): name
            for name, fn in DERIVED_TRANSFORMS.items()
        }
        for future in as_completed(futures):
            name = futures[future]
            try:
                variants[name] = future.result()
            except Exception as e:
                logger.warning("Transform %s failed: %s", name, e)

    return [variants[name] for name in VARIANT_NAMES if name in variants]


def _extension(mime_type: str) -> str:
    sub = mime_type.split("/")[-1].lower()
    return "jpg" if sub == "jpeg" else sub


def save_variants(
    variants: list[TransformVariant], directory: str | Path, stem: str,
) -> list[Path]:
    """Write each variant to ``{directory}/{stem}_{name}.{ext}``."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for v in variants:
        path = directory / f"{stem}_{v.name}.{_extension(v.mime_type)}"
        path.write_bytes(v.data)
        paths.append(path)
    return paths
