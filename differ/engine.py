"""Pixel-level image comparison.

The comparison follows the pixelmatch approach: colours are compared in
YIQ space with a perceptual distance, and pixels that only differ because
of anti-aliasing can be told apart from real changes by looking at their
3x3 neighbourhood. Everything is vectorised with numpy and processed in
row bands so full-page screenshots stay within a bounded amount of memory.
"""
import io
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from common.errors import DecodeError
from rabbit.models import DiffData

RGB = Tuple[int, int, int]

DEFAULT_THRESHOLD = 0.1
DEFAULT_SIGNIFICANCE_THRESHOLD = 1.0

# squared YIQ distance between black and white
_MAX_YIQ_DELTA = 35215.0

_ROWS_PER_BAND = 256
_CANDIDATES_PER_BATCH = 1 << 20

# neighbour offsets, column-major like the reference scan order
_NEIGHBOURS = tuple(
    (dx, dy) for dx in (-1, 0, 1) for dy in (-1, 0, 1) if (dx, dy) != (0, 0)
)


@dataclass(frozen=True)
class DiffOptions:
    threshold: float = DEFAULT_THRESHOLD
    include_aa: bool = False
    alpha: float = 0.1
    aa_color: RGB = (255, 255, 0)
    diff_color: RGB = (255, 0, 0)
    diff_color_alt: Optional[RGB] = (0, 255, 0)

    def __post_init__(self) -> None:
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {self.threshold}")
        if not 0.0 <= self.alpha <= 1.0:
            raise ValueError(f"alpha must be within [0, 1], got {self.alpha}")


@dataclass(frozen=True)
class DiffResult:
    pixel_diff: int
    total_pixels: int
    percentage_diff: float
    significant: bool
    width: int
    height: int
    diff_image: Optional[bytes] = None

    @property
    def dimensions(self) -> Tuple[int, int]:
        return self.width, self.height

    def to_diff_data(self) -> DiffData:
        return DiffData(
            pixel_diff=self.pixel_diff,
            percentage_diff=self.percentage_diff,
            total_pixels=self.total_pixels,
        )


def decode_image(data: bytes) -> np.ndarray:
    """Decode any Pillow-readable image into an ``(h, w, 4)`` uint8 RGBA array."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            rgba = img.convert("RGBA")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise DecodeError(f"Failed to decode image: {e}") from e

    return np.asarray(rgba, dtype=np.uint8)


def encode_png(pixels: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format="PNG")
    return buffer.getvalue()


def pad_to(pixels: np.ndarray, width: int, height: int) -> np.ndarray:
    """Place ``pixels`` at the top-left of a transparent ``width`` x ``height`` canvas."""
    h, w = pixels.shape[:2]
    if (w, h) == (width, height):
        return pixels
    canvas = np.zeros((height, width, 4), dtype=np.uint8)
    canvas[:h, :w] = pixels
    return canvas


def _blend(pixels: np.ndarray) -> np.ndarray:
    # composite over white
    rgb = pixels[..., :3].astype(np.float32)
    alpha = pixels[..., 3:4].astype(np.float32) / 255.0
    return 255.0 + (rgb - 255.0) * alpha


def _rgb2y(rgb: np.ndarray) -> np.ndarray:
    return rgb[..., 0] * 0.29889531 + rgb[..., 1] * 0.58662247 + rgb[..., 2] * 0.11448223


def _rgb2i(rgb: np.ndarray) -> np.ndarray:
    return rgb[..., 0] * 0.59597799 - rgb[..., 1] * 0.27417610 - rgb[..., 2] * 0.32180189


def _rgb2q(rgb: np.ndarray) -> np.ndarray:
    return rgb[..., 0] * 0.21147017 - rgb[..., 1] * 0.52261711 + rgb[..., 2] * 0.31114694


def color_delta(p1: np.ndarray, p2: np.ndarray, y_only: bool = False) -> np.ndarray:
    """Signed perceptual distance between two RGBA pixel arrays.

    Negative when the first pixel is brighter. With ``y_only`` only the
    brightness difference is returned.
    """
    b1 = _blend(p1)
    b2 = _blend(p2)
    y1 = _rgb2y(b1)
    y2 = _rgb2y(b2)
    y = y1 - y2

    if y_only:
        delta = y
    else:
        i = _rgb2i(b1) - _rgb2i(b2)
        q = _rgb2q(b1) - _rgb2q(b2)
        delta = 0.5053 * y * y + 0.299 * i * i + 0.1957 * q * q
        delta = np.where(y1 > y2, -delta, delta)

    same = np.all(p1 == p2, axis=-1)
    return np.where(same, np.float32(0.0), delta)


def _on_edge(xs: np.ndarray, ys: np.ndarray, width: int, height: int) -> np.ndarray:
    return ((xs == 0) | (xs == width - 1) | (ys == 0) | (ys == height - 1)).astype(np.int32)


def _neighbour(xs, ys, dx, dy, width, height):
    nx = xs + dx
    ny = ys + dy
    valid = (nx >= 0) & (nx < width) & (ny >= 0) & (ny < height)
    return np.clip(nx, 0, width - 1), np.clip(ny, 0, height - 1), valid


def _has_many_siblings(img: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    """More than two identical neighbours (edges count as one)."""
    height, width = img.shape[:2]
    zeroes = _on_edge(xs, ys, width, height)
    center = img[ys, xs]

    for dx, dy in _NEIGHBOURS:
        nx, ny, valid = _neighbour(xs, ys, dx, dy, width, height)
        zeroes += valid & np.all(img[ny, nx] == center, axis=-1)

    return zeroes > 2


def _antialiased(img: np.ndarray, other: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    """Which of the given pixels of ``img`` look like anti-aliasing.

    A pixel qualifies when its neighbourhood has both a darker and a brighter
    neighbour, at most two equal ones, and the darkest or brightest neighbour
    sits inside a flat area in both images.
    """
    height, width = img.shape[:2]
    n = xs.shape[0]
    zeroes = _on_edge(xs, ys, width, height)
    lo = np.zeros(n, dtype=np.float32)
    hi = np.zeros(n, dtype=np.float32)
    lo_x = np.zeros(n, dtype=np.intp)
    lo_y = np.zeros(n, dtype=np.intp)
    hi_x = np.zeros(n, dtype=np.intp)
    hi_y = np.zeros(n, dtype=np.intp)
    center = img[ys, xs]

    for dx, dy in _NEIGHBOURS:
        nx, ny, valid = _neighbour(xs, ys, dx, dy, width, height)
        delta = color_delta(center, img[ny, nx], y_only=True)

        is_zero = valid & (delta == 0)
        zeroes += is_zero

        below = valid & ~is_zero & (delta < lo)
        lo = np.where(below, delta, lo)
        lo_x = np.where(below, nx, lo_x)
        lo_y = np.where(below, ny, lo_y)

        above = valid & ~is_zero & ~below & (delta > hi)
        hi = np.where(above, delta, hi)
        hi_x = np.where(above, nx, hi_x)
        hi_y = np.where(above, ny, hi_y)

    candidate = (zeroes <= 2) & (lo != 0) & (hi != 0)
    flat_lo = _has_many_siblings(img, lo_x, lo_y) & _has_many_siblings(other, lo_x, lo_y)
    flat_hi = _has_many_siblings(img, hi_x, hi_y) & _has_many_siblings(other, hi_x, hi_y)
    return candidate & (flat_lo | flat_hi)


def _gray(pixels: np.ndarray, alpha: float) -> np.ndarray:
    y = _rgb2y(pixels[..., :3].astype(np.float32))
    a = alpha * pixels[..., 3].astype(np.float32) / 255.0
    value = np.clip(255.0 + (y - 255.0) * a, 0, 255).astype(np.uint8)
    out = np.empty(pixels.shape[:2] + (4,), dtype=np.uint8)
    out[..., 0] = value
    out[..., 1] = value
    out[..., 2] = value
    out[..., 3] = 255
    return out


def compare_pixels(
        img1: np.ndarray,
        img2: np.ndarray,
        options: DiffOptions = DiffOptions(),
        render: bool = True,
) -> Tuple[int, Optional[np.ndarray]]:
    """Count differing pixels between two equally sized RGBA arrays.

    Returns the count and, when ``render`` is set, the visualisation.
    """
    if img1.shape != img2.shape:
        raise ValueError(f"Image sizes do not match: {img1.shape} vs {img2.shape}")

    height, width = img1.shape[:2]
    output = _gray(img1, options.alpha) if render else None

    if np.array_equal(img1, img2):
        return 0, output

    max_delta = _MAX_YIQ_DELTA * options.threshold * options.threshold
    changed = np.zeros((height, width), dtype=bool)
    darker = np.zeros((height, width), dtype=bool)

    for top in range(0, height, _ROWS_PER_BAND):
        band = slice(top, top + _ROWS_PER_BAND)
        delta = color_delta(img1[band], img2[band])
        changed[band] = np.abs(delta) > max_delta
        darker[band] = delta < 0

    aa = np.zeros((height, width), dtype=bool)
    if not options.include_aa:
        ys, xs = np.nonzero(changed)
        for start in range(0, ys.shape[0], _CANDIDATES_PER_BATCH):
            by = ys[start:start + _CANDIDATES_PER_BATCH]
            bx = xs[start:start + _CANDIDATES_PER_BATCH]
            hit = _antialiased(img1, img2, bx, by) | _antialiased(img2, img1, bx, by)
            aa[by[hit], bx[hit]] = True

    diff = changed & ~aa

    if output is not None:
        output[aa] = (*options.aa_color, 255)
        if options.diff_color_alt is not None:
            output[diff & ~darker] = (*options.diff_color, 255)
            output[diff & darker] = (*options.diff_color_alt, 255)
        else:
            output[diff] = (*options.diff_color, 255)

    return int(np.count_nonzero(diff)), output


def is_significant(percentage_diff: float, significance_threshold: float) -> bool:
    return percentage_diff > significance_threshold


def compare_images(
        current: bytes,
        previous: bytes,
        options: DiffOptions = DiffOptions(),
        significance_threshold: float = DEFAULT_SIGNIFICANCE_THRESHOLD,
        render_diff: bool = True,
) -> DiffResult:
    """Diff two encoded images, padding the smaller one when sizes differ."""
    current_px = decode_image(current)
    previous_px = decode_image(previous)

    width = max(current_px.shape[1], previous_px.shape[1])
    height = max(current_px.shape[0], previous_px.shape[0])
    current_px = pad_to(current_px, width, height)
    previous_px = pad_to(previous_px, width, height)

    pixel_diff, visual = compare_pixels(previous_px, current_px, options, render=render_diff)

    total_pixels = width * height
    percentage_diff = pixel_diff / total_pixels * 100 if total_pixels else 0.0

    return DiffResult(
        pixel_diff=pixel_diff,
        total_pixels=total_pixels,
        percentage_diff=percentage_diff,
        significant=is_significant(percentage_diff, significance_threshold),
        width=width,
        height=height,
        diff_image=encode_png(visual) if visual is not None else None,
    )
