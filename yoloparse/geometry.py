from typing import Sequence, Tuple

import numpy as np


def iou(lbox: Sequence[float], rbox: Sequence[float]) -> float:
    """
    Intersection-over-union of two center-form boxes (cx, cy, w, h).

    Boxes that do not overlap on both axes give 0. A non-positive union also gives 0.
    """

    lcx, lcy, lw, lh = (float(v) for v in lbox[:4])
    rcx, rcy, rw, rh = (float(v) for v in rbox[:4])

    left = max(lcx - lw / 2, rcx - rw / 2)
    right = min(lcx + lw / 2, rcx + rw / 2)
    top = max(lcy - lh / 2, rcy - rh / 2)
    bottom = min(lcy + lh / 2, rcy + rh / 2)

    if top > bottom or left > right:
        return 0.0

    inter = (right - left) * (bottom - top)
    union = lw * lh + rw * rh - inter
    if union <= 0:
        return 0.0
    return inter / union


def iou_one_to_many(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    """
    Vectorized `iou` of one center-form box against boxes shaped (N, >=4).
    """

    boxes = np.asarray(boxes)
    if boxes.size == 0:
        return np.empty((0,), dtype=np.float32)

    cx, cy, w, h = box[0], box[1], box[2], box[3]
    bcx, bcy, bw, bh = boxes[:, 0], boxes[:, 1], boxes[:, 2], boxes[:, 3]

    left = np.maximum(cx - w / 2, bcx - bw / 2)
    right = np.minimum(cx + w / 2, bcx + bw / 2)
    top = np.maximum(cy - h / 2, bcy - bh / 2)
    bottom = np.minimum(cy + h / 2, bcy + bh / 2)

    overlap = (top <= bottom) & (left <= right)
    inter = np.where(overlap, (right - left) * (bottom - top), 0.0)
    union = w * h + bw * bh - inter

    with np.errstate(divide="ignore", invalid="ignore"):
        out = np.where(overlap & (union > 0), inter / union, 0.0)
    return out


def letterbox_to_original(
    box: Sequence[float],
    image_size: Tuple[int, int],
    input_size: Tuple[int, int],
    clip: bool = False,
) -> Tuple[float, float, float, float]:
    """
    Map a center-form box from letterboxed network space back to the original image.

    Args:
        box: (cx, cy, w, h) in network input pixels
        image_size: (cols, rows) of the original image
        input_size: (width, height) of the network input
        clip: clamp the result to the image bounds

    Returns:
        (left, top, right, bottom) in original image pixels
    """

    cols, rows = image_size
    input_w, input_h = input_size
    if cols <= 0 or rows <= 0:
        raise ValueError(f"image_size must be positive, got {image_size}")

    cx, cy, w, h = (float(v) for v in box[:4])
    r_w = input_w / float(cols)
    r_h = input_h / float(rows)

    left = cx - w / 2
    right = cx + w / 2
    top = cy - h / 2
    bottom = cy + h / 2

    if r_h > r_w:
        # width bound: padding sits above and below
        pad = (input_h - r_w * rows) / 2
        top -= pad
        bottom -= pad
        scale = r_w
    else:
        pad = (input_w - r_h * cols) / 2
        left -= pad
        right -= pad
        scale = r_h

    left, top, right, bottom = left / scale, top / scale, right / scale, bottom / scale

    if clip:
        left = min(max(left, 0.0), float(cols))
        right = min(max(right, 0.0), float(cols))
        top = min(max(top, 0.0), float(rows))
        bottom = min(max(bottom, 0.0), float(rows))

    return left, top, right, bottom


def get_rect(
    box: Sequence[float],
    image_size: Tuple[int, int],
    input_size: Tuple[int, int],
) -> Tuple[int, int, int, int]:
    """
    Integer (x, y, w, h) rectangle in original image pixels.

    Edges are truncated toward zero once in network space and again after scaling,
    so results match integer rectangles produced by OpenCV-based tooling.
    """

    cols, rows = image_size
    input_w, input_h = input_size
    if cols <= 0 or rows <= 0:
        raise ValueError(f"image_size must be positive, got {image_size}")

    cx, cy, w, h = (float(v) for v in box[:4])
    r_w = input_w / float(cols)
    r_h = input_h / float(rows)

    if r_h > r_w:
        pad = (input_h - r_w * rows) / 2
        edges = (cx - w / 2, cx + w / 2, cy - h / 2 - pad, cy + h / 2 - pad)
        scale = r_w
    else:
        pad = (input_w - r_h * cols) / 2
        edges = (cx - w / 2 - pad, cx + w / 2 - pad, cy - h / 2, cy + h / 2)
        scale = r_h

    left, right, top, bottom = (int(int(e) / scale) for e in edges)
    return left, top, right - left, bottom - top
