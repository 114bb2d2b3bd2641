"""
Multi-scale YOLO output decoder.

Each detection scale produces a raw grid tensor laid out as
[batch, anchors * (5 + num_classes), grid_h, grid_w] with per-anchor channels
[tx, ty, tw, th, objectness, class_0 ... class_{C-1}] (all logits).

Decoding splits every (image, band of grid rows) into an independent work unit.
Units run on a thread pool in no particular order; the only shared state is the
per-image CandidateBuffer, whose slot reservation is atomic.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .buffer import MAX_OUTPUT_BBOX_COUNT, CandidateBuffer
from .types import ScaleDescriptor

logger = logging.getLogger(__name__)

IGNORE_THRESH = 0.1


class ParseError(ValueError):
    """A frame's network outputs could not be turned into detections."""


class OutputLayerError(ParseError):
    """Output tensors do not match what the detector configuration expects."""


def sigmoid(x: np.ndarray) -> np.ndarray:
    with np.errstate(over="ignore"):
        return (1.0 / (1.0 + np.exp(-x))).astype(np.float32, copy=False)


class YoloLayerDecoder:
    """
    Decode per-scale grid tensors into per-image candidate buffers.

    Box law (per anchor at grid cell (row, col)):
        cx = (col - 0.5 + 2 * sigmoid(tx)) * input_w / grid_w
        cy = (row - 0.5 + 2 * sigmoid(ty)) * input_h / grid_h
        w  = (2 * sigmoid(tw)) ** 2 * anchor_w
        h  = (2 * sigmoid(th)) ** 2 * anchor_h
        conf = sigmoid(obj) * max_c sigmoid(cls_c)

    Anchors whose objectness is below `ignore_thresh` are skipped before any slot
    is reserved.
    """

    def __init__(
        self,
        scales: Sequence[ScaleDescriptor],
        num_classes: int,
        input_size: Tuple[int, int],
        ignore_thresh: float = IGNORE_THRESH,
        max_output_bbox_count: int = MAX_OUTPUT_BBOX_COUNT,
        num_workers: int = 4,
        rows_per_unit: int = 8,
    ):
        if not scales:
            raise ValueError("at least one detection scale is required")
        if num_classes < 1:
            raise ValueError(f"num_classes must be >= 1, got {num_classes}")
        if rows_per_unit < 1:
            raise ValueError(f"rows_per_unit must be >= 1, got {rows_per_unit}")

        self.scales = list(scales)
        self.num_classes = int(num_classes)
        self.input_w, self.input_h = (int(v) for v in input_size)
        self.ignore_thresh = float(ignore_thresh)
        self.max_output_bbox_count = int(max_output_bbox_count)
        self.rows_per_unit = int(rows_per_unit)

        self._anchors = [np.asarray(s.anchors, dtype=np.float32).reshape(-1, 2) for s in self.scales]
        self._warned_scales = set()
        self._executor = ThreadPoolExecutor(max_workers=num_workers) if num_workers > 0 else None

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "YoloLayerDecoder":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Public
    # ------------------------------------------------------------------ #
    def decode(
        self,
        outputs: Sequence[np.ndarray],
        buffers: Optional[List[CandidateBuffer]] = None,
    ) -> List[CandidateBuffer]:
        """
        Decode all scales of one batch.

        Args:
            outputs: one raw tensor per scale, in the same order as `scales`
            buffers: optional buffers to reuse (reset before writing), one per image

        Returns:
            one CandidateBuffer per image in the batch
        """

        if len(outputs) != len(self.scales):
            raise OutputLayerError(
                f"Expected {len(self.scales)} output tensors, got {len(outputs)}."
            )

        tensors = [self._as_batch(i, t) for i, t in enumerate(outputs)]
        batch = tensors[0].shape[0]
        for i, t in enumerate(tensors[1:], start=1):
            if t.shape[0] != batch:
                raise OutputLayerError(f"Scale {i} has batch {t.shape[0]}, scale 0 has batch {batch}.")

        if buffers is None:
            buffers = [CandidateBuffer(self.max_output_bbox_count) for _ in range(batch)]
        else:
            if len(buffers) != batch:
                raise ValueError(f"Got {len(buffers)} buffers for a batch of {batch}.")
            for buf in buffers:
                buf.reset()

        for idx, tensor in enumerate(tensors):
            self.decode_scale(idx, tensor, buffers)

        for b, buf in enumerate(buffers):
            if buf.dropped:
                logger.debug("image %d: candidate buffer full, dropped %d candidates", b, buf.dropped)
        return buffers

    def decode_scale(self, scale_idx: int, tensor: np.ndarray, buffers: List[CandidateBuffer]) -> None:
        """
        One launch: every (image, row band) unit of a single scale.
        """

        scale = self.scales[scale_idx]
        tensor = self._as_batch(scale_idx, tensor)
        num_anchors = scale.num_anchors
        planes = tensor.reshape(tensor.shape[0], num_anchors, -1, scale.grid_h, scale.grid_w)

        units = [
            (b, r0, min(r0 + self.rows_per_unit, scale.grid_h))
            for b in range(planes.shape[0])
            for r0 in range(0, scale.grid_h, self.rows_per_unit)
        ]

        if self._executor is None:
            for b, r0, r1 in units:
                self._decode_unit(planes[b], scale_idx, r0, r1, buffers[b])
            return

        futures = [
            self._executor.submit(self._decode_unit, planes[b], scale_idx, r0, r1, buffers[b])
            for b, r0, r1 in units
        ]
        for fu in as_completed(futures):
            fu.result()

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _as_batch(self, scale_idx: int, tensor: np.ndarray) -> np.ndarray:
        scale = self.scales[scale_idx]
        t = np.asarray(tensor, dtype=np.float32)

        if t.ndim == 3:
            t = t[None, ...]
        elif t.ndim in (1, 2):
            t = t.reshape(t.shape[0] if t.ndim == 2 else 1, -1, scale.grid_h, scale.grid_w)
        elif t.ndim != 4:
            raise OutputLayerError(f"Scale {scale_idx}: unsupported tensor rank {t.ndim} (shape {t.shape}).")

        if t.shape[2:] != (scale.grid_h, scale.grid_w):
            raise OutputLayerError(
                f"Scale {scale_idx}: expected grid {scale.grid_h}x{scale.grid_w}, got shape {t.shape}."
            )

        channels = t.shape[1]
        if channels % scale.num_anchors != 0 or channels // scale.num_anchors < 6:
            raise OutputLayerError(
                f"Scale {scale_idx}: {channels} channels cannot hold {scale.num_anchors} anchors of (5 + classes)."
            )

        actual_classes = channels // scale.num_anchors - 5
        if actual_classes != self.num_classes and scale_idx not in self._warned_scales:
            self._warned_scales.add(scale_idx)
            logger.warning(
                "Num classes mismatch on scale %d. Configured: %d, detected by network: %d",
                scale_idx,
                self.num_classes,
                actual_classes,
            )
        return t

    def _decode_unit(
        self,
        plane: np.ndarray,
        scale_idx: int,
        row_start: int,
        row_stop: int,
        buffer: CandidateBuffer,
    ) -> int:
        """
        Decode all anchors of grid rows [row_start, row_stop) of one image.

        plane: (anchors, 5 + C, grid_h, grid_w)
        Returns the number of records written.
        """

        scale = self.scales[scale_idx]
        anchors = self._anchors[scale_idx]
        band = plane[:, :, row_start:row_stop, :]

        objectness = sigmoid(band[:, 4])  # (A, R, W)
        a_idx, r_idx, c_idx = np.nonzero(objectness >= self.ignore_thresh)
        if a_idx.size == 0:
            return 0

        obj = objectness[a_idx, r_idx, c_idx]
        class_probs = sigmoid(band[a_idx, 5:, r_idx, c_idx])  # (K, C)
        # argmax returns the first maximum, so ties go to the lowest class id
        class_ids = np.argmax(class_probs, axis=1)
        max_probs = class_probs[np.arange(class_ids.size), class_ids]

        tx = sigmoid(band[a_idx, 0, r_idx, c_idx])
        ty = sigmoid(band[a_idx, 1, r_idx, c_idx])
        tw = sigmoid(band[a_idx, 2, r_idx, c_idx])
        th = sigmoid(band[a_idx, 3, r_idx, c_idx])

        rows = (r_idx + row_start).astype(np.float32)
        cols = c_idx.astype(np.float32)

        cx = (cols - 0.5 + 2.0 * tx) * self.input_w / scale.grid_w
        cy = (rows - 0.5 + 2.0 * ty) * self.input_h / scale.grid_h
        w = (2.0 * tw) ** 2 * anchors[a_idx, 0]
        h = (2.0 * th) ** 2 * anchors[a_idx, 1]

        records = np.stack(
            [cx, cy, w, h, obj * max_probs, class_ids.astype(np.float32)],
            axis=1,
        )
        return buffer.push(records)
