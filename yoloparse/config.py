from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .buffer import MAX_OUTPUT_BBOX_COUNT
from .decoder import IGNORE_THRESH
from .types import ScaleDescriptor

PathLike = Union[str, Path]

# Anchor tables: one flat (w0, h0, w1, h1, ...) tuple per scale, in input pixels.
YOLOV5_ANCHORS: Tuple[Tuple[float, ...], ...] = (
    (10, 13, 16, 30, 33, 23),
    (30, 61, 62, 45, 59, 119),
    (116, 90, 156, 198, 373, 326),
)
YOLOV5_STRIDES: Tuple[int, ...] = (8, 16, 32)

# Darknet-style tables: one shared anchor list, masks pick anchors per output layer
# (layers ordered by ascending grid size).
YOLOV3_ANCHORS: Tuple[float, ...] = (
    10.0, 13.0, 16.0, 30.0, 33.0, 23.0, 30.0, 61.0, 62.0,
    45.0, 59.0, 119.0, 116.0, 90.0, 156.0, 198.0, 373.0, 326.0,
)
YOLOV3_MASKS: Tuple[Tuple[int, ...], ...] = ((6, 7, 8), (3, 4, 5), (0, 1, 2))

YOLOV3_TINY_ANCHORS: Tuple[float, ...] = (10, 14, 23, 27, 37, 58, 81, 82, 135, 169, 344, 319)
YOLOV3_TINY_MASKS: Tuple[Tuple[int, ...], ...] = ((3, 4, 5), (1, 2, 3))

# YOLOv2 anchors are in grid units.
YOLOV2_ANCHORS: Tuple[float, ...] = (
    0.57273, 0.677385, 1.87446, 2.06253, 3.33843,
    5.47434, 7.88282, 3.52778, 9.77052, 9.16828,
)

FAMILIES = ("yolov5", "yolov4", "yolov3", "yolov3_tiny", "yolov2", "yolov2_tiny", "tlt")


@dataclass(frozen=True)
class DetectorConfig:
    family: str = "yolov5"
    input_width: int = 608
    input_height: int = 608
    num_classes: int = 80
    anchors: Tuple[Tuple[float, ...], ...] = YOLOV5_ANCHORS
    strides: Tuple[int, ...] = YOLOV5_STRIDES
    ignore_thresh: float = IGNORE_THRESH
    conf_thresh: float = 0.4
    nms_thresh: float = 0.5
    max_output_bbox_count: int = MAX_OUTPUT_BBOX_COUNT
    num_workers: int = 4
    labels_path: Optional[str] = None
    # (class_id, threshold) pairs; a dict is accepted and normalized
    class_conf_thresholds: Tuple[Tuple[int, float], ...] = ()

    def __post_init__(self) -> None:
        if self.family not in FAMILIES:
            raise ValueError(f"family must be one of {FAMILIES}, got {self.family!r}")
        if self.input_width <= 0 or self.input_height <= 0:
            raise ValueError("input_width and input_height must be > 0")
        if self.num_classes < 1:
            raise ValueError("num_classes must be >= 1")
        if len(self.anchors) != len(self.strides):
            raise ValueError(
                f"anchors has {len(self.anchors)} scales but strides has {len(self.strides)}"
            )
        for i, table in enumerate(self.anchors):
            if not table or len(table) % 2 != 0:
                raise ValueError(f"anchors[{i}] must hold (w, h) pairs")
        for stride in self.strides:
            if stride <= 0:
                raise ValueError("strides must be > 0")
        for name in ("ignore_thresh", "conf_thresh", "nms_thresh"):
            value = getattr(self, name)
            if value < 0.0 or value > 1.0:
                raise ValueError(f"{name} must be in [0, 1]")
        pairs = self.class_conf_thresholds
        if isinstance(pairs, dict):
            pairs = pairs.items()
        pairs = tuple(sorted((int(cls), float(thresh)) for cls, thresh in pairs))
        object.__setattr__(self, "class_conf_thresholds", pairs)
        for cls, thresh in pairs:
            if thresh < 0.0 or thresh > 1.0:
                raise ValueError(f"class_conf_thresholds[{cls}] must be in [0, 1]")
        if self.max_output_bbox_count < 1:
            raise ValueError("max_output_bbox_count must be >= 1")
        if self.num_workers < 0:
            raise ValueError("num_workers must be >= 0")

    @property
    def input_size(self) -> Tuple[int, int]:
        return self.input_width, self.input_height

    def scales(self) -> List[ScaleDescriptor]:
        out = []
        for table, stride in zip(self.anchors, self.strides):
            pairs = tuple((float(table[i]), float(table[i + 1])) for i in range(0, len(table), 2))
            out.append(
                ScaleDescriptor(
                    grid_w=self.input_width // stride,
                    grid_h=self.input_height // stride,
                    anchors=pairs,
                )
            )
        return out


def _require_number(payload: Dict[str, Any], key: str) -> float:
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return float(value)


def _require_int(payload: Dict[str, Any], key: str) -> int:
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return int(value)


def _number_table(value: Any, key: str) -> Tuple[Tuple[float, ...], ...]:
    if not isinstance(value, list) or not all(isinstance(row, list) for row in value):
        raise ValueError(f"{key} must be a list of number lists")
    out = []
    for row in value:
        for v in row:
            if isinstance(v, bool) or not isinstance(v, (int, float)):
                raise ValueError(f"{key} entries must be numbers")
        out.append(tuple(float(v) for v in row))
    return tuple(out)


def _int_list(value: Any, key: str) -> Tuple[int, ...]:
    if not isinstance(value, list) or not all(isinstance(v, int) and not isinstance(v, bool) for v in value):
        raise ValueError(f"{key} must be a list of integers")
    return tuple(value)


def load_detector_config(path: PathLike) -> DetectorConfig:
    """
    Load a DetectorConfig from JSON. Missing keys keep their defaults.

        {
          "family": "yolov5",
          "input_width": 608,
          "num_classes": 80,
          "anchors": [[10, 13, 16, 30, 33, 23], [30, 61, 62, 45, 59, 119], [116, 90, 156, 198, 373, 326]],
          "strides": [8, 16, 32],
          "labels_path": "labels.txt"
        }
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Detector config not found: {path}")
    raw = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid detector config JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Detector config must be a JSON object")

    allowed = {
        "family",
        "input_width",
        "input_height",
        "num_classes",
        "anchors",
        "strides",
        "ignore_thresh",
        "conf_thresh",
        "nms_thresh",
        "max_output_bbox_count",
        "num_workers",
        "labels_path",
        "class_conf_thresholds",
    }
    unknown = sorted(set(payload.keys()) - allowed)
    if unknown:
        raise ValueError(f"Unknown detector config keys: {unknown}")

    kwargs: Dict[str, Any] = {}
    if "family" in payload:
        if not isinstance(payload["family"], str):
            raise ValueError("family must be a string")
        kwargs["family"] = payload["family"].lower()
    for key in ("input_width", "input_height", "num_classes", "max_output_bbox_count", "num_workers"):
        if key in payload:
            kwargs[key] = _require_int(payload, key)
    for key in ("ignore_thresh", "conf_thresh", "nms_thresh"):
        if key in payload:
            kwargs[key] = _require_number(payload, key)
    if "anchors" in payload:
        kwargs["anchors"] = _number_table(payload["anchors"], "anchors")
    if "strides" in payload:
        kwargs["strides"] = _int_list(payload["strides"], "strides")
    if "class_conf_thresholds" in payload:
        table = payload["class_conf_thresholds"]
        if not isinstance(table, dict):
            raise ValueError("class_conf_thresholds must be an object")
        thresholds: Dict[int, float] = {}
        for key, value in table.items():
            if not str(key).isdigit():
                raise ValueError("class_conf_thresholds keys must be class ids")
            thresholds[int(key)] = _require_number(table, key)
        kwargs["class_conf_thresholds"] = tuple(sorted(thresholds.items()))
    if "labels_path" in payload:
        labels = payload["labels_path"]
        if labels is not None:
            if not isinstance(labels, str):
                raise ValueError("labels_path must be a string if provided")
            labels_path = Path(labels)
            if not labels_path.is_absolute():
                labels_path = (path.parent / labels_path).resolve()
            kwargs["labels_path"] = str(labels_path)

    return DetectorConfig(**kwargs)


def darknet_anchor_tables(anchors: Sequence[float], masks: Sequence[Sequence[int]]) -> List[List[float]]:
    """
    Expand a shared anchor list + per-layer masks into one flat (w, h, ...) table per layer.
    """

    tables = []
    for mask in masks:
        table: List[float] = []
        for m in mask:
            table.extend((float(anchors[2 * m]), float(anchors[2 * m + 1])))
        tables.append(table)
    return tables
