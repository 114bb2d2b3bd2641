"""
Per-family output parsers.

Every parser takes the network's output tensors for one image, the network
input size and the class count the caller configured, and returns a list of
ParsedObject in network-input pixels (top-left form).

A parser raises OutputLayerError when the outputs cannot belong to its family;
callers treat that frame as having no detections.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Dict, List, Sequence

import numpy as np

from .config import (
    YOLOV2_ANCHORS,
    YOLOV3_ANCHORS,
    YOLOV3_MASKS,
    YOLOV3_TINY_ANCHORS,
    YOLOV3_TINY_MASKS,
    darknet_anchor_tables,
)
from .decoder import OutputLayerError
from .nms import NMSConfig, nms_buffer
from .types import NetworkInfo, ParsedObject

logger = logging.getLogger(__name__)

NUM_CLASSES_YOLO = 80
YOLOV2_NUM_BBOXES = 5
TLT_TOP_K = 200

Parser = Callable[..., List[ParsedObject]]


def _check_num_classes(configured: int, detected: int) -> None:
    if configured != detected:
        logger.warning(
            "Num classes mismatch. Configured: %d, detected by network: %d", configured, detected
        )


# ---------------------------------------------------------------------- #
# Decoded-buffer families (the network already ran the yolo layer)
# ---------------------------------------------------------------------- #
def parse_yolov5(
    outputs: Sequence[np.ndarray],
    network_info: NetworkInfo,
    num_classes_configured: int,
    nms_cfg: NMSConfig = NMSConfig(),
    num_classes: int = NUM_CLASSES_YOLO,
) -> List[ParsedObject]:
    """
    outputs[0] is a flat candidate buffer: [count, (cx, cy, w, h, conf, class_id) * count, ...].
    """

    if not outputs:
        raise OutputLayerError("Could not find output layer in bbox parsing")
    _check_num_classes(num_classes_configured, num_classes)

    objects = []
    for det in nms_buffer(outputs[0], nms_cfg):
        objects.append(
            ParsedObject(
                left=int(max(0.0, det.cx - det.w * 0.5)),
                top=int(max(0.0, det.cy - det.h * 0.5)),
                width=int(max(0.0, det.w)),
                height=int(max(0.0, det.h)),
                class_id=det.class_id,
                confidence=det.conf,
            )
        )
    return objects


def parse_yolov4(
    outputs: Sequence[np.ndarray],
    network_info: NetworkInfo,
    num_classes_configured: int,
    nms_cfg: NMSConfig = NMSConfig(),
    num_classes: int = NUM_CLASSES_YOLO,
) -> List[ParsedObject]:
    return parse_yolov5(outputs, network_info, num_classes_configured, nms_cfg=nms_cfg, num_classes=num_classes)


# ---------------------------------------------------------------------- #
# Darknet grid families (YOLOv2 / YOLOv3)
# ---------------------------------------------------------------------- #
def _decode_darknet_tensor(
    layer: np.ndarray,
    anchors: np.ndarray,
    stride: int,
    num_classes: int,
    network_info: NetworkInfo,
    exp_wh: bool,
) -> List[ParsedObject]:
    """
    layer: (A * (5 + C), grid_h, grid_w) with activated x/y/objectness/class values.
    anchors: (A, 2) in network pixels.
    """

    num_boxes = anchors.shape[0]
    grid_h, grid_w = layer.shape[1:]
    needed = num_boxes * (5 + num_classes)
    if layer.shape[0] < needed:
        raise OutputLayerError(f"Output layer has {layer.shape[0]} channels, need {needed}.")

    t = layer[:needed].reshape(num_boxes, 5 + num_classes, grid_h, grid_w)
    rows = np.arange(grid_h, dtype=np.float32)[None, :, None]
    cols = np.arange(grid_w, dtype=np.float32)[None, None, :]
    pw = anchors[:, 0][:, None, None]
    ph = anchors[:, 1][:, None, None]

    bx = cols + t[:, 0]
    by = rows + t[:, 1]
    if exp_wh:
        with np.errstate(over="ignore"):
            bw = pw * np.exp(t[:, 2])
            bh = ph * np.exp(t[:, 3])
    else:
        bw = pw * t[:, 2]
        bh = ph * t[:, 3]

    class_probs = t[:, 5:]
    class_ids = np.argmax(class_probs, axis=1)
    max_probs = np.max(class_probs, axis=1)
    # strict scan from 0: no positive probability means no class
    class_ids = np.where(max_probs > 0.0, class_ids, -1)
    probs = t[:, 4] * np.maximum(max_probs, 0.0)

    net_w, net_h = float(network_info.width), float(network_info.height)
    x0 = bx * stride - bw / 2
    y0 = by * stride - bh / 2
    x1 = np.clip(x0 + bw, 0.0, net_w)
    y1 = np.clip(y0 + bh, 0.0, net_h)
    x0 = np.clip(x0, 0.0, net_w)
    y0 = np.clip(y0, 0.0, net_h)
    width = np.clip(x1 - x0, 0.0, net_w)
    height = np.clip(y1 - y0, 0.0, net_h)

    # (A, H, W) -> (H, W, A) so objects come out cell by cell
    arrays = [np.moveaxis(a, 0, -1).reshape(-1) for a in (x0, y0, width, height, probs, class_ids)]
    objects = []
    for left, top, w, h, prob, cls in zip(*arrays):
        if w < 1 or h < 1 or cls < 0:
            continue
        objects.append(
            ParsedObject(
                left=float(left),
                top=float(top),
                width=float(w),
                height=float(h),
                class_id=int(cls),
                confidence=float(prob),
            )
        )
    return objects


def _stride_for(layer: np.ndarray, network_info: NetworkInfo) -> int:
    grid_h, grid_w = layer.shape[1:]
    stride = math.ceil(network_info.width / grid_w)
    if stride != math.ceil(network_info.height / grid_h):
        raise OutputLayerError(
            f"Grid {grid_h}x{grid_w} does not evenly tile network input "
            f"{network_info.width}x{network_info.height}."
        )
    return stride


def _as_layers(outputs: Sequence[np.ndarray]) -> List[np.ndarray]:
    layers = []
    for out in outputs:
        arr = np.asarray(out, dtype=np.float32)
        if arr.ndim == 4 and arr.shape[0] == 1:
            arr = arr[0]
        if arr.ndim != 3:
            raise OutputLayerError(f"Expected a (C, H, W) output layer, got shape {arr.shape}.")
        layers.append(arr)
    return layers


def parse_yolov3(
    outputs: Sequence[np.ndarray],
    network_info: NetworkInfo,
    num_classes_configured: int,
    anchors: Sequence[float] = YOLOV3_ANCHORS,
    masks: Sequence[Sequence[int]] = YOLOV3_MASKS,
    num_classes: int = NUM_CLASSES_YOLO,
) -> List[ParsedObject]:
    # smallest grid first, matching the mask order
    layers = sorted(_as_layers(outputs), key=lambda layer: layer.shape[1])
    if len(layers) != len(masks):
        raise OutputLayerError(
            f"yoloV3 output layer.size: {len(layers)} does not match mask.size: {len(masks)}"
        )
    _check_num_classes(num_classes_configured, num_classes)

    objects: List[ParsedObject] = []
    for layer, table in zip(layers, darknet_anchor_tables(anchors, masks)):
        objects.extend(
            _decode_darknet_tensor(
                layer,
                np.asarray(table, dtype=np.float32).reshape(-1, 2),
                _stride_for(layer, network_info),
                num_classes,
                network_info,
                exp_wh=False,
            )
        )
    return objects


def parse_yolov3_tiny(
    outputs: Sequence[np.ndarray],
    network_info: NetworkInfo,
    num_classes_configured: int,
    num_classes: int = NUM_CLASSES_YOLO,
) -> List[ParsedObject]:
    return parse_yolov3(
        outputs,
        network_info,
        num_classes_configured,
        anchors=YOLOV3_TINY_ANCHORS,
        masks=YOLOV3_TINY_MASKS,
        num_classes=num_classes,
    )


def parse_yolov2(
    outputs: Sequence[np.ndarray],
    network_info: NetworkInfo,
    num_classes_configured: int,
    anchors: Sequence[float] = YOLOV2_ANCHORS,
    num_classes: int = NUM_CLASSES_YOLO,
) -> List[ParsedObject]:
    if not outputs:
        raise OutputLayerError("Could not find output layer in bbox parsing")
    _check_num_classes(num_classes_configured, num_classes)

    layer = _as_layers(outputs[:1])[0]
    stride = _stride_for(layer, network_info)
    # grid-unit anchors -> network pixels
    pairs = np.asarray(anchors, dtype=np.float32).reshape(-1, 2)[:YOLOV2_NUM_BBOXES] * stride
    return _decode_darknet_tensor(layer, pairs, stride, num_classes, network_info, exp_wh=True)


def parse_yolov2_tiny(
    outputs: Sequence[np.ndarray],
    network_info: NetworkInfo,
    num_classes_configured: int,
    num_classes: int = NUM_CLASSES_YOLO,
) -> List[ParsedObject]:
    return parse_yolov2(outputs, network_info, num_classes_configured, num_classes=num_classes)


# ---------------------------------------------------------------------- #
# TLT (NMS already applied in the network)
# ---------------------------------------------------------------------- #
def parse_tlt(
    outputs: Sequence[np.ndarray],
    network_info: NetworkInfo,
    num_classes_configured: int,
    top_k: int = TLT_TOP_K,
) -> List[ParsedObject]:
    """
    outputs: (keep_count, boxes (N, 4) as x1 y1 x2 y2, scores (N,), classes (N,)).
    Boxes outside the network frame or with inverted / oversize extents are skipped.
    """

    if len(outputs) != 4:
        raise OutputLayerError(
            f"Mismatch in the number of output buffers. Expected 4 output buffers, "
            f"detected in the network: {len(outputs)}"
        )

    keep_count = int(np.asarray(outputs[0]).reshape(-1)[0])
    boxes = np.asarray(outputs[1], dtype=np.float32).reshape(-1, 4)
    scores = np.asarray(outputs[2], dtype=np.float32).reshape(-1)
    classes = np.asarray(outputs[3], dtype=np.float32).reshape(-1)
    keep_count = min(keep_count, boxes.shape[0], scores.shape[0], classes.shape[0])

    net_w, net_h = float(network_info.width), float(network_info.height)
    objects: List[ParsedObject] = []
    for i in range(keep_count):
        if len(objects) >= top_k:
            break
        x1, y1, x2, y2 = (float(v) for v in boxes[i])
        conf = float(scores[i])

        if conf > 1.001:
            continue
        if x1 < 0 or y1 < 0 or x2 < 0 or y2 < 0:
            continue
        if x1 > net_w or x2 > net_w or y1 > net_h or y2 > net_h:
            continue
        if x2 < x1 or y2 < y1:
            continue
        if (y2 - y1) > net_h or (x2 - x1) > net_w:
            continue

        objects.append(
            ParsedObject(
                left=x1,
                top=y1,
                width=x2 - x1,
                height=y2 - y1,
                class_id=int(classes[i]),
                confidence=conf,
            )
        )
    return objects


PARSERS: Dict[str, Parser] = {
    "yolov5": parse_yolov5,
    "yolov4": parse_yolov4,
    "yolov3": parse_yolov3,
    "yolov3_tiny": parse_yolov3_tiny,
    "yolov2": parse_yolov2,
    "yolov2_tiny": parse_yolov2_tiny,
    "tlt": parse_tlt,
}


def get_parser(family: str) -> Parser:
    key = family.lower().replace("-", "_")
    if key not in PARSERS:
        raise KeyError(f"Unknown detector family {family!r}. Available: {sorted(PARSERS)}")
    return PARSERS[key]
