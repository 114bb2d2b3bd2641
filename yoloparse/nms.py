from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from .buffer import CandidateBuffer
from .geometry import iou_one_to_many
from .types import RECORD_SIZE, Detection


@dataclass
class NMSConfig:
    conf_threshold: float = 0.4
    iou_threshold: float = 0.5
    # Optional {class_id: threshold} overriding conf_threshold per class.
    class_conf_thresholds: Optional[Dict[int, float]] = None


def _conf_thresholds(class_ids: np.ndarray, cfg: NMSConfig) -> np.ndarray:
    thresholds = np.full(class_ids.shape, cfg.conf_threshold, dtype=np.float32)
    if cfg.class_conf_thresholds:
        for cls, thresh in cfg.class_conf_thresholds.items():
            thresholds[class_ids == int(cls)] = thresh
    return thresholds


def _suppress(boxes: np.ndarray, iou_threshold: float) -> List[int]:
    """
    Greedy pass over boxes already sorted by descending confidence.

    Returns positions of the survivors. A suppressed box never suppresses others.
    """

    alive = np.ones(boxes.shape[0], dtype=bool)
    keep: List[int] = []
    for m in range(boxes.shape[0]):
        if not alive[m]:
            continue
        keep.append(m)
        rest = np.flatnonzero(alive[m + 1 :]) + m + 1
        if rest.size == 0:
            break
        overlaps = iou_one_to_many(boxes[m], boxes[rest])
        alive[rest[overlaps > iou_threshold]] = False
    return keep


def nms_records(records: np.ndarray, count: int, cfg: NMSConfig = NMSConfig()) -> np.ndarray:
    """
    Class-wise greedy NMS over candidate records.

    Args:
        records: (N, 6) rows of (cx, cy, w, h, conf, class_id)
        count: number of valid leading rows (clamped to N)
        cfg: thresholds

    Returns:
        (K, 6) survivors grouped by ascending class id, each group in
        descending confidence. Equal confidences keep their input order.
    """

    records = np.asarray(records, dtype=np.float32).reshape(-1, RECORD_SIZE)
    records = records[: max(0, min(int(count), records.shape[0]))]
    if records.shape[0] == 0:
        return np.empty((0, RECORD_SIZE), dtype=np.float32)

    class_ids = records[:, 5].astype(np.int64)
    keep = records[:, 4] > _conf_thresholds(class_ids, cfg)
    records, class_ids = records[keep], class_ids[keep]

    kept: List[np.ndarray] = []
    for cls in np.unique(class_ids):
        group = records[class_ids == cls]
        order = np.argsort(-group[:, 4], kind="stable")
        group = group[order]
        kept.append(group[_suppress(group, cfg.iou_threshold)])

    if not kept:
        return np.empty((0, RECORD_SIZE), dtype=np.float32)
    return np.concatenate(kept, axis=0)


def nms(candidates: Sequence[Detection], cfg: NMSConfig = NMSConfig()) -> List[Detection]:
    if not candidates:
        return []
    records = np.array([d.as_record() for d in candidates], dtype=np.float32)
    return [Detection.from_record(r) for r in nms_records(records, len(candidates), cfg)]


def nms_buffer(output, cfg: NMSConfig = NMSConfig()) -> List[Detection]:
    """
    NMS over a CandidateBuffer or its flat layout ([count, rec_0, rec_1, ...]).
    """

    if isinstance(output, CandidateBuffer):
        records = output.records()
        count = output.count
    else:
        flat = np.asarray(output, dtype=np.float32).reshape(-1)
        if flat.size == 0:
            return []
        records = flat[1 : 1 + ((flat.size - 1) // RECORD_SIZE) * RECORD_SIZE].reshape(-1, RECORD_SIZE)
        count = int(flat[0])
    return [Detection.from_record(r) for r in nms_records(records, count, cfg)]
