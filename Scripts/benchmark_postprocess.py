from __future__ import annotations

import argparse
import logging
import statistics
import time
from dataclasses import dataclass
from typing import List

import numpy as np

from yoloparse import DetectorConfig, NMSConfig, YoloLayerDecoder, load_detector_config, nms_buffer


@dataclass(frozen=True)
class TimingSummary:
    n: int
    mean_ms: float
    p50_ms: float
    p90_ms: float
    p95_ms: float


def _percentile(sorted_values: List[float], q: float) -> float:
    if not sorted_values:
        raise ValueError("No values provided.")
    if q < 0.0 or q > 100.0:
        raise ValueError("q must be in [0, 100].")
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    # Linear interpolation between closest ranks.
    pos = (q / 100.0) * (len(sorted_values) - 1)
    lo = int(np.floor(pos))
    hi = int(np.ceil(pos))
    if lo == hi:
        return float(sorted_values[lo])
    t = pos - lo
    return float(sorted_values[lo] * (1.0 - t) + sorted_values[hi] * t)


def _summarize_ms(values_s: List[float]) -> TimingSummary:
    ms_sorted = sorted(v * 1000.0 for v in values_s)
    return TimingSummary(
        n=len(ms_sorted),
        mean_ms=float(statistics.fmean(ms_sorted)),
        p50_ms=_percentile(ms_sorted, 50.0),
        p90_ms=_percentile(ms_sorted, 90.0),
        p95_ms=_percentile(ms_sorted, 95.0),
    )


def _format_summary(label: str, s: TimingSummary) -> str:
    return (
        f"{label}: n={s.n} mean={s.mean_ms:.3f}ms p50={s.p50_ms:.3f}ms "
        f"p90={s.p90_ms:.3f}ms p95={s.p95_ms:.3f}ms"
    )


def _synthetic_outputs(cfg: DetectorConfig, batch: int, active: float, seed: int) -> List[np.ndarray]:
    """
    Raw grid tensors where roughly `active` of all anchors clear the ignore threshold.
    """

    rng = np.random.default_rng(seed)
    outputs = []
    per_anchor = 5 + cfg.num_classes
    for scale in cfg.scales():
        t = rng.normal(0.0, 1.0, size=(batch, scale.num_anchors * per_anchor, scale.grid_h, scale.grid_w))
        for a in range(scale.num_anchors):
            hit = rng.uniform(size=(batch, scale.grid_h, scale.grid_w)) < active
            t[:, a * per_anchor + 4] = np.where(hit, 3.0, -6.0)
        outputs.append(t.astype(np.float32))
    return outputs


def main() -> int:
    parser = argparse.ArgumentParser(description="Benchmark multi-scale YOLO decode + class-wise NMS latency.")
    parser.add_argument("--config", default=None, help="Detector config JSON (default: yolov5 @ 608).")
    parser.add_argument("--batch", type=int, default=1, help="Images per batch.")
    parser.add_argument("--active", type=float, default=0.02, help="Fraction of anchors above the ignore threshold.")
    parser.add_argument("--workers", type=int, default=4, help="Decode threads (0 = inline).")
    parser.add_argument("--rows-per-unit", type=int, default=8, help="Grid rows per decode work unit.")
    parser.add_argument("--warmup", type=int, default=5, help="Iterations to run but not record.")
    parser.add_argument("--repeats", type=int, default=50, help="Recorded iterations.")
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.batch < 1:
        raise ValueError("--batch must be >= 1")
    if args.active < 0.0 or args.active > 1.0:
        raise ValueError("--active must be in [0, 1]")
    if args.warmup < 0:
        raise ValueError("--warmup must be >= 0")
    if args.repeats < 1:
        raise ValueError("--repeats must be >= 1")

    cfg = load_detector_config(args.config) if args.config else DetectorConfig()
    outputs = _synthetic_outputs(cfg, int(args.batch), float(args.active), int(args.seed))
    nms_cfg = NMSConfig(
        conf_threshold=cfg.conf_thresh,
        iou_threshold=cfg.nms_thresh,
        class_conf_thresholds=dict(cfg.class_conf_thresholds) or None,
    )

    t_decode: List[float] = []
    t_nms: List[float] = []
    kept: List[int] = []
    candidates: List[int] = []

    with YoloLayerDecoder(
        cfg.scales(),
        cfg.num_classes,
        cfg.input_size,
        ignore_thresh=cfg.ignore_thresh,
        max_output_bbox_count=cfg.max_output_bbox_count,
        num_workers=int(args.workers),
        rows_per_unit=int(args.rows_per_unit),
    ) as decoder:
        buffers = None
        for i in range(int(args.warmup) + int(args.repeats)):
            t0 = time.perf_counter()
            buffers = decoder.decode(outputs, buffers)
            t1 = time.perf_counter()
            results = [nms_buffer(buf, nms_cfg) for buf in buffers]
            t2 = time.perf_counter()

            if i < int(args.warmup):
                continue
            t_decode.append(t1 - t0)
            t_nms.append(t2 - t1)
            candidates.append(sum(buf.count for buf in buffers))
            kept.append(sum(len(r) for r in results))

    print(_format_summary("decode", _summarize_ms(t_decode)))
    print(_format_summary("nms", _summarize_ms(t_nms)))
    print(
        f"batch={args.batch} workers={args.workers} candidates/iter={statistics.fmean(candidates):.1f} "
        f"kept/iter={statistics.fmean(kept):.1f} capacity={cfg.max_output_bbox_count}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
