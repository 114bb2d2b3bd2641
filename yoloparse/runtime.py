from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import DetectorConfig, load_detector_config
from .decoder import ParseError, YoloLayerDecoder
from .geometry import letterbox_to_original
from .letterbox import LetterboxInfo, letterbox
from .metadata import load_class_names
from .nms import NMSConfig, nms_buffer
from .parsers import get_parser
from .types import Detection, NetworkInfo, ParsedObject

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
InferFn = Callable[[np.ndarray], Sequence[np.ndarray]]


def find_project_root(
    start: Optional[PathLike] = None,
    markers: Sequence[str] = ("pyproject.toml", ".git"),
) -> Path:
    """
    Best-effort project root discovery, used to resolve relative config paths.
    """

    p = Path(start) if start is not None else Path.cwd()
    p = p.resolve()
    if p.is_file():
        p = p.parent

    for parent in (p, *p.parents):
        for m in markers:
            if (parent / m).exists():
                return parent
    return p


def resolve_path(path: PathLike, root: Optional[PathLike] = "auto") -> Path:
    """
    Absolute paths are returned as-is; relative ones resolve against `root`
    (or the project root when root is "auto"/None).
    """

    p = Path(path)
    if p.is_absolute():
        return p

    if root == "auto" or root is None:
        base = find_project_root()
    else:
        base = Path(root).resolve()

    return (base / p).resolve()


@dataclass(frozen=True)
class LetterboxConfig:
    color: Tuple[int, int, int] = (128, 128, 128)


@dataclass(frozen=True)
class PreprocessResult:
    blob: np.ndarray
    orig_size: Tuple[int, int]
    info: LetterboxInfo


class YoloPipeline:
    """
    Frame driver: letterbox -> inference -> decode -> class-wise NMS -> remap.

    `infer_fn` receives an NCHW float32 blob and returns the network outputs:
    one raw grid tensor per scale for "yolov5", or the family's output buffers
    for the parser-based families. Detections come back in original image
    pixels. A frame whose outputs cannot be parsed yields no detections.
    """

    def __init__(
        self,
        infer_fn: InferFn,
        config: DetectorConfig = DetectorConfig(),
        *,
        letterbox_cfg: LetterboxConfig = LetterboxConfig(),
        class_names: Optional[Dict[int, str]] = None,
    ):
        self._infer_fn = infer_fn
        self.config = config
        self.letterbox_cfg = letterbox_cfg
        self.class_names = dict(class_names) if class_names else {}
        self.nms_cfg = NMSConfig(
            conf_threshold=config.conf_thresh,
            iou_threshold=config.nms_thresh,
            class_conf_thresholds=dict(config.class_conf_thresholds) or None,
        )
        self.decoder: Optional[YoloLayerDecoder] = None
        if config.family == "yolov5":
            self.decoder = YoloLayerDecoder(
                config.scales(),
                config.num_classes,
                config.input_size,
                ignore_thresh=config.ignore_thresh,
                max_output_bbox_count=config.max_output_bbox_count,
                num_workers=config.num_workers,
            )

    def close(self) -> None:
        if self.decoder is not None:
            self.decoder.close()

    def __enter__(self) -> "YoloPipeline":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def label_for(self, class_id: int) -> str:
        return self.class_names.get(int(class_id), str(class_id))

    def preprocess(self, image_bgr: np.ndarray) -> PreprocessResult:
        if image_bgr is None or not hasattr(image_bgr, "shape"):
            raise TypeError("image_bgr must be a NumPy array (BGR).")
        if image_bgr.ndim != 3 or image_bgr.shape[2] != 3:
            raise ValueError(f"Expected image shape (H, W, 3), got {getattr(image_bgr, 'shape', None)}")

        orig_h, orig_w = image_bgr.shape[:2]
        img, info = letterbox(image_bgr, new_shape=self.config.input_size, color=self.letterbox_cfg.color)

        # BGR -> RGB, normalize, HWC -> CHW, add batch
        blob = img[:, :, ::-1].astype(np.float32) / 255.0
        blob = np.ascontiguousarray(np.transpose(blob, (2, 0, 1))[None, ...])

        return PreprocessResult(blob=blob, orig_size=(orig_w, orig_h), info=info)

    def process_outputs(
        self,
        outputs: Sequence[np.ndarray],
        image_sizes: Sequence[Tuple[int, int]],
    ) -> List[List[Detection]]:
        """
        Post-process one batch of network outputs.

        Args:
            outputs: network outputs for the batch
            image_sizes: (cols, rows) of each original image, in batch order
        """

        try:
            if self.decoder is not None:
                per_image = self._decode_grid(outputs, len(image_sizes))
            else:
                per_image = [self._parse_family(outputs, len(image_sizes))]
        except ParseError as exc:
            logger.error("Dropping frame, could not parse network outputs: %s", exc)
            return [[] for _ in image_sizes]

        return [
            [self._to_original(det, size) for det in dets]
            for dets, size in zip(per_image, image_sizes)
        ]

    def __call__(self, image_bgr: np.ndarray) -> List[Detection]:
        prep = self.preprocess(image_bgr)
        outputs = self._infer_fn(prep.blob)
        return self.process_outputs(outputs, [prep.orig_size])[0]

    # ------------------------------------------------------------------ #
    # Helper internal
    # ------------------------------------------------------------------ #
    def _decode_grid(self, outputs: Sequence[np.ndarray], batch: int) -> List[List[Detection]]:
        buffers = self.decoder.decode(outputs)
        if len(buffers) != batch:
            raise ValueError(f"Network returned {len(buffers)} images, expected {batch}.")
        return [nms_buffer(buf, self.nms_cfg) for buf in buffers]

    def _parse_family(self, outputs: Sequence[np.ndarray], batch: int) -> List[Detection]:
        if batch != 1:
            raise ValueError(f"Family {self.config.family!r} parsers handle one image at a time (got {batch}).")

        parser = get_parser(self.config.family)
        network_info = NetworkInfo(width=self.config.input_width, height=self.config.input_height)
        if self.config.family == "yolov4":
            objects = parser(outputs, network_info, self.config.num_classes, nms_cfg=self.nms_cfg)
        else:
            objects = parser(outputs, network_info, self.config.num_classes)
        return [_object_to_detection(obj) for obj in objects]

    def _to_original(self, det: Detection, image_size: Tuple[int, int]) -> Detection:
        left, top, right, bottom = letterbox_to_original(
            (det.cx, det.cy, det.w, det.h), image_size, self.config.input_size, clip=True
        )
        return Detection(
            cx=(left + right) / 2,
            cy=(top + bottom) / 2,
            w=right - left,
            h=bottom - top,
            conf=det.conf,
            class_id=det.class_id,
        )


def _object_to_detection(obj: ParsedObject) -> Detection:
    return Detection(
        cx=float(obj.left) + float(obj.width) / 2,
        cy=float(obj.top) + float(obj.height) / 2,
        w=float(obj.width),
        h=float(obj.height),
        conf=float(obj.confidence),
        class_id=int(obj.class_id),
    )


def load_pipeline(
    config_path: PathLike,
    infer_fn: InferFn,
    *,
    root: Optional[PathLike] = "auto",
    letterbox_cfg: LetterboxConfig = LetterboxConfig(),
) -> YoloPipeline:
    """
    Build a pipeline from a JSON detector config on disk.

    Typical usage:
        pipe = load_pipeline("configs/yolov5s.json", engine.infer)

    Relative config paths resolve against the project root by default; the
    config's labels_path (if any) is loaded as class names.
    """

    resolved = resolve_path(config_path, root=root)
    config = load_detector_config(resolved)
    class_names = load_class_names(config.labels_path) if config.labels_path else None
    return YoloPipeline(infer_fn, config, letterbox_cfg=letterbox_cfg, class_names=class_names)
