"""
Post-processing for multi-scale, anchor-based YOLO detectors.

Turns raw per-scale grid tensors into candidate boxes (threaded decode into a
bounded per-image buffer), reduces them with class-wise greedy NMS, and maps
them back from the letterboxed network input to the original frame. Only NumPy
is needed for the core; OpenCV is used for letterboxing.
"""

from .types import Detection, NetworkInfo, ParsedObject, ScaleDescriptor
from .buffer import MAX_OUTPUT_BBOX_COUNT, CandidateBuffer
from .geometry import get_rect, iou, iou_one_to_many, letterbox_to_original
from .letterbox import LetterboxInfo, letterbox
from .decoder import IGNORE_THRESH, OutputLayerError, ParseError, YoloLayerDecoder
from .nms import NMSConfig, nms, nms_buffer, nms_records
from .config import DetectorConfig, load_detector_config
from .parsers import get_parser
from .runtime import LetterboxConfig, YoloPipeline, find_project_root, load_pipeline, resolve_path
from .metadata import load_class_names

__all__ = [
    "Detection",
    "NetworkInfo",
    "ParsedObject",
    "ScaleDescriptor",
    "MAX_OUTPUT_BBOX_COUNT",
    "CandidateBuffer",
    "iou",
    "iou_one_to_many",
    "letterbox_to_original",
    "get_rect",
    "letterbox",
    "LetterboxInfo",
    "IGNORE_THRESH",
    "ParseError",
    "OutputLayerError",
    "YoloLayerDecoder",
    "NMSConfig",
    "nms",
    "nms_buffer",
    "nms_records",
    "DetectorConfig",
    "load_detector_config",
    "get_parser",
    "YoloPipeline",
    "load_pipeline",
    "find_project_root",
    "resolve_path",
    "LetterboxConfig",
    "load_class_names",
]
