from dataclasses import dataclass
from typing import Tuple

RECORD_SIZE = 6


@dataclass
class Detection:
    """
    Center-form detection shared by the decoder, the clusterer and the pipeline.

    Candidates and final detections use the same record; clustering only drops
    entries, it never rewrites coordinates.
    """

    cx: float
    cy: float
    w: float
    h: float
    conf: float
    class_id: int = 0

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        half_w = self.w / 2
        half_h = self.h / 2
        return self.cx - half_w, self.cy - half_h, self.cx + half_w, self.cy + half_h

    def as_record(self) -> Tuple[float, float, float, float, float, float]:
        return self.cx, self.cy, self.w, self.h, self.conf, float(self.class_id)

    @classmethod
    def from_record(cls, record) -> "Detection":
        cx, cy, w, h, conf, class_id = (float(v) for v in record[:RECORD_SIZE])
        return cls(cx=cx, cy=cy, w=w, h=h, conf=conf, class_id=int(class_id))


@dataclass(frozen=True)
class ScaleDescriptor:
    """
    Read-only description of one detection scale: grid size and its anchors (w, h) in input pixels.
    """

    grid_w: int
    grid_h: int
    anchors: Tuple[Tuple[float, float], ...]

    def __post_init__(self) -> None:
        if self.grid_w <= 0 or self.grid_h <= 0:
            raise ValueError(f"grid size must be > 0, got {self.grid_w}x{self.grid_h}")
        if not self.anchors:
            raise ValueError("a scale needs at least one anchor")

    @property
    def num_anchors(self) -> int:
        return len(self.anchors)

    @property
    def num_cells(self) -> int:
        return self.grid_w * self.grid_h


@dataclass(frozen=True)
class NetworkInfo:
    width: int
    height: int


@dataclass
class ParsedObject:
    """
    Object record handed downstream by the family parsers (top-left form).
    """

    left: float
    top: float
    width: float
    height: float
    class_id: int
    confidence: float
