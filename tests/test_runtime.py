import json
import math
import tempfile
import unittest
from pathlib import Path

import numpy as np

from yoloparse.config import DetectorConfig
from yoloparse.runtime import YoloPipeline, find_project_root, load_pipeline, resolve_path

try:
    import cv2  # noqa: F401

    HAS_CV2 = True
except ImportError:
    HAS_CV2 = False


def _logit(p: float) -> float:
    return math.log(p / (1.0 - p))


def _small_config(**overrides) -> DetectorConfig:
    kwargs = dict(
        family="yolov5",
        input_width=64,
        input_height=64,
        num_classes=1,
        anchors=((10.0, 20.0),),
        strides=(32,),
        num_workers=0,
    )
    kwargs.update(overrides)
    return DetectorConfig(**kwargs)


def _grid_output(batch: int = 1) -> np.ndarray:
    # 2x2 grid, one anchor, one class; a single confident cell at row 0, col 1
    t = np.zeros((batch, 6, 2, 2), dtype=np.float32)
    t[:, 4] = -20.0
    t[:, 4, 0, 1] = _logit(0.9)
    t[:, 5, 0, 1] = _logit(0.9)
    return t


class TestPipelineGrid(unittest.TestCase):
    def test_process_outputs_same_size(self) -> None:
        with YoloPipeline(lambda blob: [_grid_output()], _small_config()) as pipe:
            (dets,) = pipe.process_outputs([_grid_output()], [(64, 64)])

        self.assertEqual(len(dets), 1)
        det = dets[0]
        self.assertAlmostEqual(det.cx, 48.0, places=3)
        self.assertAlmostEqual(det.cy, 16.0, places=3)
        self.assertAlmostEqual(det.w, 10.0, places=3)
        self.assertAlmostEqual(det.h, 20.0, places=3)
        self.assertAlmostEqual(det.conf, 0.81, places=5)
        self.assertEqual(det.class_id, 0)

    def test_process_outputs_rescales_per_image(self) -> None:
        with YoloPipeline(lambda blob: [], _small_config()) as pipe:
            small, large = pipe.process_outputs([_grid_output(batch=2)], [(64, 64), (128, 128)])

        self.assertAlmostEqual(small[0].cx, 48.0, places=3)
        self.assertAlmostEqual(large[0].cx, 96.0, places=3)
        self.assertAlmostEqual(large[0].h, 40.0, places=3)

    def test_unparseable_frame_yields_no_detections(self) -> None:
        with YoloPipeline(lambda blob: [], _small_config()) as pipe:
            with self.assertLogs("yoloparse.runtime", level="ERROR"):
                result = pipe.process_outputs([_grid_output(), _grid_output()], [(64, 64)])
        self.assertEqual(result, [[]])

    def test_conf_threshold_applied(self) -> None:
        with YoloPipeline(lambda blob: [], _small_config(conf_thresh=0.85)) as pipe:
            (dets,) = pipe.process_outputs([_grid_output()], [(64, 64)])
        self.assertEqual(dets, [])

    def test_class_conf_thresholds_reach_nms(self) -> None:
        cfg = _small_config(class_conf_thresholds={0: 0.85})
        with YoloPipeline(lambda blob: [], cfg) as pipe:
            self.assertEqual(pipe.nms_cfg.class_conf_thresholds, {0: 0.85})
            (dets,) = pipe.process_outputs([_grid_output()], [(64, 64)])
        self.assertEqual(dets, [])

    def test_label_for(self) -> None:
        with YoloPipeline(lambda blob: [], _small_config(), class_names={0: "person"}) as pipe:
            self.assertEqual(pipe.label_for(0), "person")
            self.assertEqual(pipe.label_for(7), "7")

    @unittest.skipUnless(HAS_CV2, "OpenCV not installed")
    def test_call_runs_full_frame(self) -> None:
        seen = []

        def infer(blob: np.ndarray):
            seen.append(blob.shape)
            return [_grid_output()]

        with YoloPipeline(infer, _small_config()) as pipe:
            dets = pipe(np.zeros((128, 128, 3), dtype=np.uint8))

        self.assertEqual(seen, [(1, 3, 64, 64)])
        self.assertEqual(len(dets), 1)
        self.assertAlmostEqual(dets[0].cx, 96.0, places=3)


class TestPipelineFamilies(unittest.TestCase):
    def test_tlt_outputs(self) -> None:
        outputs = [
            np.array([1]),
            np.array([[8, 8, 24, 40]], dtype=np.float32),
            np.array([0.9], dtype=np.float32),
            np.array([3], dtype=np.float32),
        ]
        with YoloPipeline(lambda blob: outputs, _small_config(family="tlt")) as pipe:
            self.assertIsNone(pipe.decoder)
            (dets,) = pipe.process_outputs(outputs, [(64, 64)])

        (det,) = dets
        self.assertEqual((det.cx, det.cy, det.w, det.h), (16.0, 24.0, 16.0, 32.0))
        self.assertEqual(det.class_id, 3)

    def test_yolov4_flat_buffer_uses_config_thresholds(self) -> None:
        flat = np.array(
            [2, 16, 16, 8, 8, 0.9, 0, 48, 48, 8, 8, 0.6, 0],
            dtype=np.float32,
        )
        with YoloPipeline(lambda blob: [flat], _small_config(family="yolov4", conf_thresh=0.7)) as pipe:
            self.assertIsNone(pipe.decoder)
            (dets,) = pipe.process_outputs([flat], [(64, 64)])

        (det,) = dets
        self.assertEqual((det.cx, det.cy, det.w, det.h), (16.0, 16.0, 8.0, 8.0))
        self.assertAlmostEqual(det.conf, 0.9, places=6)

    def test_family_parser_error_is_logged(self) -> None:
        with YoloPipeline(lambda blob: [], _small_config(family="tlt")) as pipe:
            with self.assertLogs("yoloparse.runtime", level="ERROR"):
                self.assertEqual(pipe.process_outputs([np.zeros(1)], [(64, 64)]), [[]])


@unittest.skipUnless(HAS_CV2, "OpenCV not installed")
class TestLetterbox(unittest.TestCase):
    def test_landscape_padding(self) -> None:
        from yoloparse.letterbox import letterbox

        img = np.full((720, 1280, 3), 255, dtype=np.uint8)
        padded, info = letterbox(img, new_shape=(608, 608))

        self.assertEqual(padded.shape, (608, 608, 3))
        self.assertEqual(info.pad, (0, 133))
        self.assertAlmostEqual(info.ratio, 0.475)
        # gray bands above and below the content
        self.assertTrue(np.all(padded[0] == 128))
        self.assertTrue(np.all(padded[-1] == 128))
        self.assertTrue(np.all(padded[304] == 255))


class TestLoadPipeline(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_load_from_json(self) -> None:
        (self.root / "labels.txt").write_text("person\n", encoding="utf-8")
        (self.root / "detector.json").write_text(
            json.dumps(
                {
                    "input_width": 64,
                    "input_height": 64,
                    "num_classes": 1,
                    "anchors": [[10, 20]],
                    "strides": [32],
                    "num_workers": 0,
                    "labels_path": "labels.txt",
                }
            ),
            encoding="utf-8",
        )

        with load_pipeline("detector.json", lambda blob: [], root=self.root) as pipe:
            self.assertEqual(pipe.config.input_size, (64, 64))
            self.assertEqual(pipe.label_for(0), "person")
            (dets,) = pipe.process_outputs([_grid_output()], [(64, 64)])
        self.assertEqual(len(dets), 1)

    def test_resolve_path(self) -> None:
        self.assertEqual(resolve_path("a/b.json", root=self.root), (self.root / "a" / "b.json").resolve())
        absolute = self.root.resolve() / "x.json"
        self.assertEqual(resolve_path(absolute), absolute)

    def test_find_project_root(self) -> None:
        (self.root / "pyproject.toml").write_text("", encoding="utf-8")
        nested = self.root / "pkg" / "sub"
        nested.mkdir(parents=True)
        self.assertEqual(find_project_root(nested), self.root.resolve())


if __name__ == "__main__":
    unittest.main()
