import unittest

import numpy as np

from yoloparse.buffer import CandidateBuffer
from yoloparse.decoder import OutputLayerError
from yoloparse.nms import NMSConfig
from yoloparse.parsers import (
    get_parser,
    parse_tlt,
    parse_yolov2,
    parse_yolov3,
    parse_yolov3_tiny,
    parse_yolov5,
)
from yoloparse.types import NetworkInfo

NET = NetworkInfo(width=416, height=416)


def _darknet_layer(grid: int, num_boxes: int = 3, num_classes: int = 80) -> np.ndarray:
    return np.zeros((num_boxes * (5 + num_classes), grid, grid), dtype=np.float32)


class TestYoloV5(unittest.TestCase):
    def _flat(self) -> np.ndarray:
        buf = CandidateBuffer(capacity=8)
        buf.push(
            np.array(
                [
                    [100, 100, 50, 50, 0.9, 0],
                    [105, 100, 50, 50, 0.8, 0],
                    [300, 200, 40, 20, 0.7, 5],
                    [10, 10, 40, 40, 0.3, 5],
                ],
                dtype=np.float32,
            )
        )
        return buf.to_flat()

    def test_buffer_to_objects(self) -> None:
        objects = parse_yolov5([self._flat()], NET, 80)
        self.assertEqual(len(objects), 2)

        first, second = objects
        self.assertEqual((first.left, first.top, first.width, first.height), (75, 75, 50, 50))
        self.assertEqual(first.class_id, 0)
        self.assertAlmostEqual(first.confidence, 0.9, places=6)
        self.assertEqual((second.left, second.top, second.width, second.height), (280, 190, 40, 20))
        self.assertEqual(second.class_id, 5)

    def test_left_top_clamped_at_zero(self) -> None:
        flat = np.array([1, 5, 5, 40, 40, 0.9, 0], dtype=np.float32)
        (obj,) = parse_yolov5([flat], NET, 80)
        self.assertEqual((obj.left, obj.top), (0, 0))

    def test_uses_given_thresholds(self) -> None:
        objects = parse_yolov5([self._flat()], NET, 80, nms_cfg=NMSConfig(conf_threshold=0.2, iou_threshold=0.5))
        self.assertEqual(len(objects), 3)

    def test_no_outputs(self) -> None:
        with self.assertRaises(OutputLayerError):
            parse_yolov5([], NET, 80)

    def test_class_mismatch_warning(self) -> None:
        with self.assertLogs("yoloparse.parsers", level="WARNING") as logs:
            parse_yolov5([self._flat()], NET, 3)
        self.assertIn("Configured: 3", logs.output[0])


class TestYoloV3(unittest.TestCase):
    def test_single_object(self) -> None:
        small, mid, large = _darknet_layer(13), _darknet_layer(26), _darknet_layer(52)
        # anchor slot 0 of the 13x13 layer is anchor 6 (116 x 90)
        small[0:4, 2, 3] = (0.5, 0.5, 1.0, 1.0)
        small[4, 2, 3] = 0.9
        small[5 + 5, 2, 3] = 0.8

        # layer order does not matter, they are sorted by grid size
        objects = parse_yolov3([large, small, mid], NET, 80)
        self.assertEqual(len(objects), 1)
        (obj,) = objects
        self.assertAlmostEqual(obj.left, 54.0, places=4)
        self.assertAlmostEqual(obj.top, 35.0, places=4)
        self.assertAlmostEqual(obj.width, 116.0, places=4)
        self.assertAlmostEqual(obj.height, 90.0, places=4)
        self.assertEqual(obj.class_id, 5)
        self.assertAlmostEqual(obj.confidence, 0.72, places=5)

    def test_box_clamped_to_network_frame(self) -> None:
        small, mid, large = _darknet_layer(13), _darknet_layer(26), _darknet_layer(52)
        small[0:4, 0, 0] = (0.0, 0.0, 1.0, 1.0)
        small[4, 0, 0] = 0.9
        small[5, 0, 0] = 0.9
        (obj,) = parse_yolov3([small, mid, large], NET, 80)
        self.assertEqual((obj.left, obj.top), (0.0, 0.0))
        self.assertAlmostEqual(obj.width, 58.0, places=4)
        self.assertAlmostEqual(obj.height, 45.0, places=4)

    def test_layer_count_mismatch(self) -> None:
        with self.assertRaises(OutputLayerError):
            parse_yolov3([_darknet_layer(13), _darknet_layer(26)], NET, 80)

    def test_tiny_uses_two_layers(self) -> None:
        objects = parse_yolov3_tiny([_darknet_layer(13), _darknet_layer(26)], NET, 80)
        self.assertEqual(objects, [])


class TestYoloV2(unittest.TestCase):
    def test_single_object(self) -> None:
        layer = _darknet_layer(13, num_boxes=5)
        layer[0:4, 0, 0] = (0.5, 0.5, 0.0, 0.0)
        layer[4, 0, 0] = 0.5
        layer[5 + 2, 0, 0] = 0.6

        objects = parse_yolov2([layer[None]], NET, 80)
        # every other cell has no positive class probability
        self.assertEqual(len(objects), 1)
        (obj,) = objects
        self.assertEqual(obj.class_id, 2)
        self.assertAlmostEqual(obj.confidence, 0.3, places=5)
        self.assertAlmostEqual(obj.width, 0.57273 * 32, places=3)
        self.assertAlmostEqual(obj.height, 0.677385 * 32, places=3)
        self.assertAlmostEqual(obj.left, 16.0 - 0.57273 * 16, places=3)

    def test_too_few_channels(self) -> None:
        with self.assertRaises(OutputLayerError):
            parse_yolov2([np.zeros((10, 13, 13), dtype=np.float32)], NET, 80)


class TestTLT(unittest.TestCase):
    def test_filters(self) -> None:
        outputs = [
            np.array([4], dtype=np.int32),
            np.array(
                [
                    [10, 10, 50, 60],
                    [0, 0, 10, 10],
                    [-1, 5, 20, 20],
                    [30, 30, 20, 40],
                ],
                dtype=np.float32,
            ),
            np.array([0.9, 1.5, 0.8, 0.7], dtype=np.float32),
            np.array([1, 2, 3, 4], dtype=np.float32),
        ]
        objects = parse_tlt(outputs, NET, 80)
        self.assertEqual(len(objects), 1)
        (obj,) = objects
        self.assertEqual((obj.left, obj.top, obj.width, obj.height), (10.0, 10.0, 40.0, 50.0))
        self.assertEqual(obj.class_id, 1)

    def test_vertical_extent_checked_against_height(self) -> None:
        wide = NetworkInfo(width=416, height=208)
        outputs = [
            np.array([2]),
            np.array([[0, 0, 100, 100], [0, 100, 100, 300]], dtype=np.float32),
            np.array([0.9, 0.9], dtype=np.float32),
            np.array([0, 0], dtype=np.float32),
        ]
        self.assertEqual(len(parse_tlt(outputs, wide, 80)), 1)

    def test_top_k(self) -> None:
        n = 5
        boxes = np.tile(np.array([[1, 1, 20, 20]], dtype=np.float32), (n, 1))
        outputs = [np.array([n]), boxes, np.full(n, 0.5, dtype=np.float32), np.zeros(n, dtype=np.float32)]
        self.assertEqual(len(parse_tlt(outputs, NET, 80, top_k=2)), 2)

    def test_keep_count_clamped_to_payload(self) -> None:
        outputs = [
            np.array([100]),
            np.array([[1, 1, 20, 20]], dtype=np.float32),
            np.array([0.5], dtype=np.float32),
            np.array([0], dtype=np.float32),
        ]
        self.assertEqual(len(parse_tlt(outputs, NET, 80)), 1)

    def test_wrong_output_count(self) -> None:
        with self.assertRaises(OutputLayerError):
            parse_tlt([np.zeros(1)] * 3, NET, 80)


class TestRegistry(unittest.TestCase):
    def test_lookup(self) -> None:
        self.assertIs(get_parser("yolov5"), parse_yolov5)
        self.assertIs(get_parser("YoloV3-Tiny"), parse_yolov3_tiny)

    def test_unknown_family(self) -> None:
        with self.assertRaises(KeyError):
            get_parser("ssd")


if __name__ == "__main__":
    unittest.main()
