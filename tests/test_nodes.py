"""Tests for the graph stages: tiling, network batching, stitching, detection post-processing."""

from __future__ import annotations

import numpy as np
import pytest
from conftest import FakeEngine, FakeWSI, classify_fn, tissue_image

from wsi_dispatch.core.models import BackendChoice, Mask, ProblemKind
from wsi_dispatch.errors import ConfigurationError
from wsi_dispatch.pipeline.nodes import (
    PAD_VALUE,
    BoxAccumulator,
    BoxSet,
    ImageData,
    ImageResizer,
    NeuralNetworkStage,
    NonMaximumSuppression,
    Patch,
    PatchGenerator,
    PatchStitcher,
    YoloDecoder,
    labels_from_scores,
    mask_from_labels,
)


class TestPatchGenerator:
    def test_grid_covers_level_with_padding(self):
        wsi = FakeWSI(tissue_image(200))
        generator = PatchGenerator(wsi, 0, (64, 64))
        patches = list(generator)

        assert generator.grid_shape == (4, 4)
        assert len(patches) == 16
        last = patches[-1]
        assert (last.x, last.y, last.width, last.height) == (192, 192, 8, 8)
        assert last.image.shape == (64, 64, 3)
        assert np.all(last.image[8:, :] == PAD_VALUE)

    def test_overlap_shrinks_stride(self):
        generator = PatchGenerator(FakeWSI(tissue_image(128)), 0, (64, 64), overlap=0.5)
        assert generator.stride_x == 32
        assert generator.grid_shape == (3, 3)

    def test_level_coordinates(self):
        wsi = FakeWSI(tissue_image(256), downsamples=(1, 2))
        generator = PatchGenerator(wsi, 1, (64, 64))
        patches = list(generator)
        assert generator.downsample == 2.0
        assert [(p.x, p.y) for p in patches] == [(0, 0), (64, 0), (0, 64), (64, 64)]
        # level-1 patch (32..96) holds the tissue corner at level-0 (64, 64)
        assert patches[0].image[40, 40, 0] == 60

    def test_mask_skips_background(self):
        wsi = FakeWSI(tissue_image(256))
        data = np.zeros((32, 32), dtype=np.uint8)
        data[8:24, 8:24] = 1
        mask = Mask(data=data, source_shape=(256, 256), scale=(0.125, 0.125))
        generator = PatchGenerator(wsi, 0, (64, 64), mask=mask)

        kept = [(p.row, p.col) for p in generator]

        assert kept == [(1, 1), (1, 2), (2, 1), (2, 2)]
        assert generator.skipped == 12

    def test_mask_threshold(self):
        wsi = FakeWSI(tissue_image(128))
        data = np.zeros((128, 128), dtype=np.uint8)
        data[:, :16] = 1  # a quarter of the first column of patches
        mask = Mask(data=data, source_shape=(128, 128))
        assert len(list(PatchGenerator(wsi, 0, (64, 64), mask=mask))) == 0
        loose = PatchGenerator(wsi, 0, (64, 64), mask=mask, mask_threshold=0.2)
        assert len(list(loose)) == 2

    def test_bad_overlap(self):
        with pytest.raises(ConfigurationError):
            PatchGenerator(FakeWSI(tissue_image(64)), 0, (32, 32), overlap=1.0)


class _ChannelsFirstEngine(FakeEngine):
    @property
    def input_layout(self) -> str:
        return "NCHW"


class TestNeuralNetworkStage:
    def _choice(self):
        return BackendChoice("OpenVINO", "xml")

    def test_batches_and_scale(self):
        stats = {}
        seen = []

        def fn(batch):
            seen.append(batch.copy())
            return classify_fn(batch)

        engine = FakeEngine(self._choice(), fn, stats=stats)
        stage = NeuralNetworkStage(
            engine,
            problem=ProblemKind.CLASSIFICATION,
            nb_classes=2,
            scale_factor=1 / 255,
            batch_size=3,
        )
        generator = PatchGenerator(FakeWSI(tissue_image(128)), 0, (32, 32))
        results = list(stage.run(generator))

        assert len(results) == 16
        assert stats["batch_sizes"] == [3, 3, 3, 3, 3, 1]
        assert seen[0].max() <= 1.0
        assert seen[0].dtype == np.float32

    def test_channels_first(self):
        captured = {}

        def fn(batch):
            captured["shape"] = batch.shape
            n = batch.shape[0]
            return [np.zeros((n, 2, 16, 16), dtype=np.float32)]

        engine = _ChannelsFirstEngine(self._choice(), fn)
        stage = NeuralNetworkStage(engine, problem=ProblemKind.SEGMENTATION, nb_classes=2)
        outputs = stage.infer([np.zeros((16, 16, 3), dtype=np.uint8)])

        assert captured["shape"] == (1, 3, 16, 16)
        assert outputs[0][0].shape == (16, 16, 2)

    def test_grayscale_input(self):
        engine = FakeEngine(self._choice(), lambda b: [b.mean(axis=(1, 2))])
        stage = NeuralNetworkStage(
            engine, problem=ProblemKind.CLASSIFICATION, nb_classes=1, nb_channels=1
        )
        batch = stage.preprocess([np.full((4, 4, 3), 30, dtype=np.uint8)])
        assert batch.shape == (1, 4, 4, 1)


class TestStitcher:
    def test_classification_grid(self):
        generator = PatchGenerator(FakeWSI(tissue_image(128), downsamples=(1, 2)), 1, (32, 32))
        stitcher = PatchStitcher(ProblemKind.CLASSIFICATION, generator, 2)
        for patch in generator:
            stitcher.add(patch, [np.array([0.25, 0.75])])
        result = stitcher.result()
        assert result.array.shape == (2, 2, 2)
        assert result.spacing == (64.0, 64.0)
        assert stitcher.count == 4

    def test_segmentation_crops_padding(self):
        generator = PatchGenerator(FakeWSI(tissue_image(80)), 0, (64, 64))
        stitcher = PatchStitcher(ProblemKind.SEGMENTATION, generator, 2)
        scores = np.zeros((64, 64, 2), dtype=np.float32)
        scores[..., 1] = 1.0
        for patch in generator:
            stitcher.add(patch, [scores])
        labels = stitcher.result().array
        assert labels.shape == (80, 80)
        assert np.all(labels == 1)

    def test_detection_is_not_stitched(self):
        generator = PatchGenerator(FakeWSI(tissue_image(64)), 0, (64, 64))
        with pytest.raises(ConfigurationError):
            PatchStitcher(ProblemKind.OBJECT_DETECTION, generator, 1)

    def test_labels_from_scores(self):
        scores = np.array([[[0.1, 0.9], [0.8, 0.2]]])
        np.testing.assert_array_equal(labels_from_scores(scores), [[1, 0]])
        np.testing.assert_array_equal(labels_from_scores(np.array([[2.0, 1.0]])), [[2, 1]])


class TestDetection:
    ANCHORS = (((10.0, 10.0),) * 3, ((20.0, 20.0),) * 3)

    def _outputs(self, cells):
        outs = [np.full((g, g, 18), -20.0, dtype=np.float32) for g in (2, 4)]
        for level, row, col, anchor, cls in cells:
            base = anchor * 6
            outs[level][row, col, base : base + 4] = 0.0
            outs[level][row, col, base + 4] = 20.0
            outs[level][row, col, base + 5] = 20.0 if cls == 0 else -20.0
        return outs

    def test_decode(self):
        decoder = YoloDecoder(self.ANCHORS, nb_classes=1, input_size=(64, 64))
        boxes = decoder.decode(self._outputs([(0, 1, 0, 0, 0), (1, 0, 0, 2, 0)]))
        assert len(boxes) == 2
        np.testing.assert_allclose(
            boxes.boxes, [[11.0, 43.0, 21.0, 53.0], [-2.0, -2.0, 18.0, 18.0]], atol=1e-3
        )

    def test_decode_channels_first(self):
        decoder = YoloDecoder(self.ANCHORS, nb_classes=1, input_size=(64, 64))
        outs = [o.transpose(2, 0, 1) for o in self._outputs([(0, 0, 0, 0, 0)])]
        assert len(decoder.decode(outs)) == 1

    def test_decode_threshold_drops_low_scores(self):
        decoder = YoloDecoder(self.ANCHORS, nb_classes=1, input_size=(64, 64))
        outs = self._outputs([(0, 0, 0, 0, 1)])
        assert len(decoder.decode(outs)) == 0

    def test_output_count_must_match_anchor_levels(self):
        decoder = YoloDecoder(self.ANCHORS, nb_classes=1, input_size=(64, 64))
        with pytest.raises(ConfigurationError, match="anchor levels"):
            decoder.decode([np.zeros((2, 2, 18))])

    def test_depth_mismatch(self):
        decoder = YoloDecoder(self.ANCHORS, nb_classes=2, input_size=(64, 64))
        with pytest.raises(ConfigurationError, match="depth"):
            decoder.decode([np.zeros((2, 2, 18)), np.zeros((4, 4, 18))])

    def test_nms_per_class(self):
        boxes = BoxSet(
            np.array([[0, 0, 10, 10], [1, 1, 11, 11], [0, 0, 10, 10], [50, 50, 60, 60]], "f4"),
            np.array([0.9, 0.8, 0.7, 0.6], "f4"),
            np.array([0, 0, 1, 0], "i4"),
        )
        kept = NonMaximumSuppression(0.5).process(boxes)
        assert kept.scores.tolist() == pytest.approx([0.9, 0.7, 0.6])
        assert kept.labels.tolist() == [0, 1, 0]

    def test_nms_empty(self):
        assert len(NonMaximumSuppression().process(BoxSet())) == 0

    def test_accumulator_shifts_and_scales(self):
        accumulator = BoxAccumulator(downsample=4.0)
        patch = Patch(np.zeros((8, 8, 3)), x=16, y=32, row=0, col=0, width=8, height=8)
        boxes = BoxSet(np.array([[1, 2, 3, 4]], "f4"), np.ones(1, "f4"), np.zeros(1, "i4"))
        accumulator.add(patch, boxes)
        accumulator.add(patch, BoxSet())
        result = accumulator.result()
        np.testing.assert_allclose(result.boxes, [[68, 136, 76, 144]])

    def test_box_rows(self):
        boxes = BoxSet(np.array([[1, 2, 3, 4]], "f4"), np.array([0.5], "f4"), np.array([3], "i4"))
        arr = boxes.to_array()
        assert arr.shape == (1, 6)
        assert BoxSet.from_array(arr).labels.tolist() == [3]


class TestMisc:
    def test_resizer(self):
        image = np.zeros((40, 60), dtype=np.uint8)
        image[:, 30:] = 2
        out = ImageResizer(30, 20, nearest=True).process(image)
        assert out.shape == (20, 30)
        assert set(np.unique(out)) == {0, 2}

    def test_mask_from_labels(self):
        data = ImageData(np.array([[0, 2], [1, 0]], dtype=np.uint8), (128.0, 128.0))
        mask = mask_from_labels(data, (256, 256))
        np.testing.assert_array_equal(mask.data, [[0, 1], [1, 0]])
        assert mask.scale == (1 / 128.0, 1 / 128.0)
        assert mask.source_shape == (256, 256)
