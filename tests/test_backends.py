"""Tests for backend discovery, backend/format selection, and node bindings."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from wsi_dispatch.backends import PREFERENCE_ORDER, build_default_registry, select_backend
from wsi_dispatch.backends.registry import BUILTIN_CAPABILITIES, BackendRegistry, scan_library_dir
from wsi_dispatch.backends.shapes import bind_shapes
from wsi_dispatch.core.models import (
    BackendChoice,
    DeviceType,
    ModelDescriptor,
    ProblemKind,
    ResolutionTier,
)
from wsi_dispatch.errors import BackendUnavailableError

BACKENDS = sorted({name for name, _ in PREFERENCE_ORDER})
FORMATS = sorted({fmt for _, fmt in PREFERENCE_ORDER} | {"h5", "tflite"})


class TestSelectBackend:
    """Tests for ``select_backend``."""

    def test_openvino_picks_xml(self):
        choice = select_backend({"xml", "pb"}, {"OpenVINO", "ONNXRuntime"})
        assert choice == BackendChoice("OpenVINO", "xml", DeviceType.CPU)

    def test_order_prefers_tensorrt_onnx(self):
        choice = select_backend(
            {"onnx", "xml"}, {"TensorRT", "OpenVINO", "ONNXRuntime"}, gpu_available=True
        )
        assert choice.backend == "TensorRT"
        assert choice.model_format == "onnx"
        assert choice.device == DeviceType.GPU

    def test_openvino_onnx_before_xml(self):
        choice = select_backend({"onnx", "xml"}, {"OpenVINO"})
        assert choice.model_format == "onnx"

    def test_formats_accept_dots_and_case(self):
        choice = select_backend({".PB"}, ["TensorFlow"])
        assert choice == BackendChoice("TensorFlow", "pb", DeviceType.CPU)

    def test_no_match(self):
        assert select_backend({"pt"}, {"OpenVINO", "TensorFlow"}) is None
        assert select_backend(set(), {"OpenVINO"}) is None
        assert select_backend({"onnx"}, set()) is None

    def test_cpu_only_skips_gpu_backends(self):
        choice = select_backend(
            {"onnx"}, {"TensorRT", "ONNXRuntime"}, cpu_only=True, gpu_available=True
        )
        assert choice == BackendChoice("ONNXRuntime", "onnx", DeviceType.CPU)

    def test_cpu_only_without_cpu_backend(self):
        assert select_backend({"onnx", "uff"}, {"TensorRT"}, cpu_only=True) is None

    def test_cpu_capable_override(self):
        choice = select_backend(
            {"onnx"},
            {"TensorRT", "ONNXRuntime"},
            cpu_only=True,
            cpu_capable=lambda name: name == "TensorRT",
        )
        assert choice.backend == "TensorRT"
        assert choice.device == DeviceType.CPU

    def test_preferred_backend_goes_first(self):
        choice = select_backend({"onnx"}, {"OpenVINO", "ONNXRuntime"}, preferred="ONNXRuntime")
        assert choice.backend == "ONNXRuntime"

    def test_preferred_backend_ignored_when_not_installed(self):
        choice = select_backend({"onnx"}, {"OpenVINO"}, preferred="ONNXRuntime")
        assert choice.backend == "OpenVINO"

    def test_gpu_used_when_available(self):
        choice = select_backend({"onnx"}, {"ONNXRuntime"}, gpu_available=True)
        assert choice.device == DeviceType.GPU

    def test_gpu_only_backend_keeps_gpu_device(self):
        choice = select_backend({"uff"}, {"TensorRT"})
        assert choice.device == DeviceType.GPU

    def test_descriptor_mapping_supplies_devices(self):
        registry = BackendRegistry(module_available=lambda mod: mod == "openvino")
        choice = select_backend({"xml"}, registry.installed(), gpu_available=True)
        assert choice == BackendChoice("OpenVINO", "xml", DeviceType.GPU)

    @given(
        formats=st.sets(st.sampled_from(FORMATS)),
        installed=st.sets(st.sampled_from(BACKENDS)),
        cpu_only=st.booleans(),
    )
    def test_choice_is_installed_and_available(self, formats, installed, cpu_only):
        choice = select_backend(formats, installed, cpu_only=cpu_only)
        if choice is None:
            return
        assert choice.backend in installed
        assert choice.model_format in formats
        assert (choice.backend, choice.model_format) in PREFERENCE_ORDER
        if cpu_only:
            assert choice.device == DeviceType.CPU

    @given(
        formats=st.sets(st.sampled_from(FORMATS)),
        installed=st.sets(st.sampled_from(BACKENDS)),
    )
    def test_choice_is_first_matching_pair(self, formats, installed):
        expected = next(
            ((b, f) for b, f in PREFERENCE_ORDER if b in installed and f in formats), None
        )
        choice = select_backend(formats, sorted(installed))
        got = (choice.backend, choice.model_format) if choice is not None else None
        assert got == expected


class TestRegistry:
    """Tests for backend discovery."""

    def test_module_probe_marks_availability(self):
        registry = BackendRegistry(
            module_available=lambda mod: mod in {"openvino", "onnxruntime"},
            gpu_available=False,
        )
        assert sorted(registry.installed()) == ["ONNXRuntime", "OpenVINO"]
        # TensorRT needs both of its modules
        assert not registry.get("TensorRT").available
        assert not registry.has_gpu

    def test_discovery_runs_once(self):
        calls = []

        def probe(mod):
            calls.append(mod)
            return False

        registry = BackendRegistry(module_available=probe, gpu_available=False)
        registry.installed()
        first = len(calls)
        registry.installed()
        registry.descriptors()
        assert len(calls) == first
        registry.refresh()
        registry.installed()
        assert len(calls) == 2 * first

    def test_failing_gpu_probe_means_cpu(self):
        def boom():
            raise RuntimeError("driver mismatch")

        registry = BackendRegistry(module_available=lambda mod: True, gpu_available=boom)
        assert registry.has_gpu is False

    def test_library_plugins_enable_backends(self, tmp_path):
        (tmp_path / "libInferenceEngineOpenVINO.so").write_bytes(b"")
        (tmp_path / "libInferenceEngineCustom.so").write_bytes(b"")
        registry = BackendRegistry(
            library_dir=tmp_path, module_available=lambda mod: False, gpu_available=False
        )
        installed = registry.installed()
        assert installed["OpenVINO"].origin == "library"
        assert installed["OpenVINO"].extensions == frozenset({"onnx", "xml"})
        assert installed["Custom"].extensions == frozenset()

    def test_add_descriptor(self):
        from wsi_dispatch.core.models import BackendDescriptor

        registry = BackendRegistry(module_available=lambda mod: False, gpu_available=False)
        registry.add(
            BackendDescriptor(
                "Remote", frozenset({DeviceType.CPU}), frozenset({"bin"}), available=True
            )
        )
        assert list(registry.installed()) == ["Remote"]

    def test_create_engine_without_builder(self):
        registry = BackendRegistry(module_available=lambda mod: False, gpu_available=False)
        with pytest.raises(BackendUnavailableError, match="No engine registered"):
            registry.create_engine(BackendChoice("OpenVINO", "xml"))

    def test_duplicate_engine_registration(self):
        registry = build_default_registry(gpu_available=False)
        with pytest.raises(ValueError, match="already registered"):
            registry.register_engine("OpenVINO", lambda choice: None)
        assert sorted(registry.engines()) == sorted(c.name for c in BUILTIN_CAPABILITIES)


class TestScanLibraryDir:
    def test_linux(self, tmp_path):
        for name in ("libInferenceEngineTensorRT.so", "libInferenceEngineOpenVINO.so", "x.so"):
            (tmp_path / name).write_bytes(b"")
        assert scan_library_dir(tmp_path, "Linux") == ["OpenVINO", "TensorRT"]

    def test_windows(self, tmp_path):
        (tmp_path / "InferenceEngineTensorFlow.dll").write_bytes(b"")
        assert scan_library_dir(tmp_path, "Windows") == ["TensorFlow"]

    def test_unsupported_system(self, tmp_path, caplog):
        (tmp_path / "libInferenceEngineOpenVINO.so").write_bytes(b"")
        assert scan_library_dir(tmp_path, "Darwin") == []
        assert "Unsupported system" in caplog.text

    def test_missing_dir(self, tmp_path):
        assert scan_library_dir(tmp_path / "nope", "linux") == []


def _model(**overrides) -> ModelDescriptor:
    fields = dict(
        name="m",
        problem=ProblemKind.CLASSIFICATION,
        resolution=ResolutionTier.HIGH,
        input_width=96,
        input_height=64,
        nb_classes=3,
        input_node="input_1",
        output_nodes=("dense/Softmax",),
    )
    fields.update(overrides)
    return ModelDescriptor(**fields)


class TestBindShapes:
    def test_tensorflow_classification(self):
        shapes = bind_shapes(_model(), BackendChoice("TensorFlow", "pb"))
        assert shapes.input_shape == (1, 64, 96, 3)
        assert shapes.output_shapes == ((1, 3),)
        assert shapes.layout == "NHWC"
        assert shapes.explicit

    def test_tensorflow_segmentation(self):
        model = _model(problem=ProblemKind.SEGMENTATION)
        shapes = bind_shapes(model, BackendChoice("TensorFlow", "pb"))
        assert shapes.output_shapes == ((1, 64, 96, 3),)

    def test_tensorflow_multi_output_has_no_shapes(self):
        model = _model(problem=ProblemKind.OBJECT_DETECTION, output_nodes=("a", "b"))
        shapes = bind_shapes(model, BackendChoice("TensorFlow", "pb"))
        assert shapes.output_nodes == ("a", "b")
        assert shapes.output_shapes == (None, None)

    def test_uff_is_channels_first(self):
        shapes = bind_shapes(_model(nb_channels=1), BackendChoice("TensorRT", "uff"))
        assert shapes.input_shape == (1, 1, 64, 96)
        assert shapes.layout == "NCHW"

    @pytest.mark.parametrize(
        "choice",
        [
            BackendChoice("OpenVINO", "xml"),
            BackendChoice("ONNXRuntime", "onnx"),
            BackendChoice("TensorRT", "onnx"),
        ],
    )
    def test_other_runtimes_infer(self, choice):
        shapes = bind_shapes(_model(), choice)
        assert not shapes.explicit
        assert shapes.input_node == "input_1"
        assert shapes.output_nodes == ("dense/Softmax",)
