"""Unit tests for upstream endpoint resolution."""

from roadster.core.models import EndpointVariant
from roadster.inference.endpoint import build_model_path, resolve_endpoint


class TestBuildModelPath:
    def test_simple(self):
        built = build_model_path("ws/model", "2")
        assert built.path == "ws/model/2"
        assert built.normalized_model_id == "ws/model"

    def test_drops_duplicated_version_segment(self):
        built = build_model_path("ws/model/3", "3")
        assert built.path == "ws/model/3"
        assert built.normalized_model_id == "ws/model"

    def test_strips_legacy_host_prefix(self):
        built = build_model_path("https://detect.roboflow.com/ws/model/", "2")
        assert built.path == "ws/model/2"

    def test_encodes_segments(self):
        built = build_model_path("my ws/road damage", "1")
        assert built.path == "my%20ws/road%20damage/1"
        assert built.normalized_model_id == "my ws/road damage"

    def test_decodes_before_encoding(self):
        built = build_model_path("ws/road%20damage", "1")
        assert built.path == "ws/road%20damage/1"

    def test_missing_parts(self):
        assert build_model_path("", "2") is None
        assert build_model_path("ws/model", "  ") is None
        assert build_model_path("3", "3") is None


class TestResolveEndpoint:
    def test_legacy_detect(self):
        resolved = resolve_endpoint("KEY", "ws/model", "2", confidence="40", endpoint_override="")
        assert resolved.variant is EndpointVariant.DETECT
        assert resolved.url == "https://detect.roboflow.com/ws/model/2?api_key=KEY&confidence=40"
        assert resolved.model_meta == {"modelId": "ws/model", "modelVersion": "2"}

    def test_legacy_with_overlap(self):
        resolved = resolve_endpoint(
            "KEY", "ws/model", "2", confidence="40", overlap="30", endpoint_override=""
        )
        assert resolved.url.endswith("?api_key=KEY&confidence=40&overlap=30")

    def test_invalid_model_path(self):
        assert resolve_endpoint("KEY", "", "2", endpoint_override="") is None

    def test_workflow_inserts_segment(self):
        resolved = resolve_endpoint(
            "KEY", "", "", endpoint_override="https://serverless.roboflow.com/ws/flow"
        )
        assert resolved.variant is EndpointVariant.WORKFLOW
        assert resolved.url == "https://serverless.roboflow.com/ws/workflows/flow"
        assert "KEY" not in resolved.url

    def test_workflow_keeps_canonical_path(self):
        url = "https://serverless.roboflow.com/ws/workflows/flow"
        resolved = resolve_endpoint("KEY", "", "", endpoint_override=url)
        assert resolved.url == url
        assert resolved.model_meta == {"modelId": None, "modelVersion": None}

    def test_custom_host_adds_missing_params_only(self):
        resolved = resolve_endpoint(
            "KEY",
            "ws/model",
            "2",
            confidence="50",
            endpoint_override="https://infer.example.com/m/1?confidence=10",
        )
        assert resolved.variant is EndpointVariant.DETECT
        assert resolved.url == "https://infer.example.com/m/1?confidence=10&api_key=KEY"

    def test_relative_override_falls_back_to_legacy(self):
        resolved = resolve_endpoint("KEY", "ws/model", "2", endpoint_override="not-a-url")
        assert resolved.url.startswith("https://detect.roboflow.com/ws/model/2?")

    def test_override_from_environment(self, monkeypatch):
        monkeypatch.setenv("ROBOFLOW_INFERENCE_ENDPOINT", "https://infer.example.com/m/1")
        resolved = resolve_endpoint("KEY", "ws/model", "2")
        assert resolved.url == "https://infer.example.com/m/1?api_key=KEY"
