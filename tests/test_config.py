from audit.app_context import build_controller
from audit.config import AuditSettings, load_settings
from storage.local_backend import LocalAuditBackend
from conftest import FakeAnnotator

def test_yaml_values_and_env_overrides(tmp_path, monkeypatch):
    path = tmp_path / "audit.yaml"
    path.write_text("api:\n  base_url: https://audit.example/api\n  timeout: 10\n"
                    "evidence:\n  max_per_item: 3\n", encoding="utf-8")
    monkeypatch.setenv("AUDIT_VISION_MODEL", "gpt-4o")
    monkeypatch.setenv("AUDIT_MAX_EVIDENCE", "4")

    settings = load_settings(path)

    assert settings.api_url == "https://audit.example/api"
    assert settings.api_timeout == 10
    assert settings.vision_model == "gpt-4o"
    assert settings.max_evidence == 4
    assert settings.jpeg_quality == 85

def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    for name in ("AUDIT_API_URL", "AUDIT_MAX_EVIDENCE", "AUDIT_VISION_MODEL"):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings(tmp_path / "missing.yaml")

    assert settings.max_evidence == 5
    assert settings.image_max_side == 1920
    assert settings.default_activity_type == "serviço de alimentação"

def test_build_controller_against_local_database():
    settings = AuditSettings(max_evidence=3, default_activity_type="padaria")
    controller = build_controller(settings, local_db=":memory:", annotator=FakeAnnotator())

    assert isinstance(controller.api, LocalAuditBackend)
    assert controller.pipeline.max_evidence == 3
    assert controller.pipeline.store.api is controller.api
    assert controller.settings.default_activity_type == "padaria"
