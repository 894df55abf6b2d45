import os
from pathlib import Path
from typing import Optional
import yaml
from pydantic import BaseModel
from audit.models import MAX_EVIDENCE_PER_ITEM

class AuditSettings(BaseModel):
    api_url: str = "http://localhost:3001/api"
    api_token: Optional[str] = None
    api_timeout: float = 30.0
    vision_model: str = "gpt-4o-mini"
    text_model: str = "gpt-4o-mini"
    max_evidence: int = MAX_EVIDENCE_PER_ITEM
    image_max_side: int = 1920
    jpeg_quality: int = 85
    default_activity_type: str = "serviço de alimentação"

ENV_OVERRIDES = {
    "AUDIT_API_URL": "api_url",
    "AUDIT_API_TOKEN": "api_token",
    "AUDIT_API_TIMEOUT": "api_timeout",
    "AUDIT_VISION_MODEL": "vision_model",
    "AUDIT_TEXT_MODEL": "text_model",
    "AUDIT_MAX_EVIDENCE": "max_evidence"
}

def _flatten(registry: dict) -> dict:
    api = registry.get("api") or {}
    models = registry.get("models") or {}
    evidence = registry.get("evidence") or {}

    values = {"api_url": api.get("base_url"),
              "api_token": api.get("token"),
              "api_timeout": api.get("timeout"),
              "vision_model": models.get("vision"),
              "text_model": models.get("text"),
              "max_evidence": evidence.get("max_per_item"),
              "image_max_side": evidence.get("image_max_side"),
              "jpeg_quality": evidence.get("jpeg_quality"),
              "default_activity_type": registry.get("default_activity_type")}

    return {key: value for key, value in values.items() if value is not None}

def load_settings(path="config/audit.yaml") -> AuditSettings:
    """Settings from the yaml file, then AUDIT_* environment overrides.

    A missing file is not an error; defaults apply."""
    values = {}
    if path and Path(path).exists():
        with open(path, "r", encoding="utf-8") as file:
            values = _flatten(yaml.safe_load(file) or {})

    for env_name, field in ENV_OVERRIDES.items():
        if os.getenv(env_name):
            values[field] = os.getenv(env_name)

    return AuditSettings(**values)
