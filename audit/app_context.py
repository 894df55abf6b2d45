from langchain_openai import ChatOpenAI
from audit.config import AuditSettings, load_settings
from audit.logger import log_event
from audit.session import AuditSessionController
from integrations.ai_annotation import AnnotationClient
from integrations.backend_api import BackendApiClient
from integrations.evidence_store import EvidenceStore
from storage.audit_store import AuditStore
from storage.local_backend import LocalAuditBackend

def build_annotator(settings: AuditSettings, legislation_lookup=None) -> AnnotationClient:
    vision_llm = ChatOpenAI(model=settings.vision_model, max_tokens=1500)
    text_llm = ChatOpenAI(model=settings.text_model, temperature=0.3, max_tokens=2000)
    return AnnotationClient(vision_llm, text_llm, legislation_lookup=legislation_lookup)

def build_controller(settings: AuditSettings = None, *, local_db=None,
                     annotator=None) -> AuditSessionController:
    """Wire a controller against the remote API, or against a local sqlite
    database when `local_db` is given."""
    settings = settings or load_settings()

    if local_db:
        api = LocalAuditBackend(AuditStore(local_db))
    else:
        api = BackendApiClient(settings.api_url, settings.api_token,
                               timeout=settings.api_timeout)

    store = EvidenceStore(api, max_side=settings.image_max_side,
                          jpeg_quality=settings.jpeg_quality)
    annotator = annotator or build_annotator(settings)

    log_event("INFO", "controller_built", node="app_context",
              meta={"backend": "local" if local_db else settings.api_url,
                    "vision_model": settings.vision_model})

    return AuditSessionController(api, store, annotator, settings=settings)
