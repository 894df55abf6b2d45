import os
import asyncio
import io
import tempfile

os.environ.setdefault("AUDIT_LOG_DIR", tempfile.mkdtemp(prefix="audit-logs-"))

import pytest
from PIL import Image
from audit.models import AuditSession, EvidenceAnnotation, StoredEvidence
from audit.session import AuditSessionController
from storage.audit_store import AuditStore
from storage.local_backend import LocalAuditBackend

def template_item(item_id, *, mandatory=True, question=None, **extra):
    item = {"id": item_id, "pergunta": question or f"Pergunta {item_id}",
            "categoria": "armazenamento", "peso": 1, "obrigatorio": mandatory}
    item.update(extra)
    return item

def audit_payload(*template_items, session_id="audit-1", status="em_andamento"):
    return {"id": session_id, "status": status, "templateId": "tpl-1", "unidadeId": "unit-1",
            "dataInicio": "2024-05-01T10:00:00+00:00",
            "template": {"id": "tpl-1", "tipoAtividade": "restaurante"},
            "itens": [{"id": f"item-{t['id']}", "templateItem": t, "resposta": "nao_avaliado"}
                      for t in template_items]}

def jpeg_bytes(size=(64, 48), color=(200, 30, 30), fmt="JPEG"):
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()

class FakeApi:
    def __init__(self):
        self.calls = []
        self.failures = {}
        self.finalize_response = {"pontuacaoTotal": 80.0, "dataFim": "2024-05-01T12:00:00Z"}

    async def _call(self, name, *args):
        self.calls.append((name, args))
        await asyncio.sleep(0)
        if name in self.failures:
            raise self.failures[name]

    async def answer_item(self, session_id, item_id, answer, extras=None):
        await self._call("answer_item", session_id, item_id, answer, extras)

    async def finalize_audit(self, session_id, general_observations=None,
                             latitude=None, longitude=None):
        await self._call("finalize_audit", session_id, general_observations, latitude, longitude)
        return self.finalize_response

    async def reopen_audit(self, session_id):
        await self._call("reopen_audit", session_id)

    def called(self, name):
        return [args for call, args in self.calls if call == name]

class FakeStore:
    """Evidence store double; `hold_upload` keeps uploads in flight until set."""

    def __init__(self):
        self.uploads = []
        self.deleted = []
        self.annotations = []
        self.upload_error = None
        self.delete_error = None
        self.annotation_error = None
        self.hold_upload = None

    def prepare(self, image):
        return image

    async def upload(self, session_id, item_id, image):
        if self.hold_upload is not None:
            await self.hold_upload.wait()
        await asyncio.sleep(0)
        if self.upload_error:
            raise self.upload_error
        photo_id = f"photo-{len(self.uploads) + 1}"
        self.uploads.append((item_id, photo_id))
        return StoredEvidence(id=photo_id, url=f"https://cdn.test/{photo_id}.jpg")

    async def delete(self, session_id, item_id, photo_id):
        await asyncio.sleep(0)
        if self.delete_error:
            raise self.delete_error
        self.deleted.append(photo_id)

    async def save_annotation(self, session_id, item_id, photo_id, annotation):
        if self.annotation_error:
            raise self.annotation_error
        self.annotations.append((photo_id, annotation))

class FakeAnnotator:
    """Returns queued annotations in order; `hold` blocks analysis until set."""

    def __init__(self, *annotations):
        self.queue = list(annotations)
        self.error = None
        self.hold = None
        self.calls = []
        self.draft = None

    async def analyze_checklist_image(self, image, question, category, activity_type):
        self.calls.append((question, category, activity_type))
        if self.hold is not None:
            await self.hold.wait()
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        if self.queue:
            return self.queue.pop(0)
        return EvidenceAnnotation(description="Sem observações", non_conformity_type="Nenhuma identificada")

    async def generate_text(self, context, activity_type):
        self.calls.append((context, activity_type))
        if self.error:
            raise self.error
        return self.draft

def make_controller(*template_items, api=None, store=None, annotator=None):
    controller = AuditSessionController(api or FakeApi(), store or FakeStore(),
                                        annotator or FakeAnnotator())
    controller.session = AuditSession.model_validate(audit_payload(*template_items))
    return controller

@pytest.fixture
def local_backend():
    backend = LocalAuditBackend(AuditStore(":memory:"))
    backend.register_unit("unit-1", "Restaurante Central")
    backend.register_template("tpl-1", "Boas práticas", [
        template_item("t1", question="Alimentos armazenados acima do piso?"),
        template_item("t2", mandatory=False, question="Lixeiras com tampa e pedal?"),
        template_item("t3", question="Temperatura da câmara fria registrada?")
    ], activity_type="restaurante")
    return backend
