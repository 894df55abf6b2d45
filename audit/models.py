import json
from datetime import datetime
from enum import Enum
from typing import Optional, List, Literal, Union
from uuid import uuid4
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from audit.errors import InvalidTransition

MAX_EVIDENCE_PER_ITEM = 5

class StandardAnswer(str, Enum):
    CONFORME = "conforme"
    NAO_CONFORME = "nao_conforme"
    NAO_APLICAVEL = "nao_aplicavel"
    NAO_AVALIADO = "nao_avaliado"

class CustomAnswer(BaseModel):
    """Answer taken from a template-defined option list or typed field."""
    model_config = ConfigDict(frozen=True)

    value: str

Answer = Union[StandardAnswer, CustomAnswer]

def parse_answer(raw) -> Answer:
    if isinstance(raw, (StandardAnswer, CustomAnswer)):
        return raw
    if raw is None or str(raw).strip() == "":
        return StandardAnswer.NAO_AVALIADO
    try:
        return StandardAnswer(raw)
    except ValueError:
        return CustomAnswer(value=str(raw))

def answer_value(answer: Answer) -> str:
    return answer.value

def is_answered(answer: Answer) -> bool:
    return answer != StandardAnswer.NAO_AVALIADO

class SessionStatus(str, Enum):
    IN_PROGRESS = "em_andamento"
    FINALIZED = "finalizada"
    CANCELLED = "cancelada"

CustomAnswerType = Literal["texto", "numero", "data", "select"]
Severity = Literal["baixa", "media", "alta", "critica"]

class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

class AnswerOptionConfig(_WireModel):
    value: str = Field(alias="valor")
    photo_required: bool = Field(False, alias="fotoObrigatoria")
    observation_required: bool = Field(False, alias="observacaoObrigatoria")
    score: Optional[float] = Field(None, alias="pontuacao")

class TemplateItem(_WireModel):
    id: str
    question: str = Field(alias="pergunta")
    category: str = Field("outro", alias="categoria")
    criticality: str = Field("media", alias="criticidade")
    weight: int = Field(1, alias="peso")
    order: int = Field(0, alias="ordem")
    mandatory: bool = Field(True, alias="obrigatorio")
    legal_reference: Optional[str] = Field(None, alias="legislacaoReferencia")
    answer_options: List[str] = Field(default_factory=list, alias="opcoesResposta")
    use_custom_answers: bool = Field(False, alias="usarRespostasPersonalizadas")
    custom_answer_type: Optional[CustomAnswerType] = Field(None, alias="tipoRespostaCustomizada")
    option_configs: List[AnswerOptionConfig] = Field(default_factory=list, alias="opcoesRespostaConfig")

    @field_validator("answer_options", "option_configs", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return value or []

    def option_config(self, value: str) -> Optional[AnswerOptionConfig]:
        for config in self.option_configs:
            if config.value == value:
                return config
        return None

class EvidenceAnnotation(_WireModel):
    relevant: bool = Field(True, alias="imagemRelevante")
    description: str = Field("", alias="descricaoIa")
    non_conformity_type: str = Field("", alias="tipoNaoConformidade")
    severity: Severity = Field("media", alias="gravidade")
    legal_reference: str = Field("", alias="referenciaLegal")
    suggestions: List[str] = Field(default_factory=list, alias="sugestoes")

    @field_validator("description", "non_conformity_type", "legal_reference", mode="before")
    @classmethod
    def _none_as_blank(cls, value):
        return value or ""

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value):
        value = str(value or "media").strip().lower().replace("é", "e").replace("í", "i")
        return value if value in ("baixa", "media", "alta", "critica") else "media"

    @field_validator("suggestions", mode="before")
    @classmethod
    def _suggestions_as_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

UploadStatus = Literal["pending", "uploaded", "failed"]
AnalysisStatus = Literal["pending", "analyzing", "done", "failed"]
EvidenceStage = Literal["selected", "uploading", "uploaded", "analyzing", "annotated", "failed"]

EVIDENCE_TRANSITIONS = {
    "selected": {"uploading"},
    "uploading": {"uploaded", "failed"},
    "uploaded": {"analyzing"},
    "analyzing": {"annotated", "uploaded"},
    "annotated": set(),
    "failed": set()
}

IN_FLIGHT_STAGES = ("selected", "uploading", "analyzing")

class Evidence(BaseModel):
    local_id: str = Field(default_factory=lambda: uuid4().hex)
    id: Optional[str] = None
    url: Optional[str] = None
    image: Optional[bytes] = Field(default=None, exclude=True, repr=False)
    stage: EvidenceStage = "selected"
    upload_status: UploadStatus = "pending"
    analysis_status: AnalysisStatus = "pending"
    annotation: Optional[EvidenceAnnotation] = None

    @classmethod
    def from_wire(cls, payload: dict) -> "Evidence":
        annotation = None
        raw = payload.get("analiseIa")
        if raw:
            try:
                annotation = EvidenceAnnotation.model_validate(json.loads(raw))
            except (ValueError, TypeError):
                # plain-text analysis stored by older clients
                annotation = EvidenceAnnotation(description=str(raw))

        return cls(id=payload.get("id"), url=payload.get("url"),
                   stage="annotated" if annotation else "uploaded",
                   upload_status="uploaded",
                   analysis_status="done" if annotation else "pending",
                   annotation=annotation)

    def transition(self, target: EvidenceStage, *, analysis_failed=False):
        if target not in EVIDENCE_TRANSITIONS[self.stage]:
            raise InvalidTransition(f"evidence cannot move from {self.stage} to {target}")

        self.stage = target
        if target == "uploaded":
            self.upload_status = "uploaded"
            self.analysis_status = "failed" if analysis_failed else "pending"
        elif target == "analyzing":
            self.analysis_status = "analyzing"
        elif target == "annotated":
            self.analysis_status = "done"
        elif target == "failed":
            self.upload_status = "failed"

    @property
    def settled(self) -> bool:
        return self.stage not in IN_FLIGHT_STAGES

    @property
    def not_relevant(self) -> bool:
        return self.annotation is not None and not self.annotation.relevant

class AuditItem(_WireModel):
    id: str
    template_item: TemplateItem = Field(alias="templateItem")
    answer: Answer = Field(StandardAnswer.NAO_AVALIADO, alias="resposta")
    observation: str = Field("", alias="observacao")
    ai_description: str = Field("", alias="descricaoIa")
    non_conformity_type: str = Field("", alias="descricaoNaoConformidade")
    legal_reference: str = Field("", alias="referenciaLegal")
    suggested_action_plan: str = Field("", alias="planoAcaoSugerido")
    score: float = Field(0, alias="pontuacao")
    evidence: List[Evidence] = Field(default_factory=list, alias="fotos")

    @field_validator("answer", mode="before")
    @classmethod
    def _parse_answer(cls, value):
        return parse_answer(value)

    @field_validator("observation", "ai_description", "non_conformity_type",
                     "legal_reference", "suggested_action_plan", mode="before")
    @classmethod
    def _none_as_blank(cls, value):
        return value or ""

    @field_validator("evidence", mode="before")
    @classmethod
    def _parse_evidence(cls, value):
        parsed = []
        for entry in value or []:
            if isinstance(entry, dict) and "stage" not in entry:
                entry = Evidence.from_wire(entry)
            parsed.append(entry)
        return parsed

    @property
    def answered(self) -> bool:
        return is_answered(self.answer)

    @property
    def mandatory(self) -> bool:
        return self.template_item.mandatory

    def find_evidence(self, evidence_id: str) -> Optional[Evidence]:
        """Look up by local id or by the server-assigned id."""
        for evidence in self.evidence:
            if evidence_id in (evidence.local_id, evidence.id):
                return evidence
        return None

class GeoPoint(BaseModel):
    latitude: float
    longitude: float

class AuditSession(_WireModel):
    id: str
    status: SessionStatus = SessionStatus.IN_PROGRESS
    started_at: Optional[datetime] = Field(None, alias="dataInicio")
    ended_at: Optional[datetime] = Field(None, alias="dataFim")
    start_location: Optional[GeoPoint] = None
    end_location: Optional[GeoPoint] = None
    template_id: str = Field(alias="templateId")
    unit_id: str = Field(alias="unidadeId")
    activity_type: str = "serviço de alimentação"
    items: List[AuditItem] = Field(default_factory=list, alias="itens")
    final_score: Optional[float] = Field(None, alias="pontuacaoTotal")
    general_observations: Optional[str] = Field(None, alias="observacoesGerais")

    @model_validator(mode="before")
    @classmethod
    def _flatten_wire(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)

        template = data.get("template") or {}
        if template.get("tipoAtividade"):
            data.setdefault("activity_type", template["tipoAtividade"])

        for field, suffix in (("start_location", "Inicio"), ("end_location", "Fim")):
            lat, lng = data.get(f"latitude{suffix}"), data.get(f"longitude{suffix}")
            if lat is not None and lng is not None:
                data.setdefault(field, {"latitude": lat, "longitude": lng})
        return data

    @property
    def editable(self) -> bool:
        return self.status == SessionStatus.IN_PROGRESS

    def find_item(self, item_id: str) -> Optional[AuditItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

class StoredEvidence(BaseModel):
    id: str
    url: str

class NonConformityDraft(_WireModel):
    technical_description: str = Field("", alias="descricaoTecnica")
    legal_reference: str = Field("", alias="referenciaLegal")
    risk: str = Field("", alias="riscoEnvolvido")
    corrective_actions: List[str] = Field(default_factory=list)
    preventive_actions: List[str] = Field(default_factory=list)
    deadline: str = ""

    @model_validator(mode="before")
    @classmethod
    def _flatten_plan(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        plan = data.pop("planoAcao", None) or {}
        data.setdefault("corrective_actions", plan.get("acoesCorretivas") or [])
        data.setdefault("preventive_actions", plan.get("acoesPreventivas") or [])
        data.setdefault("deadline", plan.get("prazoSugerido") or "")
        return data

NoticeKind = Literal["analysis_failed", "analysis_not_persisted", "not_relevant"]

class Notice(BaseModel):
    level: Literal["INFO", "WARNING", "ERROR"]
    kind: NoticeKind
    message: str
    item_id: Optional[str] = None
    evidence_id: Optional[str] = None
