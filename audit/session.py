from datetime import datetime, timezone
from typing import List, Optional
from audit import gate, scoring
from audit.config import AuditSettings
from audit.errors import (SessionNotEditable, UnknownItem, InvalidTransition,
                          DocumentationIncomplete, FinalizeBlocked, FinalizeRejected,
                          TransientError, BackendRejected)
from audit.logger import log_event, log_exception
from audit.models import (AuditSession, AuditItem, GeoPoint, Notice,
                          NonConformityDraft, SessionStatus, answer_value)
from audit.optimistic import apply_then_confirm
from audit.pipeline import EvidencePipeline
from audit.responses import ItemResponseManager, documentation_extras

class AuditSessionController:
    """Top-level orchestrator of one audit session.

    The controller is the only writer of `session`; the response manager and
    the evidence pipeline receive the session and item they act on and report
    back through exceptions (validation, transient) or `notices` (partial
    pipeline results).
    """

    def __init__(self, api, evidence_store, annotator, *, settings: Optional[AuditSettings] = None):
        self.api = api
        self.annotator = annotator
        self.settings = settings or AuditSettings()
        self.responses = ItemResponseManager(api)
        self.pipeline = EvidencePipeline(evidence_store, annotator,
                                         max_evidence=self.settings.max_evidence,
                                         notify=self._notify)
        self.session: Optional[AuditSession] = None
        self.notices: List[Notice] = []

    def _notify(self, notice: Notice):
        self.notices.append(notice)
        log_event(notice.level, f"notice_{notice.kind}",
                  session_id=self.session.id if self.session else None,
                  node="session_controller",
                  meta={"item_id": notice.item_id, "evidence": notice.evidence_id,
                        "message": notice.message})

    def _adopt(self, payload: dict) -> AuditSession:
        session = AuditSession.model_validate(payload)
        if "activity_type" not in session.model_fields_set:
            session.activity_type = self.settings.default_activity_type
        self.session = session
        return session

    def _require_session(self) -> AuditSession:
        if self.session is None:
            raise SessionNotEditable("no audit session loaded")
        return self.session

    def _require_editable(self) -> AuditSession:
        session = self._require_session()
        if not session.editable:
            raise SessionNotEditable(f"audit {session.id} is {session.status.value} and cannot be changed")
        return session

    def _item(self, item_id) -> AuditItem:
        session = self._require_editable()
        item = session.find_item(item_id)
        if item is None:
            raise UnknownItem(f"item {item_id} not found in audit {session.id}")
        return item

    async def start_session(self, unit_id, template_id, geo: Optional[GeoPoint] = None) -> AuditSession:
        try:
            payload = await self.api.start_audit(unit_id, template_id,
                                                 latitude=geo.latitude if geo else None,
                                                 longitude=geo.longitude if geo else None)
        except Exception as e:
            log_exception(e, node="session_controller")
            raise

        session = self._adopt(payload)
        log_event("INFO", "audit_started", session_id=session.id, node="session_controller",
                  meta={"unit_id": unit_id, "template_id": template_id,
                        "items": len(session.items)})
        return session

    async def load_session(self, session_id) -> AuditSession:
        try:
            payload = await self.api.get_audit(session_id)
        except Exception as e:
            log_exception(e, session_id=session_id, node="session_controller")
            raise

        session = self._adopt(payload)
        log_event("INFO", "audit_loaded", session_id=session.id, node="session_controller",
                  meta={"status": session.status.value, "progress": scoring.progress(session)})
        return session

    def progress(self) -> int:
        return scoring.progress(self._require_session())

    def can_finalize(self) -> bool:
        return gate.is_finalize_allowed(self._require_session())

    def mandatory_status(self) -> gate.MandatoryStatus:
        return gate.mandatory_status(self._require_session())

    def non_conforming_items(self) -> List[AuditItem]:
        return scoring.non_conforming_items(self._require_session())

    async def answer_item(self, item_id, value):
        item = self._item(item_id)
        return await self.responses.set_answer(self.session, item, value)

    async def add_evidence(self, item_id, image: bytes, *, wait_for_analysis=False):
        item = self._item(item_id)
        return await self.pipeline.add(self.session, item, image,
                                       wait_for_analysis=wait_for_analysis)

    async def remove_evidence(self, item_id, evidence_id):
        item = self._item(item_id)
        await self.pipeline.remove(self.session, item, evidence_id)

    async def save_observation(self, item_id, text, *, wait_for_evidence=False):
        item = self._item(item_id)
        if wait_for_evidence:
            await self.pipeline.settled(item_id)
            # the session may have been finalized while waiting
            item = self._item(item_id)
        await self.responses.save_observation(self.session, item, text)

    async def draft_non_conformity(self, item_id, description=None) -> NonConformityDraft:
        """Ask the text model for a technical write-up of the item's finding
        and store it on the item."""
        item = self._item(item_id)
        session = self.session

        finding = (description or item.observation or item.ai_description).strip()
        if not finding:
            raise DocumentationIncomplete("describe the finding before drafting its text")

        context = (f"Item: {item.template_item.question}\n"
                   f"Categoria: {item.template_item.category}\n"
                   f"Constatação: {finding}")

        try:
            draft = await self.annotator.generate_text(context, session.activity_type)
        except Exception as e:
            log_exception(e, session_id=session.id, node="session_controller")
            raise TransientError("draft_non_conformity", e) from e

        previous = (item.non_conformity_type, item.legal_reference, item.suggested_action_plan)

        def apply():
            item.non_conformity_type = draft.technical_description
            item.legal_reference = draft.legal_reference or item.legal_reference
            actions = draft.corrective_actions + draft.preventive_actions
            if actions:
                item.suggested_action_plan = "\n".join(actions)

        def revert():
            item.non_conformity_type, item.legal_reference, item.suggested_action_plan = previous

        await apply_then_confirm(operation="draft_non_conformity", apply=apply, revert=revert,
                                 confirm=lambda: self.api.answer_item(session.id, item.id,
                                                                      answer_value(item.answer),
                                                                      documentation_extras(item)),
                                 session_id=session.id, meta={"item_id": item.id})
        return draft

    async def finalize(self, general_observations=None, geo: Optional[GeoPoint] = None) -> AuditSession:
        session = self._require_editable()

        missing = gate.missing_mandatory(session)
        if missing:
            error = FinalizeBlocked([item.id for item in missing])
            log_event("WARNING", "finalize_blocked", session_id=session.id,
                      node="session_controller", meta={"missing": error.missing_count})
            raise error

        try:
            payload = await self.api.finalize_audit(session.id, general_observations,
                                                    latitude=geo.latitude if geo else None,
                                                    longitude=geo.longitude if geo else None)

        except BackendRejected as e:
            log_exception(e, session_id=session.id, node="session_controller")
            if e.is_validation:
                raise FinalizeRejected(e.message) from e
            raise TransientError("finalize", e) from e

        except Exception as e:
            log_exception(e, session_id=session.id, node="session_controller")
            raise TransientError("finalize", e) from e

        payload = payload or {}
        session.status = SessionStatus.FINALIZED
        if general_observations is not None:
            session.general_observations = general_observations
        session.end_location = geo
        if payload.get("pontuacaoTotal") is not None:
            session.final_score = float(payload["pontuacaoTotal"])
        ended_at = payload.get("dataFim")
        session.ended_at = (datetime.fromisoformat(ended_at.replace("Z", "+00:00"))
                            if ended_at else datetime.now(timezone.utc))

        log_event("INFO", "audit_finalized", session_id=session.id, node="session_controller",
                  meta={"score": session.final_score})
        return session

    async def reopen(self) -> AuditSession:
        session = self._require_session()
        if session.status != SessionStatus.FINALIZED:
            raise InvalidTransition(f"only finalized audits can be reopened, audit is {session.status.value}")

        try:
            await self.api.reopen_audit(session.id)
        except Exception as e:
            log_exception(e, session_id=session.id, node="session_controller")
            raise TransientError("reopen", e) from e

        session.status = SessionStatus.IN_PROGRESS
        session.ended_at = None
        session.end_location = None

        log_event("INFO", "audit_reopened", session_id=session.id, node="session_controller")
        return session
