"""Evidence & annotation pipeline.

One photo travels selected -> uploading -> uploaded -> analyzing -> annotated.
Upload failures roll the photo back out of the item; analysis failures leave
it `uploaded` and only produce a notice. Work on the same item is serialized
by a per-item lock held until the upload has left `uploading`, so the cap
check is authoritative even under rapid selections.
"""
import asyncio
from typing import Callable, Dict, Optional, Set
from audit.errors import (EvidenceNotAllowed, EvidenceCapReached, EvidenceInFlight,
                          UnknownEvidence, TransientError)
from audit.logger import log_event, log_exception, log_transition
from audit.models import (AuditItem, AuditSession, Evidence, EvidenceAnnotation,
                          EvidenceStage, Notice, MAX_EVIDENCE_PER_ITEM)
from audit.optimistic import apply_then_confirm

def _index_of(item: AuditItem, evidence: Evidence) -> Optional[int]:
    for index, entry in enumerate(item.evidence):
        if entry is evidence:
            return index
    return None

class EvidencePipeline:
    def __init__(self, store, annotator, *, max_evidence=MAX_EVIDENCE_PER_ITEM,
                 notify: Optional[Callable[[Notice], None]] = None):
        self.store = store
        self.annotator = annotator
        self.max_evidence = max_evidence
        self.notify = notify or (lambda notice: None)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, Set[asyncio.Task]] = {}

    def _lock(self, item_id) -> asyncio.Lock:
        if item_id not in self._locks:
            self._locks[item_id] = asyncio.Lock()
        return self._locks[item_id]

    def _move(self, session, item, evidence: Evidence, target: EvidenceStage, **kwargs):
        source = evidence.stage
        evidence.transition(target, **kwargs)
        log_transition(session.id, item.id, evidence.id or evidence.local_id, source, target)

    async def settled(self, item_id):
        """Wait until no upload or analysis is in flight for the item."""
        while True:
            async with self._lock(item_id):
                pass

            tasks = [task for task in self._pending.get(item_id, ()) if not task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def add(self, session: AuditSession, item: AuditItem, image: bytes, *,
                  wait_for_analysis=False) -> Evidence:
        if not item.answered:
            raise EvidenceNotAllowed("answer the item before attaching photos")

        image = await asyncio.to_thread(self.store.prepare, image)

        async with self._lock(item.id):
            # state may have changed while waiting for the previous upload
            if not item.answered:
                raise EvidenceNotAllowed("answer the item before attaching photos")
            if len(item.evidence) >= self.max_evidence:
                raise EvidenceCapReached(f"maximum of {self.max_evidence} photos per item")

            evidence = Evidence(image=image)
            item.evidence.append(evidence)
            self._move(session, item, evidence, "uploading")

            try:
                stored = await self.store.upload(session.id, item.id, image)

            except Exception as e:
                self._move(session, item, evidence, "failed")
                index = _index_of(item, evidence)
                if index is not None:
                    del item.evidence[index]

                log_exception(e, session_id=session.id, node="evidence_pipeline")
                log_event("WARNING", "evidence_upload_reverted", session_id=session.id,
                          node="evidence_pipeline", meta={"item_id": item.id})
                raise TransientError("add_evidence", e) from e

            evidence.id = stored.id
            evidence.url = stored.url
            self._move(session, item, evidence, "uploaded")

        self._move(session, item, evidence, "analyzing")

        log_event("INFO", "evidence_added", session_id=session.id, node="evidence_pipeline",
                  meta={"item_id": item.id, "evidence": evidence.id,
                        "count": len(item.evidence)})

        task = asyncio.create_task(self._analyze(session, item, evidence))
        pending = self._pending.setdefault(item.id, set())
        pending.add(task)
        task.add_done_callback(pending.discard)

        if wait_for_analysis:
            await task
        return evidence

    async def _analyze(self, session: AuditSession, item: AuditItem, evidence: Evidence):
        template_item = item.template_item

        try:
            annotation = await self.annotator.analyze_checklist_image(
                evidence.image, template_item.question, template_item.category,
                session.activity_type)

        except Exception as e:
            log_exception(e, session_id=session.id, node="evidence_pipeline")
            if _index_of(item, evidence) is None:
                return

            self._move(session, item, evidence, "uploaded", analysis_failed=True)
            self.notify(Notice(level="WARNING", kind="analysis_failed",
                               message=f"photo saved, but it could not be analyzed: {e}",
                               item_id=item.id, evidence_id=evidence.id))
            return

        if _index_of(item, evidence) is None or not session.editable:
            # removed while analyzing, or the audit was finalized meanwhile
            if _index_of(item, evidence) is not None:
                self._move(session, item, evidence, "uploaded")
            log_event("DEBUG", "stale_annotation_discarded", session_id=session.id,
                      node="evidence_pipeline",
                      meta={"item_id": item.id, "evidence": evidence.id,
                            "status": session.status.value})
            return

        evidence.annotation = annotation
        self._move(session, item, evidence, "annotated")
        self._merge(item, annotation)

        if not annotation.relevant:
            self.notify(Notice(level="WARNING", kind="not_relevant",
                               message="the photo does not seem related to this checklist item",
                               item_id=item.id, evidence_id=evidence.id))

        try:
            await self.store.save_annotation(session.id, item.id, evidence.id, annotation)

        except Exception as e:
            log_exception(e, session_id=session.id, node="evidence_pipeline")
            self.notify(Notice(level="WARNING", kind="analysis_not_persisted",
                               message="photo analysis could not be saved on the server",
                               item_id=item.id, evidence_id=evidence.id))

    def _merge(self, item: AuditItem, annotation: EvidenceAnnotation):
        # last annotation wins across the item's photos
        item.ai_description = annotation.description
        item.non_conformity_type = annotation.non_conformity_type
        item.legal_reference = annotation.legal_reference
        item.suggested_action_plan = "\n".join(annotation.suggestions)

    async def remove(self, session: AuditSession, item: AuditItem, evidence_id: str):
        evidence = item.find_evidence(evidence_id)
        if evidence is None:
            raise UnknownEvidence(f"photo {evidence_id} not found on item {item.id}")
        if evidence.stage in ("selected", "uploading"):
            raise EvidenceInFlight("photo is still uploading")

        async with self._lock(item.id):
            index = _index_of(item, evidence)
            if index is None:
                raise UnknownEvidence(f"photo {evidence_id} not found on item {item.id}")

            def apply():
                del item.evidence[index]

            def revert():
                if _index_of(item, evidence) is None:
                    item.evidence.insert(min(index, len(item.evidence)), evidence)

            async def confirm():
                if evidence.id:
                    await self.store.delete(session.id, item.id, evidence.id)

            await apply_then_confirm(operation="remove_evidence", apply=apply,
                                     revert=revert, confirm=confirm,
                                     session_id=session.id,
                                     meta={"item_id": item.id, "evidence": evidence.id})

        log_event("INFO", "evidence_removed", session_id=session.id, node="evidence_pipeline",
                  meta={"item_id": item.id, "evidence": evidence.id,
                        "count": len(item.evidence)})
