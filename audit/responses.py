from datetime import datetime
from typing import Optional, List
from audit.errors import InvalidAnswer, DocumentationIncomplete
from audit.logger import log_event
from audit.models import (AuditItem, AuditSession, Answer, StandardAnswer,
                          TemplateItem, parse_answer, answer_value)
from audit.optimistic import apply_then_confirm
from audit.scoring import item_score

STANDARD_VALUES = [answer.value for answer in StandardAnswer]

def allowed_answers(template_item: TemplateItem) -> Optional[List[str]]:
    """Closed answer set for an item, or None for free typed answers."""
    kind = template_item.custom_answer_type
    if kind in ("texto", "numero", "data"):
        return None
    if kind == "select" or (template_item.use_custom_answers and template_item.answer_options):
        return list(template_item.answer_options)
    return list(STANDARD_VALUES)

def validate_answer(template_item: TemplateItem, raw) -> Answer:
    value = "" if raw is None else str(raw)
    kind = template_item.custom_answer_type

    if kind:
        if not value.strip():
            raise InvalidAnswer("an answer is required for this item")
        if kind == "numero":
            try:
                float(value)
            except ValueError:
                raise InvalidAnswer(f"'{value}' is not a valid number")
        elif kind == "data":
            try:
                datetime.fromisoformat(value)
            except ValueError:
                raise InvalidAnswer(f"'{value}' is not a valid date")
        elif kind == "select":
            if not template_item.answer_options:
                raise InvalidAnswer("select item has no answer options defined")
            if value not in template_item.answer_options:
                raise InvalidAnswer(f"invalid answer, options: {', '.join(template_item.answer_options)}")
        return parse_answer(value)

    options = allowed_answers(template_item)
    if value not in options:
        raise InvalidAnswer(f"invalid answer, options: {', '.join(options)}")
    return parse_answer(value)

def documentation_extras(item: AuditItem) -> dict:
    extras = {"observacao": item.observation,
              "descricaoIa": item.ai_description,
              "descricaoNaoConformidade": item.non_conformity_type,
              "referenciaLegal": item.legal_reference,
              "planoAcaoSugerido": item.suggested_action_plan}
    return {key: value for key, value in extras.items() if value}

class ItemResponseManager:
    """Owns the answer and observation transitions of single items."""

    def __init__(self, api):
        self.api = api

    async def set_answer(self, session: AuditSession, item: AuditItem, raw) -> Answer:
        answer = validate_answer(item.template_item, raw)
        previous = (item.answer, item.score)

        def apply():
            item.answer = answer
            item.score = item_score(item.template_item, answer)

        def revert():
            # a newer answer may have landed while this one was in flight
            if item.answer == answer:
                item.answer, item.score = previous

        await apply_then_confirm(operation="answer_item", apply=apply, revert=revert,
                                 confirm=lambda: self.api.answer_item(session.id, item.id,
                                                                      answer_value(answer)),
                                 session_id=session.id,
                                 meta={"item_id": item.id, "answer": answer_value(answer)})

        log_event("INFO", "item_answered", session_id=session.id,
                  node="item_response", meta={"item_id": item.id,
                                              "answer": answer_value(answer)})
        return answer

    def check_documentation(self, item: AuditItem, text: str):
        if not item.answered:
            raise DocumentationIncomplete("answer the item before saving its documentation")

        if not text or not text.strip():
            raise DocumentationIncomplete("an observation is required")

        in_flight = [e for e in item.evidence if not e.settled]
        if in_flight:
            raise DocumentationIncomplete(
                f"{len(in_flight)} photo(s) still uploading or being analyzed")

        config = item.template_item.option_config(answer_value(item.answer))
        if config is not None and config.photo_required and not item.evidence:
            raise DocumentationIncomplete("this answer requires at least one photo")

    async def save_observation(self, session: AuditSession, item: AuditItem, text: str):
        self.check_documentation(item, text)
        previous = item.observation

        def apply():
            item.observation = text

        def revert():
            if item.observation == text:
                item.observation = previous

        await apply_then_confirm(operation="save_observation", apply=apply, revert=revert,
                                 confirm=lambda: self.api.answer_item(session.id, item.id,
                                                                      answer_value(item.answer),
                                                                      documentation_extras(item)),
                                 session_id=session.id, meta={"item_id": item.id})

        log_event("INFO", "observation_saved", session_id=session.id,
                  node="item_response", meta={"item_id": item.id,
                                              "evidence": len(item.evidence)})
