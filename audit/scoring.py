"""Score aggregation over an audit's items.

`progress` is what the auditor sees while answering. The final score is only
ever computed by whoever implements the backing API at finalization time;
`item_score`/`final_score` are the rules that implementation applies.
"""
import math
from typing import List
from audit.models import (AuditItem, AuditSession, Answer, StandardAnswer,
                          CustomAnswer, TemplateItem, answer_value)

def progress(session: AuditSession) -> int:
    total = len(session.items)
    if total == 0:
        return 0

    answered = sum(1 for item in session.items if item.answered)
    # half-up, so 12.5 shows as 13 on every client
    return int(math.floor(answered * 100 / total + 0.5))

def _is_conforming(template_item: TemplateItem, answer: Answer) -> bool:
    if answer == StandardAnswer.CONFORME:
        return True
    return (isinstance(answer, CustomAnswer)
            and template_item.use_custom_answers
            and bool(template_item.answer_options)
            and answer.value == template_item.answer_options[0])

def item_score(template_item: TemplateItem, answer: Answer) -> float:
    config = template_item.option_config(answer_value(answer))
    if config is not None and config.score is not None:
        return config.score

    weight = template_item.weight
    if _is_conforming(template_item, answer):
        return weight if weight > 0 else 0
    return weight if weight < 0 else 0

def max_item_score(template_item: TemplateItem) -> float:
    configs = template_item.option_configs
    if configs and all(c.score is not None for c in configs):
        return max(0, *(c.score for c in configs))
    return max(0, template_item.weight)

def final_score(items: List[AuditItem]) -> float:
    obtained = sum(item.score for item in items)
    maximum = sum(max_item_score(item.template_item) for item in items)
    if maximum <= 0:
        return 0.0
    return obtained / maximum * 100

def non_conforming_items(session: AuditSession) -> List[AuditItem]:
    return [item for item in session.items
            if item.answer == StandardAnswer.NAO_CONFORME]
