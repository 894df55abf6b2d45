from typing import List, NamedTuple
from audit.models import AuditItem, AuditSession

class MandatoryStatus(NamedTuple):
    total: int
    answered: int
    complete: bool

def mandatory_items(session: AuditSession) -> List[AuditItem]:
    return [item for item in session.items if item.mandatory]

def missing_mandatory(session: AuditSession) -> List[AuditItem]:
    return [item for item in mandatory_items(session) if not item.answered]

def is_finalize_allowed(session: AuditSession) -> bool:
    # recomputed on every call; never cache this on the session
    return not missing_mandatory(session)

def mandatory_status(session: AuditSession) -> MandatoryStatus:
    required = mandatory_items(session)
    answered = sum(1 for item in required if item.answered)
    return MandatoryStatus(total=len(required), answered=answered,
                           complete=answered == len(required))
