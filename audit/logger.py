import os
import json
import time
import traceback
from datetime import datetime, timezone
from pathlib import Path

LOG_LEVEL = os.getenv("AUDIT_LOG_LEVEL", "INFO").upper()

LEVEL_ORDER = {
    "TRACE": 0,
    "DEBUG": 1,
    "INFO": 2,
    "WARNING": 3,
    "ERROR": 4
}

LOG_DIR = Path(os.getenv("AUDIT_LOG_DIR", "logs"))
SESSION_DIR = LOG_DIR / "sessions"
LOG_DIR.mkdir(parents=True, exist_ok=True)
SESSION_DIR.mkdir(exist_ok=True)

def _should_log(level):
    return LEVEL_ORDER[level] >= LEVEL_ORDER.get(LOG_LEVEL, 2)

def _write_jsonl(path, data):
    with open(path, "a", encoding="utf-8") as file:
        file.write(json.dumps(data, default=str) + "\n")

def log_event(level, event, *, session_id=None, node=None, meta=None):
    if not _should_log(level):
        return

    payload = {"timestamp": datetime.now(timezone.utc).isoformat(),
               "level": level,
               "event": event,
               "node": node,
               "meta": meta or {}}

    _write_jsonl(LOG_DIR / "global.jsonl", payload)

    if session_id:
        _write_jsonl(SESSION_DIR / f"{session_id}.jsonl", payload)

def log_exception(e, *, session_id=None, node=None):
    log_event("ERROR", "exception", session_id=session_id,
              node=node, meta={"error": str(e),
                               "error_type": type(e).__name__,
                               "traceback": traceback.format_exc()})

def log_transition(session_id, item_id, evidence_id, source, target):
    log_event("DEBUG", "evidence_transition", session_id=session_id,
              node="evidence_pipeline",
              meta={"item_id": item_id, "evidence": evidence_id,
                    "from": source, "to": target})

async def ainvoke_llm(llm, messages, *, session_id=None, node=None):
    t0 = time.time()

    try:
        results = await llm.ainvoke(messages)

        latency = int((time.time() - t0)*1000)

        usage = getattr(results, "usage_metadata", None) or {}

        log_event("DEBUG", "llm_invoke", session_id=session_id,
                  meta={"node": node, "latency": latency,
                        "tokens": usage.get("total_tokens")})

        return results

    except Exception as e:
        log_exception(e, session_id=session_id, node=node)
        raise
