from audit.errors import AuditValidationError, TransientError
from audit.logger import log_event, log_exception

async def apply_then_confirm(*, operation, apply, revert, confirm,
                             session_id=None, meta=None):
    """Apply a local change, then await the server confirmation.

    `apply` and `revert` are plain callables mutating local state; `confirm`
    is a zero-argument coroutine function issuing the durable call. When the
    confirmation fails the change is reverted and a TransientError is raised,
    so callers never observe a half-applied mutation.
    """
    apply()

    try:
        return await confirm()

    except AuditValidationError:
        revert()
        raise

    except Exception as e:
        revert()

        log_exception(e, session_id=session_id, node=operation)
        log_event("WARNING", f"{operation}_reverted", session_id=session_id,
                  node=operation, meta=meta)

        raise TransientError(operation, e) from e
