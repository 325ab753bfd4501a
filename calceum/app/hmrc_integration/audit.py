"""
HMRC audit trail.

Every interaction with the HMRC API is recorded in hmrc_audit_logs. Entries
are only ever inserted.
"""

import logging
import time
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from calceum.app.models import HMRCAuditLog

logger = logging.getLogger(__name__)


class Stopwatch:
    """Milliseconds elapsed since construction."""

    def __init__(self):
        self._started = time.monotonic()

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)


def record_audit(
    db: Session,
    user_id: Optional[str],
    operation: str,
    endpoint: Optional[str] = None,
    method: Optional[str] = None,
    connection_id: Optional[str] = None,
    request_params: Optional[Dict[str, Any]] = None,
    response_status: Optional[int] = None,
    response_data: Optional[Dict[str, Any]] = None,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    error_details: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[int] = None
) -> Optional[HMRCAuditLog]:
    """
    Insert an audit entry and commit it.

    The entry is committed immediately so it survives a rollback of the
    surrounding flow. A failure to write the audit entry is logged and
    never masks the outcome of the operation being audited.

    Returns:
        The stored entry, or None if it could not be written
    """
    entry = HMRCAuditLog(
        user_id=user_id,
        operation=operation,
        endpoint=endpoint,
        method=method,
        connection_id=connection_id,
        request_params=request_params,
        response_status=response_status,
        response_data=response_data,
        error_code=error_code,
        error_message=error_message,
        error_details=error_details,
        duration_ms=duration_ms,
    )

    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to write HMRC audit entry for {operation}: {e}")
        return None

    return entry
