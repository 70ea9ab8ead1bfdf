import hashlib
import json
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from casino_rounds.errors import DuplicateRequestError
from casino_rounds.models import IdempotencyRecord, now_utc


def request_fingerprint(action: str, params: Dict[str, Any]) -> str:
    canonical = json.dumps({"action": action, "params": params}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def find_prior(session: Session, user_id: str, key: str, action: str, fingerprint: str) -> Optional[str]:
    """Resource id of an earlier request with this key, or None.

    Raises DuplicateRequestError when the key was used for a different request.
    """
    record = session.execute(
        select(IdempotencyRecord).where(IdempotencyRecord.user_id == user_id, IdempotencyRecord.key == key)
    ).scalar_one_or_none()
    if record is None:
        return None
    if record.action != action or record.fingerprint != fingerprint:
        raise DuplicateRequestError(
            "Idempotency key already used with different parameters", user_id=user_id, key=key)
    return record.resource_id


def remember(session: Session, user_id: str, key: str, action: str, fingerprint: str, resource_id: str) -> None:
    session.add(IdempotencyRecord(
        user_id=user_id, key=key, action=action, fingerprint=fingerprint,
        resource_id=resource_id, created_at=now_utc(),
    ))
