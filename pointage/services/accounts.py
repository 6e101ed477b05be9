from __future__ import annotations

import logging

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from pointage.models import Account
from pointage.security import Principal
from pointage.services.session_store import commit_write

logger = logging.getLogger("pointage.accounts")


def ensure_account(db: Session, principal: Principal) -> bool:
    """Create the local account row for a caller the auth service vouched for.

    Only the first call inserts; afterwards the stored status belongs to the
    approval workflow and token claims never overwrite it. Returns whether a
    row was created.
    """
    stmt = (
        insert(Account)
        .values(
            id=principal.user_id,
            email=principal.email,
            full_name=principal.full_name,
            role=principal.role,
            status=principal.status,
        )
        .on_conflict_do_nothing()
    )
    result = db.execute(stmt)
    commit_write(db)
    created = bool(result.rowcount)
    if created:
        logger.info(
            "account_provisioned",
            extra={"account_id": principal.user_id, "role": principal.role.value},
        )
    return created
