"""
Repair pass for the non-atomic token writes in ``token_service``.

Each rule only touches rows that are already inconsistent, so running the
pass twice in a row changes nothing the second time.
"""

import logging

from sqlalchemy.orm import Session

from app.models.token import TokenGenerate, TokenStatus
from app.models.user import User

logger = logging.getLogger(__name__)


def _mark_attributed_tokens_in_use(db: Session) -> int:
    tokens = (
        db.query(TokenGenerate)
        .filter(TokenGenerate.userid.isnot(None), TokenGenerate.status != TokenStatus.in_use.value)
        .all()
    )
    for token in tokens:
        token.status = TokenStatus.in_use.value
    return len(tokens)


def _repair_stale_user_tokens(db: Session) -> tuple[int, int]:
    known_tokens = {value for (value,) in db.query(TokenGenerate.token).all()}
    repointed = cleared = 0
    for user in db.query(User).filter(User.token.isnot(None)).all():
        if user.token in known_tokens:
            continue
        attributed = (
            db.query(TokenGenerate)
            .filter(TokenGenerate.userid == user.id)
            .order_by(TokenGenerate.createdat.desc())
            .first()
        )
        if attributed:
            user.token = attributed.token
            repointed += 1
        else:
            user.token = None
            cleared += 1
    return repointed, cleared


def _delete_orphaned_tokens(db: Session) -> int:
    user_ids = {value for (value,) in db.query(User.id).all()}
    orphans = [
        token
        for token in db.query(TokenGenerate).filter(TokenGenerate.userid.isnot(None)).all()
        if token.userid not in user_ids
    ]
    for token in orphans:
        db.delete(token)
    return len(orphans)


def reconcile(db: Session) -> dict:
    # Orphans go first so rule (a) does not mark a dead user's token InUse
    orphaned = _delete_orphaned_tokens(db)
    db.commit()

    marked = _mark_attributed_tokens_in_use(db)
    db.commit()

    repointed, cleared = _repair_stale_user_tokens(db)
    db.commit()

    counts = {
        "tokensMarkedInUse": marked,
        "userTokensRepointed": repointed,
        "userTokensCleared": cleared,
        "orphanedTokensDeleted": orphaned,
    }
    if any(counts.values()):
        logger.warning("Reconciliation repaired rows: %s", counts)
    else:
        logger.info("Reconciliation found nothing to repair")
    return counts
