from __future__ import annotations

from sqlalchemy.orm import Session

from hospitality_pos.models import AuditLog


def log_audit(
    db: Session,
    *,
    actor: str | None,
    action: str,
    subject: str,
    subject_id: int | None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor=actor,
            action=action,
            subject=subject,
            subject_id=subject_id,
            meta=metadata or {},
        )
    )
