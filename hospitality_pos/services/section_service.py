from __future__ import annotations

import re
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from hospitality_pos.errors import NotFoundError
from hospitality_pos.models import Department, DepartmentSection
from hospitality_pos.services.audit_service import log_audit

GAMES_DEPARTMENT_TYPE = 'games'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def slugify(value: str) -> str:
    return re.sub(r'[^a-z0-9]+', '-', (value or '').strip().lower()).strip('-')


def _section_row(section: DepartmentSection) -> dict:
    return {
        'id': section.id,
        'department_id': section.department_id,
        'name': section.name,
        'slug': section.slug,
        'is_active': section.is_active,
        'metadata': dict(section.meta or {}),
        'created_at': section.created_at,
    }


def list_sections(db: Session, *, department_id: int | None = None, page: int = 1, limit: int = 50) -> dict:
    page = max(page, 1)
    limit = max(limit, 1)
    stmt = select(DepartmentSection).where(DepartmentSection.is_active.is_(True))
    count_stmt = select(func.count(DepartmentSection.id)).where(DepartmentSection.is_active.is_(True))
    if department_id is not None:
        stmt = stmt.where(DepartmentSection.department_id == department_id)
        count_stmt = count_stmt.where(DepartmentSection.department_id == department_id)

    total = db.execute(count_stmt).scalar_one()
    sections = db.execute(
        stmt.order_by(DepartmentSection.created_at.desc(), DepartmentSection.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return {
        'items': [_section_row(section) for section in sections],
        'meta': {'page': page, 'limit': limit, 'total': total, 'pages': -(-total // limit)},
    }


def create_section(
    db: Session,
    *,
    department_id: int,
    name: str,
    slug: str | None = None,
    metadata: dict | None = None,
    actor: str | None = None,
) -> DepartmentSection:
    clean_name = (name or '').strip()
    if not clean_name:
        raise ValueError('Section name is required')
    department = db.execute(select(Department).where(Department.id == department_id)).scalar_one_or_none()
    if not department:
        raise NotFoundError('Department not found')

    clean_slug = slugify(slug or clean_name)
    if not clean_slug:
        raise ValueError('Section slug is required')
    if clean_slug.isdigit():
        raise ValueError('Section slug cannot be numeric')
    duplicate = db.execute(
        select(DepartmentSection.id).where(
            DepartmentSection.department_id == department_id,
            DepartmentSection.slug == clean_slug,
        )
    ).scalar_one_or_none()
    if duplicate:
        raise ValueError(f'Section {clean_slug} already exists in {department.code}')

    meta = dict(metadata or {})
    if department.type == GAMES_DEPARTMENT_TYPE:
        meta.setdefault('sectionType', GAMES_DEPARTMENT_TYPE)
        meta.setdefault('module', GAMES_DEPARTMENT_TYPE)

    section = DepartmentSection(
        department_id=department_id,
        name=clean_name,
        slug=clean_slug,
        is_active=True,
        meta=meta,
    )
    db.add(section)
    db.flush()
    log_audit(
        db,
        actor=actor,
        action='department_section.create',
        subject='department_section',
        subject_id=section.id,
        metadata={'name': clean_name, 'department_id': department_id, 'slug': clean_slug},
    )
    db.flush()
    return section


def deactivate_section(db: Session, *, section_id: int, actor: str | None = None) -> DepartmentSection:
    section = db.execute(select(DepartmentSection).where(DepartmentSection.id == section_id)).scalar_one_or_none()
    if not section:
        raise NotFoundError('Section not found')
    section.is_active = False
    section.updated_at = _now()
    log_audit(
        db,
        actor=actor,
        action='department_section.delete',
        subject='department_section',
        subject_id=section.id,
        metadata={'name': section.name, 'department_id': section.department_id},
    )
    db.flush()
    return section
