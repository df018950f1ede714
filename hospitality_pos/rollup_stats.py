from __future__ import annotations

import argparse
import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from hospitality_pos.db import SessionLocal, session_scope
from hospitality_pos.logging_config import configure_logging
from hospitality_pos.models import Department, DepartmentSection
from hospitality_pos.services.department_codes import parent_code
from hospitality_pos.services.stats_service import recalculate_section_stats, rollup_parent_stats

logger = logging.getLogger(__name__)


def rollup_all(
    db: Session,
    *,
    from_date: date | None = None,
    to_date: date | None = None,
    department_code: str | None = None,
) -> tuple[int, int]:
    stmt = select(Department).where(Department.is_active.is_(True))
    if department_code:
        stmt = stmt.where(Department.code == parent_code(department_code))
    departments = db.execute(stmt.order_by(Department.code.asc())).scalars().all()
    if department_code and not departments:
        raise ValueError(f'Department not found: {department_code}')

    sections_done = 0
    for department in departments:
        sections = db.execute(
            select(DepartmentSection)
            .where(DepartmentSection.department_id == department.id, DepartmentSection.is_active.is_(True))
            .order_by(DepartmentSection.id.asc())
        ).scalars().all()
        for section in sections:
            recalculate_section_stats(db, section_id=section.id, from_date=from_date, to_date=to_date)
            sections_done += 1
        rollup_parent_stats(db, department_code=department.code, from_date=from_date, to_date=to_date)
    return len(departments), sections_done


def run(
    *,
    from_date: date | None = None,
    to_date: date | None = None,
    department_code: str | None = None,
    factory: sessionmaker = SessionLocal,
) -> tuple[int, int]:
    with session_scope(factory) as db:
        return rollup_all(db, from_date=from_date, to_date=to_date, department_code=department_code)


def main() -> None:
    parser = argparse.ArgumentParser(description='Recalculate section stats and roll them up into departments.')
    parser.add_argument('--from-date', type=date.fromisoformat, default=None, help='First day (YYYY-MM-DD), default today.')
    parser.add_argument('--to-date', type=date.fromisoformat, default=None, help='Last day (YYYY-MM-DD), default today.')
    parser.add_argument('--department', default=None, help='Only roll up this department code.')
    args = parser.parse_args()

    configure_logging()
    departments, sections = run(from_date=args.from_date, to_date=args.to_date, department_code=args.department)
    print(f'Stats rollup complete: departments={departments}, sections={sections}')


if __name__ == '__main__':
    main()
