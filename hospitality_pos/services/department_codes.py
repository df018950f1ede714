from __future__ import annotations

SECTION_SEPARATOR = ':'


def normalize_code(value: str | None) -> str:
    return (value or '').strip()


def split_department_code(code: str | None) -> tuple[str, str | None]:
    """``'RESTAURANT:main'`` -> ``('RESTAURANT', 'main')``; plain codes have no section part."""
    clean = normalize_code(code)
    if SECTION_SEPARATOR not in clean:
        return clean, None
    parent, section = clean.split(SECTION_SEPARATOR, 1)
    return parent, (section or None)


def parent_code(code: str | None) -> str:
    return split_department_code(code)[0]
