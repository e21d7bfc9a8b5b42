from typing import Optional


def normalise_customer_name(value: Optional[str]) -> str:
    return (value or "").strip().upper()


def normalise_person_name(value: Optional[str]) -> str:
    """'  budi   SANTOSO ' -> 'Budi Santoso'"""
    return " ".join(word[:1].upper() + word[1:].lower() for word in (value or "").split())


def normalise_code(value: Optional[str]) -> str:
    # karoseri / chassis
    return (value or "").strip().upper()


def normalise_reference(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value.strip()


def is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())
