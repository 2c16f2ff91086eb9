# backend/omniverify/utils/helpers.py
import re
from typing import Iterable, Iterator, List, Sequence

EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def is_valid_syntax(email: str) -> bool:
    if not email or "@" not in email:
        return False
    return bool(EMAIL_REGEX.match(email))


def dedupe(emails: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for e in emails:
        if e not in seen:
            seen.add(e)
            out.append(e)
    return out


def chunk_list(items: Sequence, size: int) -> Iterator[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]
