import asyncio
import random
import re
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from quotation_engine.errors import SequenceConflict
from quotation_engine.service.ports import AbstractRepository, DuplicateKeyError
from shared.models_db import DocumentType, utcnow
from shared.settings import settings
from shared.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

ROMAN_MONTHS = ("I", "II", "III", "IV", "V", "VI", "VII", "VIII", "IX", "X", "XI", "XII")


def to_roman_month(month: int) -> str:
    if not 1 <= month <= 12:
        raise ValueError(f"Month out of range: {month}")
    return ROMAN_MONTHS[month - 1]


def number_suffix(doc_type: DocumentType, org_code: str, now: datetime) -> str:
    """The '/{DOC}/{ORG}/{romanMonth}/{year}' bucket shared by one month's numbers."""
    return f"/{doc_type.value}/{org_code}/{to_roman_month(now.month)}/{now.year}"


def format_document_number(seq: int, doc_type: DocumentType, org_code: str, now: datetime) -> str:
    return f"{seq}{number_suffix(doc_type, org_code, now)}"


def parse_sequence(number: str, suffix: str) -> Optional[int]:
    match = re.match(rf"^(\d+){re.escape(suffix)}$", number)
    return int(match.group(1)) if match else None


class SequenceGenerator:
    """Allocates `{seq}/{DOC}/{ORG}/{romanMonth}/{year}` document numbers.

    The scan for the month's highest sequence is only a fast path: the unique
    constraint on the number column decides, and a collision there (or on the
    pre-insert existence check) triggers a bounded, jittered retry.
    """

    def __init__(
        self,
        repository: AbstractRepository,
        org_code: Optional[str] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        self.repository = repository
        self.org_code = org_code or settings.DOCUMENT_ORG_CODE
        self.max_attempts = max_attempts or settings.SEQUENCE_MAX_ATTEMPTS
        self.base_delay = settings.SEQUENCE_RETRY_BASE_DELAY if base_delay is None else base_delay

    async def _candidate(self, doc_type: DocumentType, now: datetime) -> str:
        suffix = number_suffix(doc_type, self.org_code, now)
        existing = await self.repository.list_document_numbers(doc_type, suffix)
        sequences = [seq for seq in (parse_sequence(n, suffix) for n in existing) if seq is not None]
        return format_document_number(max(sequences, default=0) + 1, doc_type, self.org_code, now)

    async def _backoff(self, attempt: int) -> None:
        if self.base_delay <= 0:
            return
        delay = self.base_delay * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)
        await asyncio.sleep(delay)

    async def allocate(
        self,
        doc_type: DocumentType,
        persist: Callable[[str], Awaitable[T]],
        now: Optional[datetime] = None,
    ) -> T:
        """Computes a candidate number and hands it to ``persist``.

        ``persist`` inserts the document carrying the number and raises
        DuplicateKeyError if another request claimed it first.
        """
        now = now or utcnow()
        for attempt in range(1, self.max_attempts + 1):
            candidate = await self._candidate(doc_type, now)
            if await self.repository.document_number_exists(doc_type, candidate):
                logger.warning(f"{doc_type.value} number {candidate} already taken (attempt {attempt}/{self.max_attempts})")
            else:
                try:
                    result = await persist(candidate)
                    logger.info(f"Allocated {doc_type.value} number {candidate}")
                    return result
                except DuplicateKeyError:
                    logger.warning(f"{doc_type.value} number {candidate} collided on insert (attempt {attempt}/{self.max_attempts})")
            if attempt < self.max_attempts:
                await self._backoff(attempt)

        logger.error(f"Could not allocate a {doc_type.value} number after {self.max_attempts} attempts")
        raise SequenceConflict(
            f"Could not allocate a {doc_type.value} number after {self.max_attempts} attempts, please retry"
        )

    async def next_number(self, doc_type: DocumentType, now: Optional[datetime] = None) -> str:
        """Next free number for the month of ``now``, without reserving it."""

        async def _as_is(number: str) -> str:
            return number

        return await self.allocate(doc_type, _as_is, now)
