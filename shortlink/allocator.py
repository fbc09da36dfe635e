"""Short code allocation.

Codes are drawn from a 62-character alphanumeric alphabet using the
``secrets`` CSPRNG. Uniqueness is never checked-then-inserted on the
generated path: the row is inserted and the database unique constraint on
``short_links.code`` decides. A collision rolls back and a new candidate is
drawn.

Allocation Flow
===============
::
    ┌──────────────┐
    │ custom code? │
    └──────┬───────┘
    YES    │        NO
    ┌──────┴──────────────────────┐
    ▼                             ▼
┌──────────────┐          ┌──────────────┐
│ well-formed? │──NO──400 │ generate N   │◄─────────────┐
│ reserved?    │──YES─409 │ chars        │              │
│ taken?       │──YES─409 └──────┬───────┘              │
└──────┬───────┘                 ▼                      │
       ▼                  ┌──────────────┐  collision   │
┌──────────────┐          │ INSERT +     │──────────────┤
│ INSERT +     │          │ COMMIT       │  (rollback)  │
│ COMMIT       │          └──────┬───────┘              │
└──────┬───────┘                 │        budget spent: │
       │ IntegrityError → 409    │        widen N by 1 ─┘
       ▼                         ▼        (bounded) → 503
   committed link           committed link

Key Behaviours
===============
- Reserved words are compared case-insensitively.
- The committed row is returned, so a lookup right after creation never misses.
- Widening never goes past the 20 character storage limit.
"""

import logging
import re
import secrets
import string
from collections.abc import Callable

from prometheus_client import Counter
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shortlink.config import Settings
from shortlink.errors import AllocationExhaustedError, ConflictError, ValidationError
from shortlink.models import ShortLink

__all__ = [
    "ALPHABET",
    "CodeAllocator",
    "MAX_CODE_LENGTH",
    "MIN_CODE_LENGTH",
    "RESERVED_CODES",
    "generate_code",
    "is_reserved",
    "is_valid_code",
]

logger = logging.getLogger(__name__)

ALPHABET = string.ascii_letters + string.digits
MIN_CODE_LENGTH = 4
MAX_CODE_LENGTH = 20
DEFAULT_CODE_LENGTH = 6

_CODE_PATTERN = re.compile(rf"^[A-Za-z0-9]{{{MIN_CODE_LENGTH},{MAX_CODE_LENGTH}}}$")

RESERVED_CODES = frozenset(
    {
        "api",
        "admin",
        "health",
        "status",
        "links",
        "edit",
        "analytics",
        "docs",
        "static",
        "public",
        "assets",
        "images",
        "css",
        "js",
        "fonts",
        "qrcodes",
        # route segments of this service
        "urls",
        "stats",
        "metrics",
        "login",
        "logout",
        "ad",
    }
)

ALLOCATION_ATTEMPTS_TOTAL = Counter(
    "shortlink_allocation_attempts_total",
    "Short code insert attempts",
    ["result"],
)


def generate_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    if not MIN_CODE_LENGTH <= length <= MAX_CODE_LENGTH:
        raise ValueError(f"code length must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH}")
    return "".join(ALPHABET[byte % len(ALPHABET)] for byte in secrets.token_bytes(length))


def is_valid_code(code: str) -> bool:
    return bool(_CODE_PATTERN.match(code))


def is_reserved(code: str) -> bool:
    return code.lower() in RESERVED_CODES


class CodeAllocator:
    """Allocates a unique code and commits the link that carries it.

    Args:
        length: Length of generated codes.
        max_attempts: Insert attempts per code length before widening.
        widen_steps: How many times the length may grow by one character.
        generator: Code source, ``generate_code`` unless overridden.
    """

    def __init__(
        self,
        length: int = DEFAULT_CODE_LENGTH,
        max_attempts: int = 10,
        widen_steps: int = 2,
        generator: Callable[[int], str] = generate_code,
    ) -> None:
        if not MIN_CODE_LENGTH <= length <= MAX_CODE_LENGTH:
            raise ValueError(f"code length must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH}")
        self.length = length
        self.max_attempts = max(1, max_attempts)
        self.widen_steps = max(0, widen_steps)
        self._generate = generator

    @classmethod
    def from_settings(cls, settings: Settings) -> "CodeAllocator":
        return cls(
            length=settings.SHORT_CODE_LENGTH,
            max_attempts=settings.SHORT_CODE_MAX_ATTEMPTS,
            widen_steps=settings.SHORT_CODE_WIDEN_STEPS,
        )

    async def allocate(
        self,
        session: AsyncSession,
        build_link: Callable[[str], ShortLink],
        custom_code: str | None = None,
    ) -> ShortLink:
        """Insert ``build_link(code)`` under a unique code and commit it.

        Raises:
            ValidationError: custom code is malformed.
            ConflictError: custom code is reserved or already taken.
            AllocationExhaustedError: no free generated code was found.
        """
        if custom_code is not None:
            return await self._allocate_custom(session, build_link, custom_code)
        return await self._allocate_generated(session, build_link)

    async def _allocate_custom(
        self,
        session: AsyncSession,
        build_link: Callable[[str], ShortLink],
        code: str,
    ) -> ShortLink:
        if not is_valid_code(code):
            raise ValidationError(
                f"Custom code must be {MIN_CODE_LENGTH}-{MAX_CODE_LENGTH} alphanumeric characters",
                field="custom_code",
            )
        if is_reserved(code):
            raise ConflictError(f"Custom code '{code}' is reserved", field="custom_code")

        existing = await session.execute(select(ShortLink.id).where(ShortLink.code == code))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(f"Custom code '{code}' is already taken", field="custom_code")

        link = await self._try_insert(session, build_link(code))
        if link is None:
            # Lost the race against a concurrent insert of the same code.
            raise ConflictError(f"Custom code '{code}' is already taken", field="custom_code")
        return link

    async def _allocate_generated(
        self,
        session: AsyncSession,
        build_link: Callable[[str], ShortLink],
    ) -> ShortLink:
        max_length = min(self.length + self.widen_steps, MAX_CODE_LENGTH)
        for length in range(self.length, max_length + 1):
            for _ in range(self.max_attempts):
                code = self._generate(length)
                if is_reserved(code):
                    ALLOCATION_ATTEMPTS_TOTAL.labels(result="reserved").inc()
                    continue
                link = await self._try_insert(session, build_link(code))
                if link is not None:
                    return link
            if length < max_length:
                logger.warning(f"Code space crowded at length {length}, widening to {length + 1}")

        logger.error(f"Short code allocation exhausted after widening to {max_length} characters")
        raise AllocationExhaustedError("Could not allocate a unique short code, try again later")

    async def _try_insert(self, session: AsyncSession, link: ShortLink) -> ShortLink | None:
        session.add(link)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            ALLOCATION_ATTEMPTS_TOTAL.labels(result="collision").inc()
            logger.info(f"Short code collision on '{link.code}'")
            return None
        await session.refresh(link)
        ALLOCATION_ATTEMPTS_TOTAL.labels(result="success").inc()
        return link
