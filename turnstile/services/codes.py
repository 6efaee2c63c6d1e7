import hashlib
import logging
import re
import secrets
import string
import time
from typing import Callable, Optional, Type, TypeVar

from turnstile.config import get_settings
from turnstile.services.errors import CodeGenerationExhausted

settings = get_settings()
logger = logging.getLogger(__name__)

T = TypeVar("T")

ALPHABET = string.ascii_uppercase + string.digits


def bounded_retry(
    produce: Callable[[], T],
    accept: Callable[[T], bool],
    max_attempts: int,
    exhausted: Type[Exception]
) -> T:
    """
    Call produce() until accept() approves a value, at most max_attempts times.
    Raises exhausted(max_attempts) when every attempt was rejected.
    """
    for attempt in range(1, max_attempts + 1):
        value = produce()
        if accept(value):
            return value
        logger.warning(f"Attempt {attempt}/{max_attempts} rejected, retrying")
    raise exhausted(max_attempts)


class CodeGenerator:
    """
    Ticket codes look like PREFIX-<13 digit ms timestamp>-<12 random>-<8 check>.
    The check segment is derived from the rest of the code, so a mutated or
    truncated code fails is_valid_format() without a database lookup.
    """
    RANDOM_LENGTH = 12
    CHECK_LENGTH = 8

    def __init__(self, prefix: Optional[str] = None):
        self.prefix = prefix or settings.ticket_code_prefix
        self._pattern = re.compile(
            rf"^{re.escape(self.prefix)}-\d{{13}}-[A-Z0-9]{{{self.RANDOM_LENGTH}}}"
            rf"-[A-Z0-9]{{{self.CHECK_LENGTH}}}$"
        )

    def generate(self) -> str:
        timestamp = int(time.time() * 1000)
        segment = "".join(secrets.choice(ALPHABET) for _ in range(self.RANDOM_LENGTH))
        body = f"{self.prefix}-{timestamp}-{segment}"
        return f"{body}-{self._check_segment(body)}"

    def is_valid_format(self, code) -> bool:
        if not code or not isinstance(code, str):
            return False
        if not self._pattern.match(code):
            return False
        body, check = code.rsplit("-", 1)
        return check == self._check_segment(body)

    def generate_unique(
        self,
        is_taken: Callable[[str], bool],
        max_attempts: Optional[int] = None
    ) -> str:
        return bounded_retry(
            self.generate,
            lambda code: not is_taken(code),
            max_attempts or settings.code_generation_attempts,
            CodeGenerationExhausted
        )

    def _check_segment(self, body: str) -> str:
        return hashlib.sha256(body.encode()).hexdigest().upper()[:self.CHECK_LENGTH]
