"""
Verification Code Service - short codes shown to partner staff
"""
import logging
import secrets
import string
from typing import Callable

from amazonia.config import settings

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_COLLISION_RETRIES = 10


class VerificationCodeGenerator:
    """
    Generates uppercase alphanumeric codes for visits and redemptions.

    Uniqueness is ultimately guaranteed by the unique index on the owning
    table; ``generate_unique`` only avoids handing out a code that is
    already taken.
    """

    def __init__(self, length: int = None, alphabet: str = CODE_ALPHABET):
        self.length = length or settings.VERIFICATION_CODE_LENGTH
        self.alphabet = alphabet

    def generate(self) -> str:
        return "".join(secrets.choice(self.alphabet) for _ in range(self.length))

    def generate_unique(self, exists: Callable[[str], bool]) -> str:
        """Generate a code for which ``exists(code)`` is false"""
        for _ in range(MAX_COLLISION_RETRIES):
            code = self.generate()
            if not exists(code):
                return code
            logger.warning("Verification code collision, regenerating")
        raise RuntimeError(f"Could not generate a unique code after {MAX_COLLISION_RETRIES} attempts")


# Singleton instance
code_generator = VerificationCodeGenerator()
