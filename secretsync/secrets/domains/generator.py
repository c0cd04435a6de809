"""Secret value generator for passwords, keys and tokens.

All randomness comes from the `secrets` module. Characters are picked with
`byte % len(charset)`; since the charsets here (62 and 88 characters) do not
divide 256 the first few characters of each charset are slightly more likely
(at most 1/256 extra probability per character). This bias is accepted as a
known limitation.
"""
import base64
import re
import secrets
import string
from dataclasses import dataclass, field
from typing import List, Optional

from .exceptions import DescriptorValidationError
from .models import GENERATOR_KINDS, GenerationSpec

CHARSET_LOWERCASE = string.ascii_lowercase
CHARSET_UPPERCASE = string.ascii_uppercase
CHARSET_NUMBERS = string.digits
CHARSET_SPECIAL = "!@#$%^&*()-_=+[]{}|;:,.<>?"

DEFAULT_LENGTH = 32

_SYMBOL_PATTERN = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


def _pick(charset: str, length: int) -> str:
    if length <= 0:
        raise ValueError(f"Length must be positive, got {length}")
    return "".join(charset[b % len(charset)] for b in secrets.token_bytes(length))


def generate_password(
    length: int = DEFAULT_LENGTH,
    lowercase: bool = True,
    uppercase: bool = True,
    numbers: bool = True,
    special: bool = True,
) -> str:
    """
    Generate a random password from the selected character classes.

    Args:
        length: Number of characters
        lowercase: Include a-z
        uppercase: Include A-Z
        numbers: Include 0-9
        special: Include punctuation from CHARSET_SPECIAL

    Returns:
        Password of exactly `length` characters

    Raises:
        ValueError: If no character class is selected or length is not positive
    """
    charset = ""
    if lowercase:
        charset += CHARSET_LOWERCASE
    if uppercase:
        charset += CHARSET_UPPERCASE
    if numbers:
        charset += CHARSET_NUMBERS
    if special:
        charset += CHARSET_SPECIAL

    if not charset:
        raise ValueError("At least one character set must be enabled")

    return _pick(charset, length)


def generate_key(length: int = DEFAULT_LENGTH) -> str:
    """Alphanumeric key."""
    return generate_password(length, special=False)


def generate_token(length: int = DEFAULT_LENGTH) -> str:
    """Hex token of `length` random bytes (2 * length characters)."""
    if length <= 0:
        raise ValueError(f"Length must be positive, got {length}")
    return secrets.token_hex(length)


def generate_base64_string(length: int = DEFAULT_LENGTH) -> str:
    """Standard base64 of `length` random bytes."""
    if length <= 0:
        raise ValueError(f"Length must be positive, got {length}")
    return base64.b64encode(secrets.token_bytes(length)).decode("ascii")


def generate_url_safe_string(length: int = DEFAULT_LENGTH) -> str:
    """URL-safe base64 of `length` random bytes, without padding."""
    if length <= 0:
        raise ValueError(f"Length must be positive, got {length}")
    return secrets.token_urlsafe(length)


def charset_for(kind: str) -> Optional[str]:
    """Alphabet every character of a generated value belongs to."""
    if kind == "password":
        return CHARSET_LOWERCASE + CHARSET_UPPERCASE + CHARSET_NUMBERS + CHARSET_SPECIAL
    if kind == "key":
        return CHARSET_LOWERCASE + CHARSET_UPPERCASE + CHARSET_NUMBERS
    if kind == "token":
        return "0123456789abcdef"
    if kind == "string":
        return CHARSET_LOWERCASE + CHARSET_UPPERCASE + CHARSET_NUMBERS + "+/="
    return None


def generate_secret_value(spec: GenerationSpec) -> str:
    """
    Generate a secret value for a generator spec.

    Args:
        spec: Generator configuration from a values file

    Returns:
        Generated value; `length` characters for password/key, 2 * length
        for token, the base64 expansion of `length` bytes for string

    Raises:
        DescriptorValidationError: If the kind is not recognized
    """
    length = spec.length or DEFAULT_LENGTH

    if spec.kind == "password":
        return generate_password(length)
    if spec.kind == "key":
        return generate_key(length)
    if spec.kind == "token":
        return generate_token(length)
    if spec.kind == "string":
        return generate_base64_string(length)

    raise DescriptorValidationError(
        f"Unknown generator type: '{spec.kind}'. Expected one of: {', '.join(GENERATOR_KINDS)}"
    )


@dataclass
class StrengthReport:
    valid: bool
    score: int  # 0-4
    feedback: List[str] = field(default_factory=list)


def check_strength(value: str) -> StrengthReport:
    """
    Score a manually entered secret by length and character diversity.

    Advisory only; generated values are never gated on it.
    """
    has_lower = re.search(r"[a-z]", value) is not None
    has_upper = re.search(r"[A-Z]", value) is not None
    has_digit = re.search(r"[0-9]", value) is not None
    has_symbol = _SYMBOL_PATTERN.search(value) is not None

    raw = sum(1 for threshold in (16, 24, 32) if len(value) >= threshold)
    raw += sum([has_lower, has_upper, has_digit, has_symbol])

    feedback = []
    if len(value) < 16:
        feedback.append("Password should be at least 16 characters")
    if not has_lower:
        feedback.append("Add lowercase letters")
    if not has_upper:
        feedback.append("Add uppercase letters")
    if not has_digit:
        feedback.append("Add numbers")
    if not has_symbol:
        feedback.append("Add special characters")

    score = min(raw // 2, 4)
    return StrengthReport(valid=score >= 3, score=score, feedback=feedback)


_FORMATS = {
    "password": "alphanumeric + special chars",
    "key": "alphanumeric only",
    "token": "hex encoded",
    "string": "base64 encoded",
}


def format_secret_description(spec: GenerationSpec) -> str:
    """e.g. "Database password (password, 32 chars, alphanumeric + special chars)"."""
    length = spec.length or DEFAULT_LENGTH
    description = spec.description or f"{spec.kind} secret"
    fmt = _FORMATS.get(spec.kind, "unknown format")
    return f"{description} ({spec.kind}, {length} chars, {fmt})"
