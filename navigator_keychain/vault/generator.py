"""
Random password generator.

Characters are drawn from ``secrets.token_bytes`` and mapped into the
selected character set by modulo reduction.
"""
import logging
import secrets

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..conf import LOGGER_NAME
from ..exceptions import InvalidOptionsError

logger = logging.getLogger(LOGGER_NAME)

MIN_LENGTH = 6
MAX_LENGTH = 64

LOWERCASE = "abcdefghijklmnopqrstuvwxyz"
UPPERCASE = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
NUMBERS = "0123456789"
SYMBOLS = "!@#$%^&*()-_=+[]{}|;:,.<>?"

# without 0/O, 1/l/I and bracket-like symbols
LOWERCASE_UNAMBIGUOUS = "abcdefghjkmnpqrstuvwxyz"
UPPERCASE_UNAMBIGUOUS = "ABCDEFGHJKMNPQRSTUVWXYZ"
NUMBERS_UNAMBIGUOUS = "23456789"
SYMBOLS_UNAMBIGUOUS = "!@#$%^&*-_=+<>?"


class GeneratorOptions(BaseModel):
    """Character-class policy for ``generate``."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    length: int = 16
    include_uppercase: bool = True
    include_lowercase: bool = True
    include_numbers: bool = True
    include_symbols: bool = True
    exclude_ambiguous: bool = False

    def charset(self) -> str:
        """Union of the selected classes; lowercase when none is selected."""
        ambiguous = self.exclude_ambiguous
        charset = ""
        if self.include_lowercase:
            charset += LOWERCASE_UNAMBIGUOUS if ambiguous else LOWERCASE
        if self.include_uppercase:
            charset += UPPERCASE_UNAMBIGUOUS if ambiguous else UPPERCASE
        if self.include_numbers:
            charset += NUMBERS_UNAMBIGUOUS if ambiguous else NUMBERS
        if self.include_symbols:
            charset += SYMBOLS_UNAMBIGUOUS if ambiguous else SYMBOLS
        if not charset:
            charset = LOWERCASE_UNAMBIGUOUS if ambiguous else LOWERCASE
        return charset


def generate(options: "GeneratorOptions | dict | None" = None) -> str:
    """Generate a random password.

    Args:
        options: GeneratorOptions or a dict of its fields; defaults apply
            for anything omitted.

    Returns:
        A string of ``options.length`` characters.

    Raises:
        InvalidOptionsError: Length out of range, unknown option, or an
            empty character set.
    """
    if options is None:
        options = GeneratorOptions()
    elif isinstance(options, dict):
        try:
            options = GeneratorOptions(**options)
        except ValueError as err:
            raise InvalidOptionsError(f"Invalid generator options: {err}") from err

    if not MIN_LENGTH <= options.length <= MAX_LENGTH:
        raise InvalidOptionsError(
            f"Length must be between {MIN_LENGTH} and {MAX_LENGTH} characters"
        )
    charset = options.charset()
    if not charset:
        raise InvalidOptionsError()

    password = "".join(
        charset[byte % len(charset)]
        for byte in secrets.token_bytes(options.length)
    )
    logger.debug(
        "Generated password: length=%d charset_size=%d",
        options.length, len(charset),
    )
    return password
