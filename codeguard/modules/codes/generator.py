"""
Access code generation and strength checks.

Codes are drawn with `secrets` from the enabled character classes. The
special class is limited to characters that carry no meaning in SQL, HTML
or a shell (no quotes, angle brackets, semicolons, pipes, ampersands,
dollar signs, slashes or percent signs), so a generated code never trips an
attack signature.
"""

import secrets
import string
from typing import List, Optional

from codeguard.core.config import CodePolicy
from codeguard.core.errors import ValidationError
from codeguard.models.access_code import CharsetOptions, StrengthLabel, StrengthReport

SAFE_SPECIAL = "!@#^*_+-=.,:?"

_system_random = secrets.SystemRandom()


class CodeGenerator:
    """
    Usage:
        generator = CodeGenerator(CodePolicy())
        code = generator.generate_code(16)
        report = generator.validate_strength(code)
    """

    def __init__(self, policy: Optional[CodePolicy] = None):
        self.policy = policy or CodePolicy()

    def _required_classes(self) -> List[str]:
        classes = []
        if self.policy.require_lowercase:
            classes.append(string.ascii_lowercase)
        if self.policy.require_uppercase:
            classes.append(string.ascii_uppercase)
        if self.policy.require_digits:
            classes.append(string.digits)
        if self.policy.require_special:
            classes.append(SAFE_SPECIAL)
        return classes

    @staticmethod
    def _pool(charset: CharsetOptions) -> str:
        pool = ""
        if charset.lowercase:
            pool += string.ascii_lowercase
        if charset.uppercase:
            pool += string.ascii_uppercase
        if charset.digits:
            pool += string.digits
        if charset.special:
            pool += SAFE_SPECIAL
        for char in charset.custom_chars:
            if char not in pool:
                pool += char
        return pool

    def generate_code(self, length: Optional[int] = None, charset: Optional[CharsetOptions] = None) -> str:
        """
        Generate a random code that passes validate_strength.

        Args:
            length: Code length (default from policy)
            charset: Character classes to draw from

        Returns:
            Raw code

        Raises:
            ValidationError: If the length is outside the policy bounds
        """
        length = self.policy.default_length if length is None else length
        if not self.policy.min_length <= length <= self.policy.max_length:
            raise ValidationError(
                f"Code length must be between {self.policy.min_length} and {self.policy.max_length}",
                message_key="code.generate.invalid_length"
            )

        charset = charset or CharsetOptions()
        pool = self._pool(charset)
        if pool:
            code = "".join(secrets.choice(pool) for _ in range(length))
            if self.validate_strength(code).valid:
                return code

        return self._generate_forced(length, pool)

    def _generate_forced(self, length: int, pool: str) -> str:
        """One character from every required class, the rest from the full pool, shuffled."""
        required = self._required_classes()
        full_pool = pool + "".join(cls for cls in required if cls not in pool)
        if not full_pool:
            raise ValidationError("Character set is empty", message_key="code.generate.empty_charset")

        chars = [secrets.choice(cls) for cls in required]
        chars.extend(secrets.choice(full_pool) for _ in range(length - len(chars)))
        _system_random.shuffle(chars)
        return "".join(chars)

    def validate_strength(self, code: str) -> StrengthReport:
        """
        Check a code against the composition policy and score it.

        Score: length >= 8 (+20), >= 12 (+20), lowercase (+10), uppercase
        (+10), digit (+10), special (+20), letters and digits (+10),
        lowercase + uppercase + digit (+10). Labels: < 40 WEAK, < 70 MEDIUM,
        < 90 STRONG, otherwise VERY_STRONG.
        """
        policy = self.policy
        code = code or ""
        errors = []

        has_lower = any(c.islower() for c in code)
        has_upper = any(c.isupper() for c in code)
        has_digit = any(c.isdigit() for c in code)
        has_special = any(not c.isalnum() for c in code)

        if len(code) < policy.min_length:
            errors.append(f"Code must be at least {policy.min_length} characters")
        if len(code) > policy.max_length:
            errors.append(f"Code must be at most {policy.max_length} characters")
        if policy.require_lowercase and not has_lower:
            errors.append("Code must contain a lowercase letter")
        if policy.require_uppercase and not has_upper:
            errors.append("Code must contain an uppercase letter")
        if policy.require_digits and not has_digit:
            errors.append("Code must contain a digit")
        if policy.require_special and not has_special:
            errors.append("Code must contain a special character")

        score = 0
        if len(code) >= 8:
            score += 20
        if len(code) >= 12:
            score += 20
        if has_lower:
            score += 10
        if has_upper:
            score += 10
        if has_digit:
            score += 10
        if has_special:
            score += 20
        if (has_lower or has_upper) and has_digit:
            score += 10
        if has_lower and has_upper and has_digit:
            score += 10
        score = min(score, 100)

        if score < 40:
            label = StrengthLabel.WEAK
        elif score < 70:
            label = StrengthLabel.MEDIUM
        elif score < 90:
            label = StrengthLabel.STRONG
        else:
            label = StrengthLabel.VERY_STRONG

        return StrengthReport(valid=not errors, errors=errors, score=score, label=label)
