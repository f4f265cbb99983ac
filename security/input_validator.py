"""Security screening, PII detection and rule-based validation of user input."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from loguru import logger


_log = logger.bind(component="InputValidator")

SYSTEM_ERROR_MESSAGE = "Validation failed due to system error"


class ValidationError(Exception):
    """Custom validation error with details."""
    def __init__(self, message: str, field: Optional[str] = None, code: str = "invalid"):
        self.message = message
        self.field = field
        self.code = code
        super().__init__(message)


class RuleType(Enum):
    """Kinds of business rules."""
    REQUIRED = "required"
    EMAIL = "email"
    MIN_LENGTH = "min_length"
    MAX_LENGTH = "max_length"
    PATTERN = "pattern"
    MEDICAL = "medical"
    CUSTOM = "custom"


class MedicalCodeType(Enum):
    """Medical identifier formats."""
    ICD10 = "icd10"
    CPT = "cpt"
    NPI = "npi"
    DEA = "dea"
    MEDICAL_LICENSE = "medical_license"


@dataclass(frozen=True)
class ValidationRule:
    """A single business rule; build with the classmethods."""
    type: RuleType
    value: Any = None
    message: Optional[str] = None
    validator: Optional[Callable[[str], bool]] = field(default=None, compare=False, repr=False)

    @classmethod
    def required(cls, message: Optional[str] = None) -> "ValidationRule":
        return cls(RuleType.REQUIRED, message=message)

    @classmethod
    def email(cls, message: Optional[str] = None) -> "ValidationRule":
        return cls(RuleType.EMAIL, message=message)

    @classmethod
    def min_length(cls, length: int, message: Optional[str] = None) -> "ValidationRule":
        return cls(RuleType.MIN_LENGTH, value=length, message=message)

    @classmethod
    def max_length(cls, length: int, message: Optional[str] = None) -> "ValidationRule":
        return cls(RuleType.MAX_LENGTH, value=length, message=message)

    @classmethod
    def pattern(cls, regex: Union[str, re.Pattern], message: Optional[str] = None) -> "ValidationRule":
        return cls(RuleType.PATTERN, value=re.compile(regex), message=message)

    @classmethod
    def medical(cls, kind: Union[str, MedicalCodeType], message: Optional[str] = None) -> "ValidationRule":
        return cls(RuleType.MEDICAL, value=MedicalCodeType(kind), message=message)

    @classmethod
    def custom(cls, validator: Callable[[str], bool], message: Optional[str] = None) -> "ValidationRule":
        return cls(RuleType.CUSTOM, message=message, validator=validator)


@dataclass
class ValidationResult:
    """Outcome of validating one value."""
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    sanitized_value: Optional[str] = None


# Threat categories: (pattern, error shown to the caller)
SECURITY_PATTERNS: Dict[str, tuple] = {
    "sql_injection": (
        re.compile(r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|UNION)\b|--|;", re.IGNORECASE),
        "Input contains potential SQL injection patterns",
    ),
    "xss": (
        re.compile(r"<script[^>]*>.*?</script>|javascript:|\bon\w+\s*=|<iframe|<object|<embed", re.IGNORECASE),
        "Input contains potential XSS patterns",
    ),
    "path_traversal": (
        re.compile(r"\.\.[/\\]"),
        "Input contains path traversal patterns",
    ),
    "command_injection": (
        re.compile(r"[|;&`]|\$\(|\$\{"),
        "Input contains potential command injection patterns",
    ),
}

PII_PATTERNS: Dict[str, tuple] = {
    "ssn": (
        re.compile(r"\b\d{3}-\d{2}-\d{4}\b|\b\d{9}\b"),
        "Input may contain Social Security Number",
    ),
    "credit_card": (
        re.compile(r"\b\d{4}[-.\s]?\d{4}[-.\s]?\d{4}[-.\s]?\d{4}\b"),
        "Input may contain credit card information",
    ),
    "mrn": (
        re.compile(r"\b(MRN|Medical Record|Patient ID)[:=\s]+[\w\-]+", re.IGNORECASE),
        "Input may contain medical record numbers",
    ),
}

MEDICAL_PATTERNS: Dict[MedicalCodeType, tuple] = {
    MedicalCodeType.ICD10: (
        re.compile(r"^[A-TV-Z][0-9][0-9AB]\.?[0-9A-TV-Z]{0,4}$"),
        "Invalid ICD-10 code format",
    ),
    MedicalCodeType.CPT: (
        re.compile(r"^\d{5}$"),
        "Invalid CPT code format",
    ),
    MedicalCodeType.NPI: (
        re.compile(r"^[0-9]{10}$"),
        "Invalid NPI format",
    ),
    MedicalCodeType.DEA: (
        re.compile(r"^[ABCDEFGHJKLMNPRSTUX][ABCDEFGHJKLMNPRSTUX0-9][0-9]{7}$"),
        "Invalid DEA number format",
    ),
    MedicalCodeType.MEDICAL_LICENSE: (
        re.compile(r"^[A-Z]{1,3}[0-9]{4,8}$"),
        "Invalid medical license format",
    ),
}

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Control characters other than tab, newline and carriage return
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


class InputValidator:
    """
    Screens a single string value.

    Security and PII checks always run; business rules are opt-in per
    call so the same validator serves differently shaped fields. The
    validator holds no state between calls.
    """

    def __init__(self):
        self._rule_handlers: Dict[RuleType, Callable[[str, ValidationRule], Optional[str]]] = {
            RuleType.REQUIRED: self._check_required,
            RuleType.EMAIL: self._check_email,
            RuleType.MIN_LENGTH: self._check_min_length,
            RuleType.MAX_LENGTH: self._check_max_length,
            RuleType.PATTERN: self._check_pattern,
            RuleType.MEDICAL: self._check_medical,
            RuleType.CUSTOM: self._check_custom,
        }

        missing = set(RuleType) - set(self._rule_handlers)
        if missing:
            raise RuntimeError(f"No handler for rule types: {sorted(m.value for m in missing)}")

    def validate(
        self,
        value: str,
        rules: Optional[List[ValidationRule]] = None,
        context: Optional[str] = None
    ) -> ValidationResult:
        """
        Validate input against security checks and business rules.

        Args:
            value: Input value to validate
            rules: Business rules, evaluated in order
            context: Where the input came from, for logging

        Returns:
            ValidationResult with every error and warning collected.
            Unexpected failures become a generic system error result.
        """
        try:
            return self._validate(value, list(rules or []), context)
        except Exception as e:
            # Exception text may quote the input, so only the type is logged
            _log.bind(
                context=context or "unknown",
                error_type=type(e).__name__
            ).error(f"Validation error: {type(e).__name__}")
            return ValidationResult(is_valid=False, errors=[SYSTEM_ERROR_MESSAGE])

    def _validate(
        self,
        value: str,
        rules: List[ValidationRule],
        context: Optional[str]
    ) -> ValidationResult:
        result = ValidationResult()

        # Empty input only answers to the required rule
        if not value or not value.strip():
            required = next((r for r in rules if r.type is RuleType.REQUIRED), None)
            if required is not None:
                result.is_valid = False
                result.errors.append(required.message or "This field is required")
            else:
                result.sanitized_value = self.sanitize(value or "")
            return result

        threats = self.check_security_threats(value)
        if threats:
            result.is_valid = False
            result.errors.extend(message for _, message in threats)

            _log.bind(
                context=context or "unknown",
                violation_type="security_pattern_match",
                categories=[category for category, _ in threats]
            ).error(f"Security validation failed in {context or 'unknown'} context")

        result.warnings.extend(self.detect_pii(value))

        for rule in rules:
            error = self._rule_handlers[rule.type](value, rule)
            if error:
                result.is_valid = False
                result.errors.append(error)

        if result.is_valid:
            result.sanitized_value = self.sanitize(value)

        return result

    def validate_fields(
        self,
        data: Dict[str, Any],
        schema: Dict[str, List[ValidationRule]],
        context: Optional[str] = None
    ) -> Dict[str, ValidationResult]:
        """
        Validate a form.

        Args:
            data: Submitted values by field name
            schema: Rules by field name; missing fields count as empty
            context: Logging context, suffixed with the field name

        Returns:
            ValidationResult per schema field
        """
        results = {}
        for field_name, rules in schema.items():
            raw = data.get(field_name)
            value = "" if raw is None else str(raw)
            field_context = f"{context}.{field_name}" if context else field_name
            results[field_name] = self.validate(value, rules, field_context)
        return results

    def ensure_valid(
        self,
        value: str,
        rules: Optional[List[ValidationRule]] = None,
        field_name: str = "input",
        context: Optional[str] = None
    ) -> str:
        """
        Validate and return the sanitized value.

        Raises:
            ValidationError: If validation fails
        """
        result = self.validate(value, rules, context)
        if not result.is_valid:
            security_messages = {message for _, message in SECURITY_PATTERNS.values()}
            if any(error in security_messages for error in result.errors):
                code = "security_violation"
            elif SYSTEM_ERROR_MESSAGE in result.errors:
                code = "system_error"
            else:
                code = "invalid"
            raise ValidationError(result.errors[0], field_name, code)

        _log.debug(f"Validated {field_name}")
        return result.sanitized_value or ""

    def check_security_threats(self, value: str) -> List[tuple]:
        """Return (category, message) for every matched threat category."""
        return [
            (category, message)
            for category, (pattern, message) in SECURITY_PATTERNS.items()
            if pattern.search(value)
        ]

    def detect_pii(self, value: str) -> List[str]:
        """Return a warning for every kind of PII found."""
        return [message for pattern, message in PII_PATTERNS.values() if pattern.search(value)]

    def sanitize(self, value: str) -> str:
        """Strip null bytes and control characters, collapse whitespace, trim."""
        value = value.replace("\x00", "")
        value = CONTROL_CHARS.sub("", value)
        value = re.sub(r"\s+", " ", value)
        return value.strip()

    def _check_required(self, value: str, rule: ValidationRule) -> Optional[str]:
        if not value.strip():
            return rule.message or "This field is required"
        return None

    def _check_email(self, value: str, rule: ValidationRule) -> Optional[str]:
        if not EMAIL_PATTERN.match(value):
            return rule.message or "Must be a valid email address"
        return None

    def _check_min_length(self, value: str, rule: ValidationRule) -> Optional[str]:
        if len(value) < rule.value:
            return rule.message or f"Must be at least {rule.value} characters"
        return None

    def _check_max_length(self, value: str, rule: ValidationRule) -> Optional[str]:
        if len(value) > rule.value:
            return rule.message or f"Must not exceed {rule.value} characters"
        return None

    def _check_pattern(self, value: str, rule: ValidationRule) -> Optional[str]:
        if not re.search(rule.value, value):
            return rule.message or "Invalid format"
        return None

    def _check_medical(self, value: str, rule: ValidationRule) -> Optional[str]:
        pattern, default_message = MEDICAL_PATTERNS[MedicalCodeType(rule.value)]
        if not pattern.match(value):
            return rule.message or default_message
        return None

    def _check_custom(self, value: str, rule: ValidationRule) -> Optional[str]:
        if rule.validator is not None and not rule.validator(value):
            return rule.message or "Custom validation failed"
        return None


# Global input validator instance
_input_validator: Optional[InputValidator] = None


def get_input_validator() -> InputValidator:
    """Get or create global input validator instance."""
    global _input_validator
    if _input_validator is None:
        _input_validator = InputValidator()
    return _input_validator
