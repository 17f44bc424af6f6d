"""
Field Validation Engine

Validates submitted values against a field's declared type and rules.
One validator per field type, selected through a single dispatch table;
cross-type rule flags (email, phone, url, pattern) run afterwards.

Errors are user-facing strings translated to the active locale.
"""

from dataclasses import dataclass, field as dataclass_field
from datetime import date, datetime, time, timezone as dt_timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import json
import logging
import os
import re

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import URLValidator
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from django.utils.translation import gettext as _

from .logic_engine import is_empty, to_number
from .models import FieldType

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
PHONE_RE = re.compile(r'^[+]?[(]?[0-9]{1,4}[)]?[-\s.]?[(]?[0-9]{1,4}[)]?[-\s.]?[0-9]{1,9}$')

# A quantified group that is itself quantified, e.g. (a+)+ or (\w*)*
NESTED_QUANTIFIER_RE = re.compile(r'\((?:[^()\\]|\\.)*[+*}]\)\s*(?:[+*]|\{\d)')


@dataclass
class FieldValidationResult:
    is_valid: bool
    errors: List[str] = dataclass_field(default_factory=list)


@dataclass
class SubmissionValidationResult:
    is_valid: bool
    errors: Dict[str, List[str]] = dataclass_field(default_factory=dict)

    @property
    def error_messages(self) -> List[str]:
        return flatten_errors(self.errors)


def parse_validation_rules(rules: Any) -> Dict[str, Any]:
    """Parse validation rules stored as JSON text or a mapping"""
    if not rules:
        return {}
    if isinstance(rules, str):
        try:
            rules = json.loads(rules)
        except ValueError:
            return {}
    return rules if isinstance(rules, dict) else {}


# ============================================================================
# Type validators
# ============================================================================

def _validate_text(label, value, rules, form_field) -> List[str]:
    """Enforce minLength / maxLength on the string length"""
    errors = []
    length = len(str(value))
    min_length = to_number(rules.get('minLength'))
    max_length = to_number(rules.get('maxLength'))

    if min_length is not None and length < min_length:
        errors.append(_('"%(label)s" must be at least %(count)s characters long') % {
            'label': label, 'count': _display_number(min_length)
        })
    if max_length is not None and length > max_length:
        errors.append(_('"%(label)s" must not exceed %(count)s characters') % {
            'label': label, 'count': _display_number(max_length)
        })
    return errors


def _validate_number(label, value, rules, form_field) -> List[str]:
    """Value must parse as a finite number within min / max"""
    number = to_number(value)
    if number is None:
        return [_('"%(label)s" must be a valid number') % {'label': label}]

    errors = []
    minimum = to_number(rules.get('min'))
    maximum = to_number(rules.get('max'))
    if minimum is not None and number < minimum:
        errors.append(_('"%(label)s" must not be less than %(min)s') % {
            'label': label, 'min': _display_number(minimum)
        })
    if maximum is not None and number > maximum:
        errors.append(_('"%(label)s" must not be greater than %(max)s') % {
            'label': label, 'max': _display_number(maximum)
        })
    return errors


def _validate_date(label, value, rules, form_field) -> List[str]:
    """Value must parse to a valid date inside the inclusive min / max bounds"""
    moment = parse_moment(value)
    if moment is None:
        return [_('"%(label)s" must be a valid date') % {'label': label}]

    errors = []
    for key, outside, message in (
        ('min', lambda bound: moment < bound, _('"%(label)s" must not be before %(date)s')),
        ('max', lambda bound: moment > bound, _('"%(label)s" must not be after %(date)s')),
    ):
        if not rules.get(key):
            continue
        bound = parse_moment(rules[key])
        if bound is None:
            logger.warning(f"Ignoring unparsable {key} date bound {rules[key]!r} on field {label!r}")
            continue
        if outside(bound):
            errors.append(message % {'label': label, 'date': bound.date().isoformat()})
    return errors


def _validate_choice(label, value, rules, form_field) -> List[str]:
    """Values must be among the configured options (when options exist)"""
    allowed = _option_values(getattr(form_field, 'options', None))
    if not allowed:
        return []

    if getattr(form_field, 'type', None) == FieldType.CHECKBOX:
        chosen = value if isinstance(value, (list, tuple)) else [value]
    else:
        chosen = [value]

    invalid = [str(v) for v in chosen if str(v) not in allowed]
    if invalid:
        return [_('"%(label)s" contains an invalid choice: %(choices)s') % {
            'label': label, 'choices': ', '.join(invalid)
        }]
    return []


def _validate_file(label, value, rules, form_field) -> List[str]:
    """Enforce max_files, allowed_file_types and max_file_size"""
    files = value if isinstance(value, (list, tuple)) else [value]
    errors = []

    max_files = getattr(form_field, 'max_files', None)
    if max_files and len(files) > max_files:
        errors.append(_('"%(label)s" accepts at most %(count)s files') % {
            'label': label, 'count': max_files
        })

    allowed_types = [str(t).lower() for t in (getattr(form_field, 'allowed_file_types', None) or [])]
    max_size = getattr(form_field, 'max_file_size', None)

    for item in files:
        if not isinstance(item, dict):
            continue
        name = str(item.get('name') or item.get('originalName') or '')
        mimetype = str(item.get('type') or item.get('mimeType') or '').lower()

        if allowed_types and not _file_type_allowed(name, mimetype, allowed_types):
            errors.append(_('"%(label)s": file type of "%(name)s" is not allowed') % {
                'label': label, 'name': name or mimetype
            })

        size = to_number(item.get('size'))
        if max_size and size is not None and size > max_size:
            errors.append(_('"%(label)s": "%(name)s" exceeds the maximum file size') % {
                'label': label, 'name': name
            })
    return errors


TYPE_VALIDATORS: Dict[str, Callable[..., List[str]]] = {
    FieldType.TEXT: _validate_text,
    FieldType.TEXTAREA: _validate_text,
    FieldType.NUMBER: _validate_number,
    FieldType.DATE: _validate_date,
    FieldType.DATETIME: _validate_date,
    FieldType.SELECT: _validate_choice,
    FieldType.RADIO: _validate_choice,
    FieldType.CHECKBOX: _validate_choice,
    FieldType.FILE: _validate_file,
}


# ============================================================================
# Cross-type rule flags
# ============================================================================

def _check_email(label, value) -> List[str]:
    if not EMAIL_RE.match(str(value)):
        return [_('Please enter a valid email address in "%(label)s"') % {'label': label}]
    return []


def _check_phone(label, value) -> List[str]:
    if not PHONE_RE.match(str(value)):
        return [_('Please enter a valid phone number in "%(label)s"') % {'label': label}]
    return []


def _check_url(label, value) -> List[str]:
    try:
        URLValidator()(str(value))
    except DjangoValidationError:
        return [_('Please enter a valid URL in "%(label)s"') % {'label': label}]
    return []


def _check_pattern(label, value, pattern, custom_message=None) -> List[str]:
    """
    Match an admin-authored pattern.

    A pattern that is malformed or over the complexity budget is skipped and
    logged; it is never reported as a failure of the submitted data.
    """
    compiled = compile_pattern(pattern)
    if compiled is None:
        return []

    text = str(value)
    if len(text) > settings.FORMS_MAX_PATTERN_INPUT_LENGTH:
        logger.warning(f"Skipping pattern check on {label!r}: input longer than the pattern budget")
        return []

    if not compiled.search(text):
        return [custom_message or _('"%(label)s" does not match the required format') % {'label': label}]
    return []


def compile_pattern(pattern: str) -> Optional[re.Pattern]:
    """Compile a validation pattern, or return None when it cannot be trusted."""
    pattern = str(pattern)
    if len(pattern) > settings.FORMS_MAX_PATTERN_LENGTH:
        logger.warning(f"Validation pattern skipped: longer than {settings.FORMS_MAX_PATTERN_LENGTH} characters")
        return None
    if NESTED_QUANTIFIER_RE.search(pattern):
        logger.warning(f"Validation pattern skipped: nested quantifiers in {pattern!r}")
        return None
    try:
        return re.compile(pattern)
    except re.error as e:
        logger.warning(f"Invalid regex pattern {pattern!r}: {e}")
        return None


# ============================================================================
# Public API
# ============================================================================

def validate_field(
    label: str,
    field_type: str,
    value: Any,
    rules: Any = None,
    required: bool = False,
    form_field: Any = None,
) -> FieldValidationResult:
    """
    Validate a single value against its field type and rules.

    Empty values short-circuit: a required empty value yields exactly one
    error, an optional empty value passes without further checks.
    """
    rules = parse_validation_rules(rules)

    if required and is_empty(value):
        message = rules.get('customMessage') or _('"%(label)s" is required') % {'label': label}
        return FieldValidationResult(is_valid=False, errors=[message])

    if is_empty(value):
        return FieldValidationResult(is_valid=True, errors=[])

    errors = []

    type_validator = TYPE_VALIDATORS.get(field_type)
    if type_validator is not None:
        errors.extend(type_validator(label, value, rules, form_field))

    if field_type == FieldType.EMAIL or rules.get('email'):
        errors.extend(_check_email(label, value))

    if field_type == FieldType.PHONE or rules.get('phone'):
        errors.extend(_check_phone(label, value))

    if rules.get('url'):
        errors.extend(_check_url(label, value))

    if rules.get('pattern'):
        errors.extend(_check_pattern(label, value, rules['pattern'], rules.get('customMessage')))

    return FieldValidationResult(is_valid=not errors, errors=errors)


def validate_submission(
    fields: Iterable[Any],
    data: Dict[str, Any],
    required_ids: Optional[Iterable[str]] = None,
) -> SubmissionValidationResult:
    """
    Validate every given field against the submitted data.

    Only the fields passed in are checked: callers pre-filter to the
    classified-visible set. When required_ids is given it replaces each
    field's static required flag.
    """
    required_ids = None if required_ids is None else {str(i) for i in required_ids}
    errors = {}

    for form_field in fields:
        key, value = resolve_answer(data, form_field)
        field_id = str(form_field.id)
        required = form_field.required if required_ids is None else field_id in required_ids

        result = validate_field(
            form_field.label,
            form_field.type,
            value,
            form_field.validation_rules,
            required,
            form_field=form_field,
        )
        if not result.is_valid:
            errors[field_id] = result.errors

    return SubmissionValidationResult(is_valid=not errors, errors=errors)


def flatten_errors(errors: Dict[str, List[str]]) -> List[str]:
    """Get validation error messages as one ordered list"""
    flat = []
    for field_errors in errors.values():
        flat.extend(field_errors)
    return flat


def resolve_answer(data: Dict[str, Any], form_field: Any) -> Tuple[Optional[str], Any]:
    """
    Find a field's answer in submitted data keyed by field id or label.

    Returns (key, value); key is None when the field was not answered.
    """
    if not isinstance(data, dict):
        return None, None
    field_id = str(form_field.id)
    if field_id in data:
        return field_id, data[field_id]
    label = getattr(form_field, 'label', None)
    if label and label in data:
        return label, data[label]
    return None, None


# ============================================================================
# Helpers
# ============================================================================

def parse_moment(value: Any) -> Optional[datetime]:
    """Parse a date or datetime value into an aware datetime, or None."""
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime.combine(value, time.min)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            moment = parse_datetime(text)
            if moment is None:
                parsed_date = parse_date(text)
                moment = datetime.combine(parsed_date, time.min) if parsed_date else None
            if moment is None:
                moment = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            return None
    else:
        return None

    if timezone.is_naive(moment):
        moment = timezone.make_aware(moment, dt_timezone.utc)
    return moment


def _display_number(number: float):
    return int(number) if float(number).is_integer() else number


def _option_values(options: Any) -> List[str]:
    values = []
    for option in options or []:
        if isinstance(option, dict):
            option = option.get('value', option.get('label'))
        if option is not None:
            values.append(str(option))
    return values


def _file_type_allowed(name: str, mimetype: str, allowed_types: List[str]) -> bool:
    extension = os.path.splitext(name)[1].lower()
    for allowed in allowed_types:
        if allowed.endswith('/*') and mimetype.startswith(allowed[:-1]):
            return True
        if allowed == mimetype:
            return True
        if extension and allowed.lstrip('.') == extension.lstrip('.'):
            return True
    return False
