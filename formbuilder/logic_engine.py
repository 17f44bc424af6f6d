"""
Conditional Logic Engine for Dynamic Forms

Decides, per submission, which fields are visible, required or skipped:
- AND / OR combination of rules
- Whitelisted comparison operators (no arbitrary code execution)
- First-rule action selection (SHOW / HIDE / REQUIRE / SKIP)
- Total evaluation: malformed values degrade to False, never raise
"""

from dataclasses import dataclass, field as dataclass_field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set
import json
import logging
import math
import re

logger = logging.getLogger(__name__)


# Canonical operator and action names
EQUALS = 'EQUALS'
NOT_EQUALS = 'NOT_EQUALS'
CONTAINS = 'CONTAINS'
NOT_CONTAINS = 'NOT_CONTAINS'
GREATER_THAN = 'GREATER_THAN'
LESS_THAN = 'LESS_THAN'
GREATER_THAN_OR_EQUAL = 'GREATER_THAN_OR_EQUAL'
LESS_THAN_OR_EQUAL = 'LESS_THAN_OR_EQUAL'
IS_EMPTY = 'IS_EMPTY'
IS_NOT_EMPTY = 'IS_NOT_EMPTY'

SHOW = 'SHOW'
HIDE = 'HIDE'
REQUIRE = 'REQUIRE'
SKIP = 'SKIP'

LOGIC_GATES = {'AND', 'OR'}
VALUELESS_OPERATORS = {IS_EMPTY, IS_NOT_EMPTY}


def _token(name: Any) -> str:
    """Fold EQUALS / notEquals / not_equals to one spelling."""
    return re.sub(r'[^a-z]', '', str(name).lower())


def is_empty(value: Any) -> bool:
    """null, blank string, empty list and empty mapping count as empty."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def to_number(value: Any) -> Optional[float]:
    """
    Parse a value as a finite number.

    Returns None for anything that is not a number or a numeric string
    (None, blanks, booleans, lists, mappings, NaN, infinities).
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        # float() also reads digit separators and non-ASCII digits
        if not value.strip() or '_' in value or not value.isascii():
            return None
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _as_text(value: Any) -> str:
    """Loose string form used for case-insensitive comparisons"""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).lower()


def _equals(actual: Any, expected: Any) -> bool:
    # Checkbox answers: the array must contain the value
    if isinstance(actual, (list, tuple)):
        return expected in actual
    return _as_text(actual) == _as_text(expected)


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    needle = _as_text(expected)
    if isinstance(actual, (list, tuple)):
        return any(needle in _as_text(item) for item in actual)
    return needle in _as_text(actual)


def _numeric(compare):
    def comparison(actual: Any, expected: Any) -> bool:
        left, right = to_number(actual), to_number(expected)
        if left is None or right is None:
            return False
        return compare(left, right)
    return comparison


class LogicEngine:
    """
    Evaluates conditional logic rules for form fields against one set of
    submitted answers.

    The answers used to decide visibility are the same final answers that
    are later validated; there is no staged answer set.
    """

    # Whitelisted comparison operators (security: prevent arbitrary execution)
    COMPARISON_OPERATORS = {
        EQUALS: _equals,
        NOT_EQUALS: lambda a, b: not _equals(a, b),
        CONTAINS: _contains,
        NOT_CONTAINS: lambda a, b: not _contains(a, b),
        GREATER_THAN: _numeric(lambda a, b: a > b),
        LESS_THAN: _numeric(lambda a, b: a < b),
        GREATER_THAN_OR_EQUAL: _numeric(lambda a, b: a >= b),
        LESS_THAN_OR_EQUAL: _numeric(lambda a, b: a <= b),
        IS_EMPTY: lambda a, b: is_empty(a),
        IS_NOT_EMPTY: lambda a, b: not is_empty(a),
    }

    ACTIONS = (SHOW, HIDE, REQUIRE, SKIP)

    _OPERATOR_TOKENS = {_token(name): name for name in COMPARISON_OPERATORS}
    _ACTION_TOKENS = {_token(name): name for name in ACTIONS}

    def __init__(self, answers: Optional[Dict[str, Any]] = None):
        """
        Args:
            answers: Mapping of field identifier to submitted value
                     Example: {'hasCar': 'yes', 'age': '25'}
        """
        self.answers = answers if isinstance(answers, dict) else {}

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    @classmethod
    def operator_name(cls, operator: Any) -> Optional[str]:
        return cls._OPERATOR_TOKENS.get(_token(operator))

    @classmethod
    def action_name(cls, action: Any) -> Optional[str]:
        return cls._ACTION_TOKENS.get(_token(action))

    @staticmethod
    def parse_logic(logic: Any) -> Optional[Dict[str, Any]]:
        """
        Accept logic stored as a mapping or as a JSON string.
        Anything else is treated as "no logic".
        """
        if isinstance(logic, str):
            try:
                logic = json.loads(logic)
            except ValueError:
                return None
        if not isinstance(logic, dict):
            return None
        return logic

    @classmethod
    def rules_of(cls, logic: Any) -> List[Dict[str, Any]]:
        logic = cls.parse_logic(logic)
        if not logic:
            return []
        rules = logic.get('rules')
        if not isinstance(rules, list):
            return []
        return [rule for rule in rules if isinstance(rule, dict)]

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, logic: Any) -> bool:
        """
        Evaluate a rule set against the answers.

        No logic, or logic without rules, is always satisfied. Rules are
        combined with OR when logic == 'OR', otherwise with AND.

        Example:
            logic = {
                "logic": "AND",
                "rules": [
                    {"fieldId": "hasCar", "operator": "EQUALS", "value": "yes", "action": "SHOW"},
                    {"fieldId": "age", "operator": "GREATER_THAN", "value": 17}
                ]
            }
            visible = LogicEngine({'hasCar': 'yes', 'age': '30'}).evaluate(logic)
        """
        rules = self.rules_of(logic)
        if not rules:
            return True

        results = [self.evaluate_rule(rule) for rule in rules]

        gate = str(self.parse_logic(logic).get('logic') or 'AND').upper()
        if gate == 'OR':
            return any(results)
        return all(results)

    def evaluate_rule(self, rule: Dict[str, Any]) -> bool:
        """Evaluate one comparison. Never raises."""
        operator = self.operator_name(rule.get('operator'))
        if operator is None:
            # Unknown operators do not constrain the field
            logger.warning(f"Unknown conditional operator {rule.get('operator')!r}; treating rule as satisfied")
            return True

        actual = self.answers.get(str(rule.get('fieldId')))
        expected = rule.get('value')

        try:
            return bool(self.COMPARISON_OPERATORS[operator](actual, expected))
        except Exception as e:
            # Log but don't fail - return False for failed comparisons
            logger.debug(f"Rule {rule!r} could not be evaluated: {e}")
            return False

    def action_for(self, logic: Any) -> str:
        """Only the first rule's action decides the field's outcome"""
        rules = self.rules_of(logic)
        if not rules:
            return SHOW
        return self.action_name(rules[0].get('action') or SHOW) or SHOW

    def classify(self, fields: Iterable[Any]) -> 'Classification':
        """
        Compute the visible / required / skipped field sets.

        A SHOW rule whose condition fails, or a HIDE rule whose condition
        holds, hides the field: it is neither visible nor validated.

        Each field needs `id`, `required` and `conditional_logic` attributes.
        """
        result = Classification()

        for form_field in fields:
            field_id = str(form_field.id)
            statically_required = bool(getattr(form_field, 'required', False))
            logic = getattr(form_field, 'conditional_logic', None)

            if not self.rules_of(logic):
                result.visible.add(field_id)
                if statically_required:
                    result.required.add(field_id)
                continue

            condition_met = self.evaluate(logic)
            action = self.action_for(logic)

            if action == SHOW and condition_met:
                result.visible.add(field_id)
                if statically_required:
                    result.required.add(field_id)
            elif action == HIDE and not condition_met:
                result.visible.add(field_id)
                if statically_required:
                    result.required.add(field_id)
            elif action == REQUIRE and condition_met:
                result.visible.add(field_id)
                result.required.add(field_id)
            elif action == SKIP and condition_met:
                result.skipped.add(field_id)
            elif action in (SHOW, HIDE):
                # SHOW not met, or HIDE met
                result.hidden.add(field_id)
            else:
                # Visible, but never elevated to required
                result.visible.add(field_id)

        return result

    # ------------------------------------------------------------------
    # Authoring helpers
    # ------------------------------------------------------------------

    def explain(self, logic: Any) -> Dict[str, Any]:
        """
        Evaluate logic and return the result of each rule.

        Useful for debugging and showing owners why a field is shown/hidden.
        """
        parsed = self.parse_logic(logic) or {}
        return {
            'result': self.evaluate(logic),
            'logic': str(parsed.get('logic') or 'AND').upper(),
            'action': self.action_for(logic),
            'rules': [
                {
                    'fieldId': rule.get('fieldId'),
                    'operator': rule.get('operator'),
                    'expected_value': rule.get('value'),
                    'actual_value': self.answers.get(str(rule.get('fieldId'))),
                    'result': self.evaluate_rule(rule),
                }
                for rule in self.rules_of(logic)
            ],
        }


@dataclass
class Classification:
    """Outcome of classifying a form's fields against one answer set"""
    visible: Set[str] = dataclass_field(default_factory=set)
    required: Set[str] = dataclass_field(default_factory=set)
    skipped: Set[str] = dataclass_field(default_factory=set)
    hidden: Set[str] = dataclass_field(default_factory=set)


def validate_logic(logic: Any) -> List[str]:
    """
    Validate logic structure without evaluating it.

    Returns:
        List of validation error messages (empty if valid)
    """
    if logic in (None, ''):
        return []

    parsed = LogicEngine.parse_logic(logic)
    if parsed is None:
        return ['root: Logic must be an object']

    errors = []
    gate = str(parsed.get('logic') or 'AND').upper()
    if gate not in LOGIC_GATES:
        errors.append(f"root: Unknown logic gate '{parsed.get('logic')}'. Valid: AND, OR")

    rules = parsed.get('rules')
    if not isinstance(rules, list):
        errors.append("root: 'rules' must be a list")
        return errors

    for i, rule in enumerate(rules):
        path = f'rules[{i}]'
        if not isinstance(rule, dict):
            errors.append(f'{path}: Rule must be an object')
            continue

        if not rule.get('fieldId'):
            errors.append(f"{path}: Rule must have 'fieldId'")

        operator = LogicEngine.operator_name(rule.get('operator'))
        if operator is None:
            errors.append(
                f"{path}: Unknown operator '{rule.get('operator')}'. "
                f"Valid: {', '.join(LogicEngine.COMPARISON_OPERATORS)}"
            )
        elif operator not in VALUELESS_OPERATORS and 'value' not in rule:
            errors.append(f"{path}: Rule should have 'value' for operator '{operator}'")

        if rule.get('action') is not None and LogicEngine.action_name(rule['action']) is None:
            errors.append(
                f"{path}: Unknown action '{rule['action']}'. Valid: {', '.join(LogicEngine.ACTIONS)}"
            )

    return errors


def evaluate(logic: Any, answers: Optional[Dict[str, Any]]) -> bool:
    """Shortcut for LogicEngine(answers).evaluate(logic)"""
    return LogicEngine(answers).evaluate(logic)


def classify(fields: Iterable[Any], answers: Optional[Dict[str, Any]]) -> Classification:
    """Shortcut for LogicEngine(answers).classify(fields)"""
    return LogicEngine(answers).classify(fields)
