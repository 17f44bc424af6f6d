"""
Unit Tests for the Form Builder

Conditional logic engine, field validation engine, multi-step replacement
and the owner-facing form API.
"""

from types import SimpleNamespace

import pytest
from cryptography.fernet import Fernet
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from formbuilder.logic_engine import (
    LogicEngine,
    classify,
    evaluate,
    is_empty,
    validate_logic,
)
from formbuilder.models import Field, FieldType, Form, FormStatus, Step
from formbuilder.services import get_form_steps, update_form_steps
from formbuilder.validation import (
    flatten_errors,
    resolve_answer,
    validate_field,
    validate_submission,
)


def make_field(field_id, required=False, logic=None, label=None, field_type=FieldType.TEXT, **extra):
    return SimpleNamespace(
        id=field_id,
        label=label or field_id,
        type=field_type,
        required=required,
        conditional_logic=logic,
        validation_rules=extra.pop('validation_rules', {}),
        **extra
    )


def rule(field_id, operator, value=None, action='SHOW'):
    return {'fieldId': field_id, 'operator': operator, 'value': value, 'action': action}


class TestLogicEngine:
    """Test cases for rule evaluation."""

    # ========================================================================
    # Comparison Operators Tests
    # ========================================================================

    def test_equals_operator(self):
        logic = {'logic': 'AND', 'rules': [rule('hasCar', 'EQUALS', 'yes')]}

        assert evaluate(logic, {'hasCar': 'yes'}) is True
        assert evaluate(logic, {'hasCar': 'YES'}) is True
        assert evaluate(logic, {'hasCar': 'no'}) is False

    def test_equals_on_array_means_contains(self):
        logic = {'rules': [rule('colors', 'EQUALS', 'red')]}

        assert evaluate(logic, {'colors': ['blue', 'red']}) is True
        assert evaluate(logic, {'colors': ['blue']}) is False

    def test_equals_coerces_booleans_and_strings(self):
        logic = {'rules': [rule('agree', 'EQUALS', True)]}

        assert evaluate(logic, {'agree': 'true'}) is True
        assert evaluate(logic, {'agree': 'False'}) is False

        logic = {'rules': [rule('agree', 'EQUALS', 'TRUE')]}
        assert evaluate(logic, {'agree': True}) is True

    def test_equals_numbers_as_strings(self):
        logic = {'rules': [rule('age', 'EQUALS', 25)]}
        assert evaluate(logic, {'age': '25'}) is True

    def test_not_equals_operator(self):
        logic = {'rules': [rule('status', 'NOT_EQUALS', 'done')]}

        assert evaluate(logic, {'status': 'pending'}) is True
        assert evaluate(logic, {'status': 'done'}) is False

    def test_contains_is_case_insensitive(self):
        logic = {'rules': [rule('comment', 'CONTAINS', 'GREAT')]}

        assert evaluate(logic, {'comment': 'This is great!'}) is True
        assert evaluate(logic, {'comment': 'This is okay'}) is False
        assert evaluate(logic, {'comment': None}) is False

    def test_contains_on_array(self):
        logic = {'rules': [rule('tags', 'CONTAINS', 'py')]}

        assert evaluate(logic, {'tags': ['Python', 'Go']}) is True
        assert evaluate(logic, {'tags': ['Rust']}) is False

    def test_not_contains_operator(self):
        logic = {'rules': [rule('comment', 'NOT_CONTAINS', 'spam')]}

        assert evaluate(logic, {'comment': 'hello'}) is True
        assert evaluate(logic, {'comment': 'SPAM offer'}) is False

    def test_numeric_operators(self):
        answers = {'age': '18'}

        assert evaluate({'rules': [rule('age', 'GREATER_THAN', 17)]}, answers) is True
        assert evaluate({'rules': [rule('age', 'GREATER_THAN', 18)]}, answers) is False
        assert evaluate({'rules': [rule('age', 'GREATER_THAN_OR_EQUAL', '18')]}, answers) is True
        assert evaluate({'rules': [rule('age', 'LESS_THAN', 18)]}, answers) is False
        assert evaluate({'rules': [rule('age', 'LESS_THAN_OR_EQUAL', 18.0)]}, answers) is True

    @pytest.mark.parametrize('value', [None, '', 'abc', {'a': 1}, [1, 2], True, '1_000', '١٢'])
    def test_numeric_operators_never_raise_on_unparsable_values(self, value):
        for operator in ('GREATER_THAN', 'LESS_THAN', 'GREATER_THAN_OR_EQUAL', 'LESS_THAN_OR_EQUAL'):
            logic = {'rules': [rule('age', operator, 5)]}
            assert evaluate(logic, {'age': value}) is False

    def test_numeric_operator_with_unparsable_expected_value(self):
        logic = {'rules': [rule('age', 'GREATER_THAN', 'lots')]}
        assert evaluate(logic, {'age': 99}) is False

    def test_missing_answer_compares_as_empty(self):
        assert evaluate({'rules': [rule('missing', 'GREATER_THAN', 1)]}, {}) is False
        assert evaluate({'rules': [rule('missing', 'IS_EMPTY')]}, {}) is True

    def test_is_empty_operator(self):
        logic = {'rules': [rule('note', 'IS_EMPTY')]}

        for empty in (None, '', '   ', [], {}):
            assert evaluate(logic, {'note': empty}) is True
        assert evaluate(logic, {'note': 'value'}) is False
        assert evaluate(logic, {'note': 0}) is False

    def test_is_not_empty_operator(self):
        logic = {'rules': [rule('note', 'IS_NOT_EMPTY')]}

        assert evaluate(logic, {'note': 'value'}) is True
        assert evaluate(logic, {'note': ''}) is False

    def test_operator_spelling_variants(self):
        answers = {'status': 'open'}

        assert evaluate({'rules': [rule('status', 'notEquals', 'closed')]}, answers) is True
        assert evaluate({'rules': [rule('status', 'not_equals', 'closed')]}, answers) is True
        assert evaluate({'rules': [rule('status', 'equals', 'open')]}, answers) is True

    def test_unknown_operator_is_satisfied(self):
        logic = {'rules': [rule('x', 'MATCHES_REGEX', '.*')]}
        assert evaluate(logic, {'x': 'anything'}) is True

    # ========================================================================
    # Logic Gates Tests
    # ========================================================================

    def test_no_logic_is_always_true(self):
        assert evaluate(None, {}) is True
        assert evaluate({}, {}) is True
        assert evaluate({'logic': 'AND', 'rules': []}, {}) is True
        assert evaluate('not json', {}) is True

    def test_and_gate(self):
        logic = {
            'logic': 'AND',
            'rules': [rule('a', 'EQUALS', '1'), rule('b', 'EQUALS', '2')],
        }

        assert evaluate(logic, {'a': '1', 'b': '2'}) is True
        assert evaluate(logic, {'a': '1', 'b': '3'}) is False

    def test_or_gate(self):
        logic = {
            'logic': 'OR',
            'rules': [rule('a', 'EQUALS', '1'), rule('b', 'EQUALS', '2')],
        }

        assert evaluate(logic, {'a': '0', 'b': '2'}) is True
        assert evaluate(logic, {'a': '0', 'b': '0'}) is False

    def test_missing_gate_defaults_to_and(self):
        logic = {'rules': [rule('a', 'EQUALS', '1'), rule('b', 'EQUALS', '2')]}
        assert evaluate(logic, {'a': '1', 'b': '0'}) is False

    def test_logic_stored_as_json_string(self):
        logic = '{"logic": "OR", "rules": [{"fieldId": "a", "operator": "EQUALS", "value": "x"}]}'
        assert evaluate(logic, {'a': 'x'}) is True

    def test_explain(self):
        logic = {
            'logic': 'AND',
            'rules': [rule('a', 'EQUALS', '1', action='REQUIRE'), rule('b', 'IS_EMPTY')],
        }
        explanation = LogicEngine({'a': '1', 'b': 'filled'}).explain(logic)

        assert explanation['result'] is False
        assert explanation['action'] == 'REQUIRE'
        assert [r['result'] for r in explanation['rules']] == [True, False]
        assert explanation['rules'][1]['actual_value'] == 'filled'


class TestClassification:
    """visible / required / skipped / hidden sets"""

    def test_fields_without_logic(self):
        fields = [make_field('a', required=True), make_field('b', required=False)]
        result = classify(fields, {})

        assert result.visible == {'a', 'b'}
        assert result.required == {'a'}
        assert result.skipped == set()

    def test_skip_when_condition_holds(self):
        fields = [make_field('extra', required=True, logic={'rules': [rule('mode', 'EQUALS', 'quick', 'SKIP')]})]
        result = classify(fields, {'mode': 'quick'})

        assert 'extra' not in result.visible
        assert 'extra' not in result.required
        assert result.skipped == {'extra'}

    def test_skip_when_condition_fails(self):
        fields = [make_field('extra', required=True, logic={'rules': [rule('mode', 'EQUALS', 'quick', 'SKIP')]})]
        result = classify(fields, {'mode': 'full'})

        assert result.visible == {'extra'}
        assert result.required == set()

    def test_require_elevates_optional_field(self):
        fields = [make_field('reason', required=False, logic={'rules': [rule('rating', 'LESS_THAN', 3, 'REQUIRE')]})]
        result = classify(fields, {'rating': '1'})

        assert result.visible == {'reason'}
        assert result.required == {'reason'}

    def test_require_not_met_leaves_field_optional(self):
        fields = [make_field('reason', required=True, logic={'rules': [rule('rating', 'LESS_THAN', 3, 'REQUIRE')]})]
        result = classify(fields, {'rating': '5'})

        assert result.visible == {'reason'}
        assert result.required == set()

    def test_show_when_condition_holds(self):
        fields = [make_field('carModel', required=True, logic={'rules': [rule('hasCar', 'EQUALS', 'yes', 'SHOW')]})]
        result = classify(fields, {'hasCar': 'yes'})

        assert result.visible == {'carModel'}
        assert result.required == {'carModel'}

    def test_show_when_condition_fails_hides_field(self):
        fields = [make_field('carModel', required=True, logic={'rules': [rule('hasCar', 'EQUALS', 'yes', 'SHOW')]})]
        result = classify(fields, {'hasCar': 'no'})

        assert 'carModel' not in result.visible
        assert 'carModel' not in result.required
        assert result.hidden == {'carModel'}

    def test_hide_rule(self):
        fields = [make_field('discount', required=True, logic={'rules': [rule('member', 'EQUALS', 'no', 'HIDE')]})]

        hidden = classify(fields, {'member': 'no'})
        assert hidden.visible == set()
        assert hidden.hidden == {'discount'}

        shown = classify(fields, {'member': 'yes'})
        assert shown.visible == {'discount'}
        assert shown.required == {'discount'}

    def test_first_rule_action_decides(self):
        logic = {
            'logic': 'AND',
            'rules': [
                rule('a', 'EQUALS', '1', 'SKIP'),
                rule('b', 'EQUALS', '2', 'REQUIRE'),
            ],
        }
        result = classify([make_field('target', logic=logic)], {'a': '1', 'b': '2'})

        assert result.skipped == {'target'}
        assert result.required == set()

    def test_missing_action_defaults_to_show(self):
        logic = {'rules': [{'fieldId': 'a', 'operator': 'EQUALS', 'value': '1'}]}
        result = classify([make_field('target', required=True, logic=logic)], {'a': '1'})

        assert result.visible == {'target'}
        assert result.required == {'target'}

    def test_lowercase_action(self):
        logic = {'rules': [rule('a', 'equals', '1', 'skip')]}
        result = classify([make_field('target', logic=logic)], {'a': '1'})

        assert result.skipped == {'target'}

    def test_classify_never_raises_on_malformed_logic(self):
        fields = [
            make_field('a', logic={'rules': 'nope'}),
            make_field('b', logic={'rules': [None, 42]}),
            make_field('c', logic=['not', 'a', 'dict']),
        ]
        result = classify(fields, {'x': object()})

        assert result.visible == {'a', 'b', 'c'}


class TestValidateLogic:

    def test_valid_logic(self):
        logic = {'logic': 'OR', 'rules': [rule('a', 'EQUALS', '1'), {'fieldId': 'b', 'operator': 'IS_EMPTY'}]}
        assert validate_logic(logic) == []
        assert validate_logic(None) == []

    def test_invalid_logic(self):
        logic = {
            'logic': 'XOR',
            'rules': [
                {'operator': 'EQUALS', 'value': 1},
                {'fieldId': 'a', 'operator': 'BETWEEN', 'value': [1, 2]},
                {'fieldId': 'a', 'operator': 'GREATER_THAN'},
                {'fieldId': 'a', 'operator': 'EQUALS', 'value': 1, 'action': 'JUMP'},
            ],
        }
        errors = validate_logic(logic)

        assert any('logic gate' in e for e in errors)
        assert any("rules[0]" in e and 'fieldId' in e for e in errors)
        assert any("rules[1]" in e and 'Unknown operator' in e for e in errors)
        assert any("rules[2]" in e and 'value' in e for e in errors)
        assert any("rules[3]" in e and 'Unknown action' in e for e in errors)

    def test_rules_must_be_a_list(self):
        assert validate_logic({'rules': 'x'}) == ["root: 'rules' must be a list"]


class TestIsEmpty:

    def test_is_empty(self):
        assert is_empty(None)
        assert is_empty('')
        assert is_empty('  ')
        assert is_empty([])
        assert is_empty({})
        assert not is_empty(0)
        assert not is_empty(False)
        assert not is_empty('x')


class TestValidateField:
    """Typed validation of single values."""

    def test_required_empty_returns_single_error(self):
        result = validate_field('Name', FieldType.TEXT, '', {'minLength': 3, 'pattern': '^[a-z]+$'}, required=True)

        assert result.is_valid is False
        assert len(result.errors) == 1
        assert 'required' in result.errors[0]

    def test_required_empty_list(self):
        result = validate_field('Colors', FieldType.CHECKBOX, [], {}, required=True)
        assert len(result.errors) == 1

    def test_optional_missing_value_passes(self):
        result = validate_field('Name', FieldType.TEXT, None, {'minLength': 3}, required=False)

        assert result.is_valid is True
        assert result.errors == []

    def test_optional_empty_skips_all_rules(self):
        result = validate_field('Email', FieldType.EMAIL, '', {'pattern': '^x$'})
        assert result.is_valid is True

    def test_text_length(self):
        rules = {'minLength': 3, 'maxLength': 5}

        assert validate_field('Code', FieldType.TEXT, 'ab', rules).is_valid is False
        assert validate_field('Code', FieldType.TEXTAREA, 'abcdef', rules).is_valid is False
        assert validate_field('Code', FieldType.TEXT, 'abcd', rules).is_valid is True

    def test_number_range(self):
        rules = {'min': 1, 'max': 5}

        too_big = validate_field('Score', FieldType.NUMBER, '7', rules)
        assert too_big.is_valid is False
        assert 'greater than 5' in too_big.errors[0]

        not_a_number = validate_field('Score', FieldType.NUMBER, 'abc', rules)
        assert not_a_number.is_valid is False
        assert 'valid number' in not_a_number.errors[0]

        assert validate_field('Score', FieldType.NUMBER, '3', rules).is_valid is True
        assert validate_field('Score', FieldType.NUMBER, 0, {'min': 1}).is_valid is False

    def test_number_rejects_non_finite(self):
        assert validate_field('Score', FieldType.NUMBER, 'inf', {}).is_valid is False
        assert validate_field('Score', FieldType.NUMBER, 'NaN', {}).is_valid is False

    def test_number_rejects_digit_separators(self):
        assert validate_field('Score', FieldType.NUMBER, '1_000', {}).is_valid is False
        assert validate_field('Score', FieldType.NUMBER, '٣', {}).is_valid is False
        assert validate_field('Score', FieldType.NUMBER, ' 1000 ', {}).is_valid is True

    def test_email(self):
        assert validate_field('Email', FieldType.EMAIL, 'user@example.com').is_valid is True
        assert validate_field('Email', FieldType.EMAIL, 'user@example').is_valid is False
        assert validate_field('Contact', FieldType.TEXT, 'nope', {'email': True}).is_valid is False

    def test_phone(self):
        assert validate_field('Phone', FieldType.PHONE, '+966 50 1234567').is_valid is True
        assert validate_field('Phone', FieldType.PHONE, '0501234567').is_valid is True
        assert validate_field('Phone', FieldType.PHONE, 'call me').is_valid is False
        assert validate_field('Contact', FieldType.TEXT, 'call me', {'phone': True}).is_valid is False

    def test_url_flag(self):
        assert validate_field('Site', FieldType.TEXT, 'https://example.com/a', {'url': True}).is_valid is True
        assert validate_field('Site', FieldType.TEXT, 'not a url', {'url': True}).is_valid is False

    def test_pattern(self):
        rules = {'pattern': '^[A-Z]{3}$'}

        assert validate_field('Code', FieldType.TEXT, 'ABC', rules).is_valid is True
        assert validate_field('Code', FieldType.TEXT, 'abc', rules).is_valid is False

    def test_pattern_custom_message(self):
        result = validate_field('Code', FieldType.TEXT, 'abc', {'pattern': '^[0-9]+$', 'customMessage': 'Digits only'})
        assert result.errors == ['Digits only']

    def test_malformed_pattern_is_skipped(self, caplog):
        result = validate_field('Code', FieldType.TEXT, 'anything', {'pattern': '([a-z'})

        assert result.is_valid is True
        assert 'Invalid regex pattern' in caplog.text

    def test_catastrophic_pattern_is_skipped(self):
        result = validate_field('Code', FieldType.TEXT, 'a' * 40 + '!', {'pattern': '^(a+)+$'})
        assert result.is_valid is True

    def test_overlong_pattern_is_skipped(self, settings):
        settings.FORMS_MAX_PATTERN_LENGTH = 10
        result = validate_field('Code', FieldType.TEXT, 'abc', {'pattern': '^[0-9]{1,3}[0-9]{1,3}$'})
        assert result.is_valid is True

    def test_pattern_input_budget(self, settings):
        settings.FORMS_MAX_PATTERN_INPUT_LENGTH = 5
        result = validate_field('Code', FieldType.TEXT, 'abcdefgh', {'pattern': '^[0-9]+$'})
        assert result.is_valid is True

    def test_date(self):
        rules = {'min': '2024-01-01', 'max': '2024-12-31'}

        assert validate_field('Day', FieldType.DATE, '2024-01-01', rules).is_valid is True
        assert validate_field('Day', FieldType.DATE, '2024-12-31', rules).is_valid is True
        assert validate_field('Day', FieldType.DATE, '2023-12-31', rules).is_valid is False
        assert validate_field('Day', FieldType.DATE, '2025-01-01', rules).is_valid is False
        assert validate_field('Day', FieldType.DATE, 'not-a-date').is_valid is False
        assert validate_field('Day', FieldType.DATE, '2024-02-30').is_valid is False

    def test_datetime(self):
        rules = {'min': '2024-06-01T09:00:00Z'}

        assert validate_field('At', FieldType.DATETIME, '2024-06-01T10:30:00Z', rules).is_valid is True
        assert validate_field('At', FieldType.DATETIME, '2024-06-01T08:00:00Z', rules).is_valid is False

    def test_unparsable_date_bound_is_ignored(self):
        assert validate_field('Day', FieldType.DATE, '2024-05-05', {'min': 'soon'}).is_valid is True

    def test_choices(self):
        select = make_field('size', field_type=FieldType.SELECT, options=['S', 'M', 'L'])
        checkbox = make_field('extras', field_type=FieldType.CHECKBOX, options=[
            {'label': 'Cheese', 'value': 'cheese'}, {'label': 'Ham', 'value': 'ham'}
        ])

        assert validate_field('Size', FieldType.SELECT, 'M', form_field=select).is_valid is True
        assert validate_field('Size', FieldType.SELECT, 'XL', form_field=select).is_valid is False
        assert validate_field('Extras', FieldType.CHECKBOX, ['ham'], form_field=checkbox).is_valid is True
        assert validate_field('Extras', FieldType.CHECKBOX, ['ham', 'egg'], form_field=checkbox).is_valid is False

    def test_choices_without_options_are_unconstrained(self):
        free = make_field('pick', field_type=FieldType.RADIO, options=[])
        assert validate_field('Pick', FieldType.RADIO, 'anything', form_field=free).is_valid is True

    def test_file_constraints(self):
        upload = make_field(
            'cv', field_type=FieldType.FILE,
            allowed_file_types=['pdf', 'image/*'], max_file_size=1000, max_files=1
        )

        ok = {'name': 'cv.pdf', 'type': 'application/pdf', 'size': 500}
        assert validate_field('CV', FieldType.FILE, ok, form_field=upload).is_valid is True

        photo = {'name': 'me.jpg', 'type': 'image/jpeg', 'size': 10}
        assert validate_field('CV', FieldType.FILE, photo, form_field=upload).is_valid is True

        wrong_type = {'name': 'cv.exe', 'type': 'application/octet-stream', 'size': 10}
        assert validate_field('CV', FieldType.FILE, wrong_type, form_field=upload).is_valid is False

        too_big = {'name': 'cv.pdf', 'type': 'application/pdf', 'size': 5000}
        assert validate_field('CV', FieldType.FILE, too_big, form_field=upload).is_valid is False

        too_many = validate_field('CV', FieldType.FILE, [ok, ok], form_field=upload)
        assert too_many.is_valid is False

    def test_validation_rules_as_json_string(self):
        assert validate_field('Code', FieldType.TEXT, 'ab', '{"minLength": 3}').is_valid is False


class TestValidateSubmission:

    def test_errors_keyed_by_field_id(self):
        fields = [
            make_field('f1', label='Name', required=True),
            make_field('f2', label='Age', field_type=FieldType.NUMBER, validation_rules={'min': 18}),
            make_field('f3', label='Email', field_type=FieldType.EMAIL),
        ]
        result = validate_submission(fields, {'f2': '12', 'f3': 'ok@example.com'})

        assert result.is_valid is False
        assert set(result.errors) == {'f1', 'f2'}
        assert result.error_messages == flatten_errors(result.errors)
        assert len(result.error_messages) == 2

    def test_answers_resolved_by_label(self):
        fields = [make_field('f1', label='Name', required=True)]
        assert validate_submission(fields, {'Name': 'Alice'}).is_valid is True

    def test_required_ids_override_static_flag(self):
        fields = [make_field('f1', label='Name', required=True), make_field('f2', label='Why')]
        result = validate_submission(fields, {}, required_ids={'f2'})

        assert set(result.errors) == {'f2'}

    def test_only_given_fields_are_validated(self):
        result = validate_submission([], {'anything': ''})
        assert result.is_valid is True

    def test_resolve_answer_prefers_id(self):
        field = make_field('f1', label='Name')

        assert resolve_answer({'f1': 'by id', 'Name': 'by label'}, field) == ('f1', 'by id')
        assert resolve_answer({'Name': 'by label'}, field) == ('Name', 'by label')
        assert resolve_answer({}, field) == (None, None)


# ============================================================================
# Persistence-backed tests
# ============================================================================

@pytest.fixture
def owner(db):
    return get_user_model().objects.create_user(username='owner', password='pass', email='owner@example.com')


@pytest.fixture
def form(owner):
    return Form.objects.create(owner=owner, title='Survey', slug='survey', status=FormStatus.PUBLISHED)


def steps_payload():
    return [
        {
            'title': 'About you',
            'order': 0,
            'fields': [
                {'label': 'Name', 'type': FieldType.TEXT, 'required': True, 'order': 0},
                {'label': 'Age', 'type': FieldType.NUMBER, 'order': 1, 'validation_rules': {'min': 0}},
            ],
        },
        {
            'title': 'Feedback',
            'order': 1,
            'fields': [
                {'label': 'Comment', 'type': FieldType.TEXTAREA, 'order': 0},
            ],
        },
    ]


@pytest.mark.django_db
class TestFormSteps:

    def test_replace_creates_steps_and_fields(self, form):
        steps = update_form_steps(form, steps_payload())
        form.refresh_from_db()

        assert form.is_multi_step is True
        assert [s.title for s in steps] == ['About you', 'Feedback']
        assert [f.label for f in steps[0].fields.all()] == ['Name', 'Age']
        assert Field.objects.filter(form=form).count() == 3
        assert Field.objects.get(form=form, label='Name').required is True

    def test_replace_regenerates_ids(self, form):
        update_form_steps(form, steps_payload())
        old_field_ids = set(Field.objects.filter(form=form).values_list('id', flat=True))
        old_step_ids = set(Step.objects.filter(form=form).values_list('id', flat=True))

        update_form_steps(form, steps_payload())

        assert old_field_ids.isdisjoint(Field.objects.filter(form=form).values_list('id', flat=True))
        assert old_step_ids.isdisjoint(Step.objects.filter(form=form).values_list('id', flat=True))
        assert Field.objects.filter(form=form).count() == 3

    def test_replace_with_no_steps_clears_form(self, form):
        update_form_steps(form, steps_payload())
        update_form_steps(form, [])
        form.refresh_from_db()

        assert form.is_multi_step is False
        assert not Step.objects.filter(form=form).exists()
        assert not Field.objects.filter(form=form).exists()

    def test_replace_removes_single_page_fields(self, form):
        Field.objects.create(form=form, label='Loose', type=FieldType.TEXT, order=0)
        update_form_steps(form, steps_payload())

        assert not Field.objects.filter(form=form, label='Loose').exists()

    def test_get_form_steps_is_ordered(self, form):
        payload = steps_payload()
        payload[0]['order'], payload[1]['order'] = 5, 1
        update_form_steps(form, payload)

        assert [s.title for s in get_form_steps(form)] == ['Feedback', 'About you']


@pytest.mark.django_db
class TestFormModel:

    def test_webhook_secret_is_encrypted_at_rest(self, form):
        form.webhook_secret = 's3cret'
        form.save()
        form.refresh_from_db()

        assert form.webhook_secret_encrypted
        assert 's3cret' not in form.webhook_secret_encrypted
        assert form.webhook_secret == 's3cret'

    def test_empty_webhook_secret(self, form):
        form.webhook_secret = ''
        assert form.webhook_secret is None

    def test_submission_counter(self, form):
        form.increment_submission_count()
        form.increment_submission_count()
        form.decrement_submission_count()

        assert form.submission_count == 1

    def test_counter_never_goes_negative(self, form):
        form.decrement_submission_count()
        assert form.submission_count == 0

    def test_with_fields_orders_fields(self, form):
        Field.objects.create(form=form, label='Second', type=FieldType.TEXT, order=2)
        Field.objects.create(form=form, label='First', type=FieldType.TEXT, order=1)

        loaded = Form.objects.with_fields(form.id)
        assert [f.label for f in loaded.fields.all()] == ['First', 'Second']


@pytest.mark.django_db
class TestFormAPI:

    @pytest.fixture
    def client(self, owner):
        client = APIClient()
        client.force_authenticate(owner)
        return client

    def test_create_form(self, client, owner):
        response = client.post('/api/forms/', {
            'title': 'Signup',
            'slug': 'signup',
            'webhook_secret': 'abc',
        }, format='json')

        assert response.status_code == 201
        created = Form.objects.get(slug='signup')
        assert created.owner == owner
        assert created.webhook_secret == 'abc'
        assert 'webhook_secret' not in response.data
        assert response.data['has_webhook_secret'] is True

    def test_private_webhook_url_rejected(self, client):
        response = client.post('/api/forms/', {
            'title': 'Bad', 'slug': 'bad',
            'webhook_enabled': True, 'webhook_url': 'http://10.0.0.5/hook',
        }, format='json')

        assert response.status_code == 400
        assert 'webhook_url' in response.data

    def test_replace_and_get_steps(self, client, form):
        response = client.put(f'/api/forms/{form.id}/steps/', {'steps': steps_payload()}, format='json')

        assert response.status_code == 200
        assert [s['title'] for s in response.data] == ['About you', 'Feedback']
        assert len(response.data[0]['fields']) == 2

        response = client.get(f'/api/forms/{form.id}/steps/')
        assert response.status_code == 200
        assert len(response.data) == 2

    def test_steps_reject_invalid_logic(self, client, form):
        payload = steps_payload()
        payload[0]['fields'][1]['conditional_logic'] = {'rules': [{'fieldId': 'x', 'operator': 'NOPE'}]}

        response = client.put(f'/api/forms/{form.id}/steps/', {'steps': payload}, format='json')
        assert response.status_code == 400

    def test_steps_reject_unsafe_pattern(self, client, form):
        payload = steps_payload()
        payload[0]['fields'][0]['validation_rules'] = {'pattern': '(a+)+$'}

        response = client.put(f'/api/forms/{form.id}/steps/', {'steps': payload}, format='json')
        assert response.status_code == 400

    def test_other_owner_cannot_see_form(self, form):
        intruder = get_user_model().objects.create_user(username='intruder', password='pass')
        client = APIClient()
        client.force_authenticate(intruder)

        assert client.get(f'/api/forms/{form.id}/steps/').status_code == 404
        assert client.put(f'/api/forms/{form.id}/steps/', {'steps': []}, format='json').status_code == 404

    def test_webhook_test_call(self, client, form, mocker):
        post = mocker.patch('requests.Session.post', return_value=mocker.Mock(status_code=200))

        response = client.post(
            f'/api/forms/{form.id}/webhook/test/',
            {'url': 'https://hooks.example.com/in', 'secret': 'k'},
            format='json'
        )

        assert response.status_code == 200
        assert response.data['success'] is True
        headers = post.call_args.kwargs['headers']
        assert headers['X-Webhook-Signature'].startswith('sha256=')

    def test_webhook_test_blocks_private_url(self, client, form, mocker):
        post = mocker.patch('requests.Session.post')

        response = client.post(
            f'/api/forms/{form.id}/webhook/test/', {'url': 'http://127.0.0.1/hook'}, format='json'
        )

        assert response.status_code == 400
        post.assert_not_called()

    def test_webhook_test_with_undecryptable_secret(self, client, form, settings, mocker):
        form.webhook_secret = 'old-secret'
        form.save()
        settings.FIELD_ENCRYPTION_KEY = Fernet.generate_key().decode()
        post = mocker.patch('requests.Session.post')

        response = client.post(
            f'/api/forms/{form.id}/webhook/test/', {'url': 'https://hooks.example.com/in'}, format='json'
        )

        assert response.status_code == 400
        assert response.data['success'] is False
        post.assert_not_called()
