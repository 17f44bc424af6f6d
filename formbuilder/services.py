"""
Multi-step field grouping.

Steps are replaced wholesale: there is no diff or merge. Field ids do not
survive a replace, so older submissions resolve their answers by label.
"""

from typing import Any, Dict, List
import logging

from django.db import transaction
from django.db.models import Prefetch

from .models import Field, Form, Step

logger = logging.getLogger(__name__)

FIELD_ATTRIBUTES = (
    'label', 'description', 'type', 'placeholder', 'required', 'options',
    'validation_rules', 'conditional_logic',
    'allowed_file_types', 'max_file_size', 'max_files',
)


def get_form_steps(form: Form):
    """Steps of a form in order, with their fields prefetched in order"""
    return form.steps.order_by('order').prefetch_related(
        Prefetch('fields', queryset=Field.objects.order_by('order'))
    )


def update_form_steps(form: Form, steps: List[Dict[str, Any]]):
    """
    Replace every step and field of a form.

    Args:
        form: Form being edited
        steps: Ordered step definitions, each with an optional `fields` list

    Returns:
        The newly created steps, ordered
    """
    with transaction.atomic():
        Step.objects.filter(form=form).delete()
        Field.objects.filter(form=form).delete()

        form.is_multi_step = len(steps) > 0
        form.save(update_fields=['is_multi_step', 'updated_at'])

        for step_index, step_data in enumerate(steps):
            step = Step.objects.create(
                form=form,
                title=step_data['title'],
                description=step_data.get('description') or '',
                order=_order(step_data, step_index),
            )

            Field.objects.bulk_create([
                Field(
                    form=form,
                    step=step,
                    order=_order(field_data, field_index),
                    **_field_values(field_data),
                )
                for field_index, field_data in enumerate(step_data.get('fields') or [])
            ])

    logger.info(f"Replaced steps of form {form.id}: {len(steps)} step(s)")
    return list(get_form_steps(form))


def _order(data, index):
    order = data.get('order')
    return index if order is None else order


def _field_values(field_data):
    values = {key: field_data[key] for key in FIELD_ATTRIBUTES if field_data.get(key) is not None}
    values.setdefault('required', False)
    return values
