"""
Realtime notifier port.

Fire-and-forget push to a form owner's active sessions. The default
implementation keeps a short per-user inbox in the Django cache, which
a polling or socket layer can drain.
"""

from typing import Any, Dict, List
import logging

from django.conf import settings
from django.core.cache import cache
from django.utils.module_loading import import_string
from django.utils.translation import gettext as _, override

logger = logging.getLogger(__name__)

FORM_SUBMISSION = 'FORM_SUBMISSION'


class RealtimeNotifier:
    """Outbound port: at-most-once, best-effort"""

    def notify(self, user_id, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class CacheRealtimeNotifier(RealtimeNotifier):
    """
    Per-user notification inbox stored in the cache.

    Each notification gets its own slot numbered by an atomic cache.incr
    sequence, so concurrent writers never overwrite each other. A drain
    cursor marks the last slot handed out; only the newest INBOX_SIZE
    slots are kept visible.
    """

    INBOX_SIZE = 50
    INBOX_TIMEOUT = 86400  # 24 hours

    @staticmethod
    def inbox_key(user_id) -> str:
        return f'realtime_inbox:{user_id}'

    def notify(self, user_id, payload: Dict[str, Any]) -> None:
        key = self.inbox_key(user_id)
        cache.add(f'{key}:seq', 0, timeout=None)
        seq = cache.incr(f'{key}:seq')
        cache.set(f'{key}:{seq}', payload, timeout=self.INBOX_TIMEOUT)

    def pending(self, user_id) -> List[Dict[str, Any]]:
        return self._read(user_id)[1]

    def drain(self, user_id) -> List[Dict[str, Any]]:
        key = self.inbox_key(user_id)
        slot_keys, inbox, head = self._read(user_id)
        # Slots written after `head` was read stay pending
        cache.set(f'{key}:cursor', head, timeout=None)
        cache.delete_many(slot_keys)
        return inbox

    def _read(self, user_id):
        key = self.inbox_key(user_id)
        head = cache.get(f'{key}:seq') or 0
        cursor = cache.get(f'{key}:cursor') or 0
        first = max(cursor + 1, head - self.INBOX_SIZE + 1)
        slot_keys = [f'{key}:{seq}' for seq in range(first, head + 1)]
        found = cache.get_many(slot_keys)
        return slot_keys, [found[slot] for slot in slot_keys if slot in found], head


def get_notifier() -> RealtimeNotifier:
    """Instantiate the configured notifier (FORMS_REALTIME_NOTIFIER)"""
    return import_string(settings.FORMS_REALTIME_NOTIFIER)()


def build_submission_notification(form, submission_id, response_count: int) -> Dict[str, Any]:
    """Owner notification for a new submission, in the form's locale"""
    with override(form.locale or settings.FORMS_DEFAULT_LOCALE):
        title = _('New form response')
        message = _('A new response was received on the form "%(title)s"') % {'title': form.title}

    return {
        'type': FORM_SUBMISSION,
        'title': title,
        'message': message,
        'data': {
            'formId': str(form.id),
            'formTitle': form.title,
            'formSlug': form.slug,
            'submissionId': str(submission_id),
            'responseCount': response_count,
        },
    }
