"""
Attachment Externalizer

Moves inline SIGNATURE / FILE payloads (data URIs, base64) of a submission
into the blob store and replaces them with secure-file descriptors.
Values that already reference a stored blob pass through unchanged.
Failures are per field: the original value is kept and the error logged.
"""

from typing import Any, Dict, Iterable, Optional
import base64
import binascii
import logging
import re
import time

from django.conf import settings

from formbuilder.models import ATTACHMENT_FIELD_TYPES, FieldType
from formbuilder.validation import resolve_answer
from .exceptions import ExternalizationError
from .storage import BlobStore, ResponseFolderAllocator, get_blob_store

logger = logging.getLogger(__name__)

DATA_URI_PREFIX_RE = re.compile(r'^data:[^;,]*;base64,')

REFERENCE_KEYS = ('url', 'secureUrl', 'fileId')

SIGNATURE_EXTENSIONS = {
    'image/png': 'png',
    'image/jpeg': 'jpeg',
    'image/svg+xml': 'svg',
}


def is_base64_image(value: Any) -> bool:
    return isinstance(value, str) and (value.startswith('data:image') or value.startswith('image/'))


def normalize_base64(value: Any) -> Any:
    """`image/png;base64,...` becomes `data:image/png;base64,...`"""
    if isinstance(value, str) and not value.startswith('data:') and ';base64,' in value:
        return f'data:{value}'
    return value


def is_reference(value: Any) -> bool:
    return isinstance(value, dict) and any(value.get(key) for key in REFERENCE_KEYS)


def decode_data_uri(value: str) -> bytes:
    try:
        return base64.b64decode(DATA_URI_PREFIX_RE.sub('', value, count=1), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ExternalizationError(f'Inline payload is not valid base64: {e}') from e


def signature_mimetype(value: str) -> str:
    if 'image/jpeg' in value:
        return 'image/jpeg'
    if 'image/svg' in value:
        return 'image/svg+xml'
    return 'image/png'


class AttachmentExternalizer:
    """
    Usage:
        externalizer = AttachmentExternalizer()
        data = externalizer.externalize(form, form.fields.all(), data, submission_id)
    """

    def __init__(self, store: Optional[BlobStore] = None):
        self.store = store or get_blob_store()
        self.allocator = ResponseFolderAllocator(self.store)

    def externalize(self, form, fields: Iterable[Any], data: Dict[str, Any], submission_id) -> Dict[str, Any]:
        """
        Return a copy of data with inline attachments replaced by descriptors.
        Data is returned unchanged when the form has no connected storage.
        """
        processed = dict(data)
        if not self.store.is_connected(form):
            return processed

        folder = _LazyFolder(self, form, submission_id)

        for form_field in fields:
            if form_field.type not in ATTACHMENT_FIELD_TYPES:
                continue

            key, value = resolve_answer(data, form_field)
            if key is None or not value:
                continue

            try:
                if form_field.type == FieldType.SIGNATURE:
                    if is_base64_image(value):
                        processed[key] = self._externalize_signature(form, value, submission_id, folder)
                else:
                    processed[key] = self._externalize_files(form, value, folder)
            except Exception as e:
                logger.error(
                    f"Externalization failed for field {form_field.id} of submission {submission_id}: {e}"
                )
                processed[key] = value

        return processed

    def descriptor(self, form, blob) -> Dict[str, Any]:
        return {
            'type': 'secure_file',
            'fileId': blob.file_id,
            'formId': str(form.id),
            'webViewLink': blob.web_view_link,
            'secureUrl': self.secure_url(form, blob.file_id),
        }

    @staticmethod
    def secure_url(form, file_id: str) -> str:
        base = settings.FORMS_PUBLIC_API_URL.rstrip('/')
        return f'{base}/api/submissions/forms/{form.id}/files/{file_id}'

    def _externalize_signature(self, form, value: str, submission_id, folder) -> Dict[str, Any]:
        payload = normalize_base64(value)
        mimetype = signature_mimetype(payload)
        filename = f'signature_{submission_id}_{int(time.time() * 1000)}.{SIGNATURE_EXTENSIONS[mimetype]}'

        content = decode_data_uri(payload)
        blob = self.store.upload(folder.id, filename, content, mimetype)
        return self.descriptor(form, blob)

    def _externalize_files(self, form, value, folder):
        files = value if isinstance(value, list) else [value]
        results = []

        for item in files:
            if not isinstance(item, dict) or is_reference(item):
                results.append(item)
                continue

            payload = normalize_base64(item.get('data'))
            if not (isinstance(payload, str) and payload.startswith('data:')):
                results.append(item)
                continue

            filename = item.get('name') or item.get('originalName') or f'file_{int(time.time() * 1000)}'
            mimetype = item.get('type') or item.get('mimeType') or 'application/octet-stream'

            content = decode_data_uri(payload)
            blob = self.store.upload(folder.id, filename, content, mimetype)
            results.append({
                'name': filename,
                'type': mimetype,
                'size': item.get('size'),
                **{k: v for k, v in self.descriptor(form, blob).items() if k != 'type'},
            })

        return results if isinstance(value, list) else results[0]


class _LazyFolder:
    """Per-submission folder, claimed on first upload only"""

    def __init__(self, externalizer: AttachmentExternalizer, form, submission_id):
        self._externalizer = externalizer
        self._form = form
        self._submission_id = submission_id
        self._id = None

    @property
    def id(self) -> str:
        if self._id is None:
            store = self._externalizer.store
            form_folder = store.ensure_form_folder(self._form)
            self._id = self._externalizer.allocator.claim(form_folder, self._submission_id)
        return self._id
