"""
Attachment blob store.

`BlobStore` is the port the externalizer talks to; the default
implementation keeps blobs in Django's configured file storage, with
folders emulated as directories holding a small marker file whose content
is the folder description.
"""

from dataclasses import dataclass
from typing import List, Optional
import logging
import posixpath
import re

from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.utils.module_loading import import_string
from django.utils.text import get_valid_filename

logger = logging.getLogger(__name__)


@dataclass
class BlobFolder:
    id: str
    name: str
    description: str = ''


@dataclass
class StoredBlob:
    file_id: str
    web_view_link: str
    web_content_link: Optional[str] = None


class BlobStore:
    """Outbound port for attachment storage"""

    def is_connected(self, form) -> bool:
        raise NotImplementedError

    def ensure_form_folder(self, form) -> str:
        """Return the id of the form's root folder, creating it if needed"""
        raise NotImplementedError

    def list_folders(self, parent_id: str) -> List[BlobFolder]:
        raise NotImplementedError

    def create_folder(self, parent_id: str, name: str, description: str = '') -> BlobFolder:
        raise NotImplementedError

    def upload(self, folder_id: str, filename: str, content: bytes, mimetype: str) -> StoredBlob:
        raise NotImplementedError


class DjangoStorageBlobStore(BlobStore):
    """BlobStore over django.core.files.storage"""

    ROOT = 'forms'
    FOLDER_MARKER = '.folder'

    def __init__(self, storage=None):
        self.storage = storage or default_storage

    def is_connected(self, form) -> bool:
        return bool(form.external_storage_enabled)

    def ensure_form_folder(self, form) -> str:
        folder_id = posixpath.join(self.ROOT, str(form.id))
        marker = posixpath.join(folder_id, self.FOLDER_MARKER)
        if not self.storage.exists(marker):
            self.storage.save(marker, ContentFile(form.title.encode('utf-8')))
        return folder_id

    def list_folders(self, parent_id: str) -> List[BlobFolder]:
        try:
            directories, _ = self.storage.listdir(parent_id)
        except FileNotFoundError:
            return []

        folders = []
        for name in sorted(directories):
            folder_id = posixpath.join(parent_id, name)
            folders.append(BlobFolder(id=folder_id, name=name, description=self._description(folder_id)))
        return folders

    def create_folder(self, parent_id: str, name: str, description: str = '') -> BlobFolder:
        folder_id = posixpath.join(parent_id, name)
        self.storage.save(
            posixpath.join(folder_id, self.FOLDER_MARKER),
            ContentFile(description.encode('utf-8'))
        )
        return BlobFolder(id=folder_id, name=name, description=description)

    def upload(self, folder_id: str, filename: str, content: bytes, mimetype: str) -> StoredBlob:
        name = self.storage.save(
            posixpath.join(folder_id, get_valid_filename(filename) or 'file'),
            ContentFile(content)
        )
        try:
            link = self.storage.url(name)
        except (NotImplementedError, ValueError):
            link = ''
        logger.debug(f"Stored {mimetype} blob {name} ({len(content)} bytes)")
        return StoredBlob(file_id=name, web_view_link=link, web_content_link=link or None)

    def _description(self, folder_id: str) -> str:
        marker = posixpath.join(folder_id, self.FOLDER_MARKER)
        if not self.storage.exists(marker):
            return ''
        with self.storage.open(marker, 'rb') as handle:
            return handle.read().decode('utf-8')


class ResponseFolderAllocator:
    """
    Claims the per-submission folder inside a form's root folder.

    A folder whose description equals the submission id is reused;
    otherwise `Response N+1` is created, N being the highest existing
    number. The scan and the create are not atomic: two concurrent
    submissions to one form can compute the same N.
    """

    FOLDER_NAME_RE = re.compile(r'^Response (\d+)$')

    def __init__(self, store: BlobStore):
        self.store = store

    def claim(self, form_folder_id: str, submission_id) -> str:
        submission_id = str(submission_id)
        folders = self.store.list_folders(form_folder_id)

        for folder in folders:
            if folder.description == submission_id:
                return folder.id

        numbers = []
        for folder in folders:
            match = self.FOLDER_NAME_RE.match(folder.name)
            if match:
                numbers.append(int(match.group(1)))

        name = f'Response {max(numbers, default=0) + 1}'
        folder = self.store.create_folder(form_folder_id, name, submission_id)
        logger.info(f"Created response folder {folder.id} for submission {submission_id}")
        return folder.id


def get_blob_store() -> BlobStore:
    """Instantiate the configured blob store (FORMS_BLOB_STORE)"""
    return import_string(settings.FORMS_BLOB_STORE)()
