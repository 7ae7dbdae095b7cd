"""
Attachment field controller.

An attachment field holds one of three things:

    LocalFile   a freshly chosen file, sent as a replacement
    None        removal intent, the existing remote file is deleted
    UNCHANGED   keep whatever the server has, the field is left out of the payload

A remote URL string is what an update form loads; leaving it untouched maps
to UNCHANGED at payload time.
"""

from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Any, Callable, Dict, List, Optional
import logging
import mimetypes
import uuid

from .exceptions import AttachmentError
from .field_descriptor import FieldDescriptor, FieldKind

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 5 * 1024 * 1024
PREVIEW_SCHEME = "preview://"


class _Unchanged:
    """Sentinel for 'keep the existing remote value'."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNCHANGED"

    def __bool__(self) -> bool:
        return False


UNCHANGED = _Unchanged()


@dataclass(frozen=True, eq=False)
class LocalFile:
    """A file chosen on this client and not uploaded yet."""
    name: str
    content_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_upload(cls, upload) -> "LocalFile":
        """Build from a Streamlit ``UploadedFile``."""
        content_type = getattr(upload, 'type', None) or mimetypes.guess_type(upload.name)[0] or 'application/octet-stream'
        return cls(name=upload.name, content_type=content_type, data=upload.getvalue())


class PreviewRegistry:
    """
    Issues transient preview handles for local files.

    A handle stays resolvable until it is revoked; the controller revokes it
    as soon as its file stops being the bound value.
    """

    def __init__(self):
        self._previews: Dict[str, LocalFile] = {}

    def create(self, file: LocalFile) -> str:
        handle = f"{PREVIEW_SCHEME}{uuid.uuid4().hex}"
        self._previews[handle] = file
        return handle

    def resolve(self, handle: str) -> Optional[LocalFile]:
        return self._previews.get(handle)

    def revoke(self, handle: str) -> bool:
        return self._previews.pop(handle, None) is not None

    def revoke_all(self) -> None:
        self._previews.clear()

    @property
    def active_handles(self) -> List[str]:
        return list(self._previews)

    def __len__(self) -> int:
        return len(self._previews)


def mime_matches(file: LocalFile, accept: List[str]) -> bool:
    """
    Check a file against an accept list.

    Entries are MIME patterns (``image/*``, ``application/pdf``) or file
    extensions (``.pdf``). An empty list accepts everything.
    """
    if not accept:
        return True
    content_type = (file.content_type or '').lower()
    file_name = file.name.lower()
    for pattern in accept:
        pattern = pattern.strip().lower()
        if pattern.startswith('.'):
            if file_name.endswith(pattern):
                return True
        elif fnmatch(content_type, pattern):
            return True
    return False


def is_remote_value(value: Any) -> bool:
    return isinstance(value, str) and value != ''


def attachment_payload_value(value: Any, original: Any) -> Any:
    """
    Map a bound attachment value to what the payload carries.

    Returns:
        The LocalFile to replace, None to remove an existing remote file,
        UNCHANGED otherwise
    """
    if isinstance(value, LocalFile):
        # a file already sent with the previous submission is the baseline
        return UNCHANGED if value is original else value
    if value is None and is_remote_value(original):
        return None
    return UNCHANGED


def check_attachment_presence(descriptor: FieldDescriptor, value: Any) -> Optional[str]:
    """Required attachments need a chosen file or a remote value that was kept."""
    if not descriptor.required or descriptor.read_only:
        return None
    if isinstance(value, LocalFile) or is_remote_value(value):
        return None
    return f"{descriptor.display_label} is required"


class AttachmentFieldController:
    """
    Controls one file or image field.

    Args:
        descriptor: The attachment field
        value: Currently bound value
        original: Remote value loaded with the entity, if any
        on_change: Called with the new bound value after choose/remove/restore
        registry: Preview handle registry, shared per form
        max_size: Size limit used when the descriptor sets none
    """

    def __init__(self, descriptor: FieldDescriptor, value: Any = None, original: Any = None,
                 on_change: Optional[Callable[[Any], None]] = None,
                 registry: Optional[PreviewRegistry] = None,
                 max_size: int = DEFAULT_MAX_SIZE):
        self.descriptor = descriptor
        self.value = value
        self.original = original
        self.on_change = on_change
        self.registry = registry if registry is not None else PreviewRegistry()
        self.max_size = descriptor.constraints.max_size or max_size
        if descriptor.constraints.accept:
            self.accept = list(descriptor.constraints.accept)
        elif descriptor.kind == FieldKind.IMAGE:
            self.accept = ["image/*"]
        else:
            self.accept = []
        self.error: Optional[str] = None
        self._preview_handle: Optional[str] = None
        self._sync_preview()

    @property
    def read_only(self) -> bool:
        return self.descriptor.read_only

    @property
    def preview(self) -> Optional[str]:
        """Preview handle of a local file, or the remote URL itself."""
        if isinstance(self.value, LocalFile):
            return self._preview_handle
        if is_remote_value(self.value):
            return self.value
        return None

    @property
    def has_remote_original(self) -> bool:
        return is_remote_value(self.original)

    def validate(self, file: LocalFile) -> None:
        """
        Raises:
            AttachmentError: When the file is too large or of a type not accepted
        """
        if file.size > self.max_size:
            raise AttachmentError(
                f"File size exceeds {self.max_size / (1024 * 1024):g}MB limit",
                self.descriptor.name, file.name
            )
        if not mime_matches(file, self.accept):
            if self.accept == ["image/*"]:
                message = "Only image files are allowed"
            else:
                message = f"File type '{file.content_type}' is not allowed"
            raise AttachmentError(message, self.descriptor.name, file.name)

    def choose(self, file: LocalFile) -> bool:
        """
        Accept a newly chosen file as replacement.

        Returns:
            True when the file was accepted; otherwise ``error`` holds the reason
        """
        if self.read_only:
            return False
        try:
            self.validate(file)
        except AttachmentError as e:
            self.error = e.message
            logger.info(f"Rejected file '{file.name}' for field '{self.descriptor.name}': {e.message}")
            return False
        self.error = None
        self._bind(file)
        return True

    def remove(self) -> None:
        """Set removal intent."""
        if self.read_only:
            return
        self.error = None
        self._bind(None)

    def restore(self) -> None:
        """Undo a replace or remove and keep the remote original."""
        if self.read_only:
            return
        self.error = None
        self._bind(self.original)

    def set_value(self, value: Any) -> None:
        """Follow a value changed by the form (reset, reload) without notifying."""
        if value is self.value:
            return
        self.value = value
        self._sync_preview()

    def payload_value(self) -> Any:
        return attachment_payload_value(self.value, self.original)

    def close(self) -> None:
        """Unmount: release the preview of the bound file."""
        self._release_preview()

    def _bind(self, value: Any) -> None:
        self.value = value
        self._sync_preview()
        if self.on_change is not None:
            self.on_change(value)

    def _sync_preview(self) -> None:
        # one preview per bound file, released as soon as the value changes
        current = self.registry.resolve(self._preview_handle) if self._preview_handle else None
        if current is not None and current is self.value:
            return
        self._release_preview()
        if isinstance(self.value, LocalFile):
            self._preview_handle = self.registry.create(self.value)

    def _release_preview(self) -> None:
        if self._preview_handle is not None:
            self.registry.revoke(self._preview_handle)
            self._preview_handle = None
