"""Interfaces to services this app consumes but does not own.

Backends are configured by dotted path in settings, the same way Django picks
cache or storage backends:

* ``CUSTOMIZATION_FILE_STORE`` resolves an uploaded design reference to a
  stored file (``get(reference) -> StoredFile | None``).
* ``CUSTOMIZATION_MESSAGE_LOOKUP`` finds the final-design attachment on a chat
  message (``final_design_url(message_id, request) -> str | None``). Backends
  raise ``MessageLookupError`` when the message store cannot be read.
"""

from dataclasses import dataclass
from urllib.parse import urlparse

from django.conf import settings
from django.utils.module_loading import import_string


class MessageLookupError(Exception):
    pass


@dataclass(frozen=True)
class StoredFile:
    reference: str
    url: str
    content_type: str = ""


class UrlFileStore:
    """Accepts references that are already public http(s) URLs."""

    def get(self, reference):
        reference = (reference or "").strip()
        parsed = urlparse(reference)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return None
        return StoredFile(reference=reference, url=reference)


class NullMessageLookup:
    """Used when no messaging backend is wired in; approval falls back to the uploaded file."""

    def final_design_url(self, message_id, request):
        return None


def get_file_store():
    return import_string(settings.CUSTOMIZATION_FILE_STORE)()


def get_message_lookup():
    return import_string(settings.CUSTOMIZATION_MESSAGE_LOOKUP)()
