"""Canonical media locators and legacy path normalisation.

Older clients stored clips as direct paths such as
``audio/categories/fx/clip-<id>.mp3``. Uploads now embed the media id in the
stored file name, so such references can be mapped back to ``/media/<id>``.
This is legacy-compatibility code: anything that does not carry a recognisable
id is returned unchanged.
"""

import re
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import unquote, urlparse

MEDIA_URL_PREFIX = "/media/"

_HEX_ID = r"[0-9a-fA-F]{32}"
_CANONICAL_PATTERN = re.compile(rf"^/media/({_HEX_ID})/?$")
_LEGACY_STEM_PATTERN = re.compile(rf"(?:^|-)({_HEX_ID})$")


def media_url(media_id: str) -> str:
    return f"{MEDIA_URL_PREFIX}{media_id}"


def extract_media_id(reference: Optional[str]) -> Optional[str]:
    """Return the lower-cased media id carried by *reference*, if any."""

    if not reference:
        return None

    path = unquote(urlparse(reference.strip()).path).replace("\\", "/")
    if not path:
        return None

    canonical = _CANONICAL_PATTERN.match(path)
    if canonical:
        return canonical.group(1).lower()

    legacy = _LEGACY_STEM_PATTERN.search(PurePosixPath(path).stem)
    if legacy:
        return legacy.group(1).lower()
    return None


def normalize_media_reference(reference: str) -> str:
    media_id = extract_media_id(reference)
    if media_id is None:
        return reference
    return media_url(media_id)
