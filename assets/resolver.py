"""Canonical storage key selection for a product's prepared image."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Optional
from urllib.parse import urlparse


@dataclass(frozen=True)
class PreparedImageKey:
    key: str
    version: Optional[int] = None

    def as_dict(self) -> dict:
        payload: dict = {"key": self.key}
        if self.version is not None:
            payload["version"] = self.version
        return payload


KeyStrategy = Callable[[Any], Optional[PreparedImageKey]]


def key_from_signed_url(url: str) -> Optional[str]:
    """Return the object key of a bucket-style signed URL.

    ``https://storage.googleapis.com/<bucket>/<key>?X-Goog-...`` yields ``<key>``.
    """

    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    parts = [segment for segment in parsed.path.split("/") if segment]
    if len(parts) < 2:
        return None
    return "/".join(parts[1:])


def _numeric_version(asset: Any) -> Optional[int]:
    version = getattr(asset, "prepared_product_image_version", None)
    # bool is an int subclass but never a usable version
    if isinstance(version, bool) or not isinstance(version, int):
        return None
    return version


def _versioned_key(asset: Any) -> Optional[PreparedImageKey]:
    key = getattr(asset, "prepared_image_key", None)
    version = _numeric_version(asset)
    if key and version is not None:
        return PreparedImageKey(key=key, version=version)
    return None


def _bare_key(asset: Any) -> Optional[PreparedImageKey]:
    key = getattr(asset, "prepared_image_key", None)
    if key:
        return PreparedImageKey(key=key)
    return None


def _legacy_url(asset: Any) -> Optional[PreparedImageKey]:
    url = getattr(asset, "prepared_image_url", None)
    if not url:
        return None
    return PreparedImageKey(key=key_from_signed_url(url) or url)


KEY_STRATEGIES: List[KeyStrategy] = [_versioned_key, _bare_key, _legacy_url]


def resolve_key(asset: Any) -> Optional[PreparedImageKey]:
    """Pick the storage key for ``asset``'s prepared image, or ``None``.

    Strategies run in priority order and the first hit wins. The function
    never mutates ``asset`` so retries always see the same key.
    """

    if asset is None:
        return None
    for strategy in KEY_STRATEGIES:
        result = strategy(asset)
        if result is not None:
            return result
    return None
