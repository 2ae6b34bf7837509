"""Artifact URL extraction from provider results.

Provider results are not schema-stable. The same video can come back as a
bare URL, ``{"video": "..."}``, ``{"video": {"url": "..."}}``,
``{"video": {"file": {"url": "..."}}}``, nested under ``data``/``output``, or
wrapped in a backend ``{"success": true, ...}`` envelope. Decoding runs an
ordered tuple of extractors; the first one that finds candidates wins.
Supporting a new shape means adding a field name or an extractor.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from genflow.errors import NoArtifactFound
from genflow.utils.logging import get_logger
from genflow.utils.text import preview_payload


logger = get_logger('decoder')

Extractor = Callable[[Any, str], Optional[List[str]]]

URL_FIELDS: Dict[str, Tuple[str, ...]] = {
    'image': ('images', 'image', 'image_url', 'output_image'),
    'video': ('video', 'video_url', 'videos', 'output_video'),
    'model3d': ('model_glb', 'glb', 'model_urls', 'model_mesh', 'model_file'),
    'audio': ('audio', 'audio_file', 'audio_url', 'output_audio'),
    'weights': ('diffusers_lora_file', 'lora_file', 'weights_file'),
}
GENERIC_FIELDS = ('url', 'file', 'urls', 'result_urls', 'resultUrls')
WRAPPER_KEYS = ('data', 'output', 'result')
KIND_HINTS: Dict[str, Tuple[str, ...]] = {
    'image': ('.png', '.jpg', '.jpeg', '.webp', '.gif', 'image'),
    'video': ('.mp4', '.webm', '.mov', 'video'),
    'model3d': ('.glb', '.gltf', '.obj', '.fbx', '.usdz', 'model', 'mesh'),
    'audio': ('.mp3', '.wav', '.flac', '.ogg', '.m4a', 'audio'),
    'weights': ('.safetensors', 'lora', 'weights'),
}
# Hosts that only ever serve generated media.
MEDIA_HOST_HINTS = ('fal.media', 'storage.googleapis.com')
MAX_SEARCH_DEPTH = 3


def parse_json_body(text: str) -> Any:
    """Parse a provider body, refusing HTML error pages and other non-JSON."""
    stripped = (text or '').strip()
    if not stripped:
        raise ValueError('empty response body')
    if stripped.startswith('<'):
        raise ValueError('non-json response body (html)')
    return json.loads(stripped)


def is_valid_url(value: str) -> bool:
    if not value or any(ch.isspace() for ch in value):
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc) and bool(parsed.hostname)


def _looks_like_url(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower().startswith(('http://', 'https://'))


def _maybe_json(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith(('{', '[')):
            try:
                return json.loads(stripped)
            except ValueError:
                return value
    return value


def _as_urls(value: Any) -> List[str]:
    value = _maybe_json(value)
    if isinstance(value, str):
        cleaned = value.strip()
        return [cleaned] if cleaned else []
    if isinstance(value, list):
        urls: List[str] = []
        for item in value:
            urls.extend(_as_urls(item))
        return urls
    if isinstance(value, dict):
        if 'url' in value:
            return _as_urls(value['url'])
        if isinstance(value.get('file'), dict):
            return _as_urls(value['file'])
        # e.g. model_urls: {"glb": {"url": ...}, "obj": {"url": ...}}
        urls = []
        for item in value.values():
            if isinstance(item, dict) and ('url' in item or 'file' in item):
                urls.extend(_as_urls(item))
        return urls
    return []


def bare_url(payload: Any, kind: str) -> Optional[List[str]]:
    if _looks_like_url(payload):
        return [payload.strip()]
    return None


def direct_fields(payload: Any, kind: str) -> Optional[List[str]]:
    if not isinstance(payload, dict):
        return None
    for name in URL_FIELDS.get(kind, ()) + GENERIC_FIELDS:
        if name in payload:
            urls = _as_urls(payload[name])
            if urls:
                return urls
    return None


def wrapped_fields(payload: Any, kind: str) -> Optional[List[str]]:
    if not isinstance(payload, dict):
        return None
    for wrapper in WRAPPER_KEYS:
        inner = _maybe_json(payload.get(wrapper))
        if inner is None:
            continue
        found = bare_url(inner, kind) or direct_fields(inner, kind)
        if found:
            return found
    return None


def _matches_kind(url: str, kind: str) -> bool:
    lowered = url.lower()
    return any(hint in lowered for hint in KIND_HINTS.get(kind, ()) + MEDIA_HOST_HINTS)


def structural_search(payload: Any, kind: str) -> Optional[List[str]]:
    found: List[str] = []

    def walk(node: Any, depth: int) -> None:
        node = _maybe_json(node)
        if _looks_like_url(node):
            if _matches_kind(node, kind):
                found.append(node.strip())
            return
        if depth >= MAX_SEARCH_DEPTH:
            return
        if isinstance(node, dict):
            for child in node.values():
                walk(child, depth + 1)
        elif isinstance(node, list):
            for child in node:
                walk(child, depth + 1)

    walk(payload, 0)
    return found or None


EXTRACTORS: Tuple[Extractor, ...] = (bare_url, direct_fields, wrapped_fields, structural_search)


class ResultDecoder:
    def __init__(self, extractors: Sequence[Extractor] = EXTRACTORS, preview_chars: int = 500) -> None:
        self.extractors = tuple(extractors)
        self.preview_chars = preview_chars

    def find(self, payload: Any, kind: str) -> Optional[List[str]]:
        """Return valid artifact URLs, or ``None`` when nothing usable is present."""
        payload = _maybe_json(payload)
        for extractor in self.extractors:
            candidates = extractor(payload, kind)
            if not candidates:
                continue
            unique = list(dict.fromkeys(candidates))
            valid = [url for url in unique if is_valid_url(url)]
            if len(valid) < len(unique):
                logger.warning(
                    'malformed_artifact_url',
                    extractor=extractor.__name__,
                    kind=kind,
                    dropped=len(unique) - len(valid),
                )
            return valid or None
        return None

    def decode(self, payload: Any, kind: str, job_id: Optional[str] = None) -> List[str]:
        urls = self.find(payload, kind)
        if urls:
            return urls
        raw_preview = preview_payload(payload, self.preview_chars)
        logger.error('no_artifact_found', job_id=job_id, kind=kind, raw_preview=raw_preview)
        raise NoArtifactFound(f'no {kind} artifact in provider result', raw_preview=raw_preview, job_id=job_id)
