"""
Evidence key normalization.

Each evidence record contributes exactly one key to the fingerprint: its
content identifier when present, otherwise its retrieval URL.
"""
from typing import Any, Iterable, List, Mapping, Union

from ...errors import MalformedEvidenceError
from ...models.domain import EvidenceItem


EvidenceLike = Union[EvidenceItem, Mapping[str, Any]]


def _key_for(item: EvidenceLike) -> str:
    if isinstance(item, EvidenceItem):
        return item.cid or item.url
    return item.get("cid") or item.get("url")


def extract_evidence_keys(items: Iterable[EvidenceLike]) -> List[str]:
    """Keys in input order. Sorting is the fingerprint's job."""
    keys = []
    for index, item in enumerate(items):
        key = _key_for(item)
        if not key:
            raise MalformedEvidenceError(index)
        keys.append(key)
    return keys
