#!/usr/bin/env python3
"""
Segmentation Assigner

Deterministic mapping of (contact, week) to a funnel stage. The bucket hash
is the 32-bit "times 33" string hash over UTF-16 code units, so any other
implementation hashing the same id and week lands in the same bucket.

    cold contact (order_count == 0): bucket 3 -> mid, otherwise top
    warm contact (order_count > 0):  bucket 3 -> mid, otherwise bottom
"""

from typing import Any, Sequence

from campaign_lib.errors import SegmentationError

HASH_SEED = 5381
HASH_MASK = 0xFFFFFFFF
BUCKET_COUNT = 4
MID_BUCKET = 3


def _utf16_code_units(text: str):
    data = text.encode('utf-16-le')
    for i in range(0, len(data), 2):
        yield data[i] | (data[i + 1] << 8)


def stable_hash(text: str) -> int:
    h = HASH_SEED
    for code in _utf16_code_units(text):
        h = ((h << 5) + h + code) & HASH_MASK
    return h


def _field(obj: Any, name: str):
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def bucket_for(contact_id, week_of: str) -> int:
    return stable_hash(f"{contact_id}{week_of}") % BUCKET_COUNT


def target_stage(contact: Any, week_of: str) -> str:
    """Funnel stage this contact should see for the given week"""
    bucket = bucket_for(_field(contact, 'id'), week_of)
    is_cold = (_field(contact, 'order_count') or 0) == 0

    if bucket == MID_BUCKET:
        return 'mid'
    return 'top' if is_cold else 'bottom'


def select_for_contact(contact: Any, candidates: Sequence[Any], week_of: str) -> Any:
    """Return the candidate whose funnel_stage matches the contact's target stage"""
    stage = target_stage(contact, week_of)
    for candidate in candidates:
        if _field(candidate, 'funnel_stage') == stage:
            return candidate
    raise SegmentationError(
        f"No '{stage}' candidate for week {week_of} (contact {_field(contact, 'id')})"
    )
