#!/usr/bin/env python3
"""
Tests for the segmentation assigner: the 32-bit times-33 hash, bucket
mapping and funnel-stage selection for cold and warm contacts.
"""

import unittest
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).parent))

from campaign_lib.errors import SegmentationError
from campaign_lib.segmentation import bucket_for, select_for_contact, stable_hash, target_stage

WEEK = "2026-02-16"

CANDIDATES = [
    {'id': 'c-top', 'funnel_stage': 'top'},
    {'id': 'c-mid', 'funnel_stage': 'mid'},
    {'id': 'c-bottom', 'funnel_stage': 'bottom'},
]


def reference_hash(text):
    h = 5381
    for ch in text:
        h = (h * 33 + ord(ch)) % 2 ** 32
    return h


def ids_with_bucket(bucket, count=3):
    """First contact ids of the form contact-N that land in the given bucket"""
    found = []
    n = 0
    while len(found) < count:
        contact_id = f"contact-{n}"
        if reference_hash(contact_id + WEEK) % 4 == bucket:
            found.append(contact_id)
        n += 1
    return found


class TestStableHash(unittest.TestCase):

    def test_known_values(self):
        self.assertEqual(stable_hash(""), 5381)
        self.assertEqual(stable_hash("a"), 177670)
        self.assertEqual(stable_hash("ab"), 5863208)

    def test_matches_reference_for_ascii(self):
        for text in ("contact-1" + WEEK, "9f1c2d3e-aaaa-bbbb-cccc-000000000000" + WEEK, "x" * 200):
            self.assertEqual(stable_hash(text), reference_hash(text))

    def test_stays_within_32_bits(self):
        self.assertLess(stable_hash("z" * 1000), 2 ** 32)

    def test_astral_characters_hash_as_surrogate_pairs(self):
        # U+1F600 is the UTF-16 pair D83D DE00
        expected = ((5381 * 33 + 0xD83D) * 33 + 0xDE00) % 2 ** 32
        self.assertEqual(stable_hash("\U0001F600"), expected)


class TestTargetStage(unittest.TestCase):

    def test_bucket_three_is_mid_for_everyone(self):
        for contact_id in ids_with_bucket(3):
            self.assertEqual(bucket_for(contact_id, WEEK), 3)
            self.assertEqual(target_stage({'id': contact_id, 'order_count': 0}, WEEK), 'mid')
            self.assertEqual(target_stage({'id': contact_id, 'order_count': 5}, WEEK), 'mid')

    def test_other_buckets_split_cold_and_warm(self):
        for bucket in (0, 1, 2):
            for contact_id in ids_with_bucket(bucket):
                self.assertEqual(target_stage({'id': contact_id, 'order_count': 0}, WEEK), 'top')
                self.assertEqual(target_stage({'id': contact_id, 'order_count': None}, WEEK), 'top')
                self.assertEqual(target_stage({'id': contact_id, 'order_count': 1}, WEEK), 'bottom')

    def test_numeric_id_uses_decimal_text(self):
        self.assertEqual(bucket_for(42, WEEK), reference_hash("42" + WEEK) % 4)

    def test_assignment_changes_with_week(self):
        buckets = {bucket_for("contact-7", f"2026-0{m}-02") for m in range(1, 10)}
        self.assertGreater(len(buckets), 1)


class TestSelectForContact(unittest.TestCase):

    def test_returns_matching_candidate(self):
        warm = {'id': ids_with_bucket(0)[0], 'order_count': 3}
        self.assertEqual(select_for_contact(warm, CANDIDATES, WEEK)['id'], 'c-bottom')

    def test_deterministic(self):
        contact = {'id': 'contact-11', 'order_count': 0}
        picks = {select_for_contact(contact, CANDIDATES, WEEK)['id'] for _ in range(5)}
        self.assertEqual(len(picks), 1)

    def test_missing_stage_raises(self):
        contact = {'id': ids_with_bucket(3)[0], 'order_count': 0}
        with self.assertRaises(SegmentationError):
            select_for_contact(contact, [c for c in CANDIDATES if c['funnel_stage'] != 'mid'], WEEK)

    def test_segmentation_error_is_lookup_error(self):
        with self.assertRaises(LookupError):
            select_for_contact({'id': 'x', 'order_count': 0}, [], WEEK)


if __name__ == '__main__':
    unittest.main()
