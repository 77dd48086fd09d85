"""CredentialStore tests: the token-shape gate and JSON persistence."""

from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from desktop.credentials import (
    TOKENS_KEY,
    TOKENS_UPDATED_AT_KEY,
    CredentialStore,
    JsonFileStore,
    MemoryStore,
    is_token_shaped,
    token_preview,
)
from desktop.errors import InvalidTokenShape
from desktop.tests.fakes import OTHER_TOKEN, VALID_TOKEN


class TestTokenShape(unittest.TestCase):
    def test_three_segments(self):
        self.assertTrue(is_token_shaped(VALID_TOKEN))

    def test_empty_signature_segment_allowed(self):
        self.assertTrue(is_token_shaped("aGVhZGVy.cGF5bG9hZA."))

    def test_rejects_malformed(self):
        for bad in ("", "abc", "a.b", "a.b.c.d", "a b.c.d", "a.b.c=", "..", None, 42):
            with self.subTest(token=bad):
                self.assertFalse(is_token_shaped(bad))

    def test_preview_never_shows_full_token(self):
        preview = token_preview(VALID_TOKEN)
        self.assertNotIn(VALID_TOKEN, preview)
        self.assertTrue(preview.startswith(VALID_TOKEN[:8]))
        self.assertEqual(token_preview(None), "<none>")


class TestCredentialStore(unittest.TestCase):
    def setUp(self):
        self.kv = MemoryStore()
        self.store = CredentialStore(self.kv)

    def test_set_then_get(self):
        self.store.set("blog", VALID_TOKEN)
        self.assertEqual(self.store.get("blog"), VALID_TOKEN)

    def test_round_trip_is_exact(self):
        self.store.set("blog", "aaa.bbb.ccc")
        self.assertEqual(self.store.get("blog"), "aaa.bbb.ccc")

    def test_missing_project_returns_none(self):
        self.assertIsNone(self.store.get("unknown"))

    def test_projects_are_isolated(self):
        self.store.set("blog", VALID_TOKEN)
        self.store.set("docs", OTHER_TOKEN)
        self.store.clear("blog")
        self.assertIsNone(self.store.get("blog"))
        self.assertEqual(self.store.get("docs"), OTHER_TOKEN)

    def test_persisted_layout(self):
        self.store.set("blog", VALID_TOKEN)
        self.assertEqual(self.kv.get(TOKENS_KEY), {"blog": {"token": VALID_TOKEN}})
        self.assertIsNotNone(self.kv.get(TOKENS_UPDATED_AT_KEY))
        self.assertIsNotNone(self.store.updated_at())

    def test_set_malformed_raises_and_writes_nothing(self):
        with self.assertRaises(InvalidTokenShape):
            self.store.set("blog", "not-a-token")
        self.assertIsNone(self.kv.get(TOKENS_KEY))
        self.assertIsNone(self.store.get("blog"))

    def test_set_malformed_keeps_previous_token(self):
        self.store.set("blog", VALID_TOKEN)
        with self.assertRaises(InvalidTokenShape):
            self.store.set("blog", "a.b")
        self.assertEqual(self.store.get("blog"), VALID_TOKEN)

    def test_malformed_stored_value_is_deleted_on_read(self):
        self.kv.set(TOKENS_KEY, {"blog": {"token": "garbage"}, "docs": {"token": OTHER_TOKEN}})
        self.assertIsNone(self.store.get("blog"))
        self.assertNotIn("blog", self.kv.get(TOKENS_KEY))
        self.assertEqual(self.store.get("docs"), OTHER_TOKEN)

    def test_clear_missing_is_noop(self):
        self.store.clear("nothing")
        self.assertIsNone(self.kv.get(TOKENS_KEY))

    def test_clear_all(self):
        self.store.set("blog", VALID_TOKEN)
        self.store.set("docs", OTHER_TOKEN)
        self.store.clear_all()
        self.assertIsNone(self.store.get("blog"))
        self.assertIsNone(self.store.get("docs"))
        self.assertIsNone(self.store.updated_at())

    def test_record_tracks_validation_for_current_token(self):
        self.store.set("blog", VALID_TOKEN)
        self.assertIsNone(self.store.record("blog").last_validation_result)

        self.store.record_validation("blog", True)
        rec = self.store.record("blog")
        self.assertEqual(rec.token, VALID_TOKEN)
        self.assertTrue(rec.last_validation_result)
        self.assertIsNotNone(rec.last_validated_at)

        # A new token invalidates the bookkeeping.
        self.store.set("blog", OTHER_TOKEN)
        self.assertIsNone(self.store.record("blog").last_validated_at)

    def test_record_for_missing_project(self):
        self.assertIsNone(self.store.record("blog"))


class TestJsonFileStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "nested" / "settings.json"

    def tearDown(self):
        self._tmp.cleanup()

    def test_tokens_survive_a_new_store_instance(self):
        CredentialStore(JsonFileStore(self.path)).set("blog", VALID_TOKEN)
        self.assertEqual(CredentialStore(JsonFileStore(self.path)).get("blog"), VALID_TOKEN)

    def test_other_keys_are_preserved(self):
        kv = JsonFileStore(self.path)
        kv.set("theme", "dark")
        CredentialStore(kv).set("blog", VALID_TOKEN)
        payload = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(payload["theme"], "dark")
        self.assertEqual(payload[TOKENS_KEY]["blog"]["token"], VALID_TOKEN)

    def test_corrupt_file_reads_as_empty(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")
        store = CredentialStore(JsonFileStore(self.path))
        self.assertIsNone(store.get("blog"))
        store.set("blog", VALID_TOKEN)
        self.assertEqual(store.get("blog"), VALID_TOKEN)

    def test_no_temp_files_left_behind(self):
        CredentialStore(JsonFileStore(self.path)).set("blog", VALID_TOKEN)
        self.assertEqual([p.name for p in self.path.parent.iterdir()], ["settings.json"])

    def test_delete(self):
        kv = JsonFileStore(self.path)
        kv.set("a", 1)
        kv.delete("a")
        kv.delete("missing")
        self.assertIsNone(kv.get("a"))
