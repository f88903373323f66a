import os
import json
import logging
import tempfile
import unittest
from dataclasses import replace
from pathlib import Path
from unittest import mock

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

import med_config
import med_store
from med_controller import AppController, NavigationState, Screen
from med_crypto import aes_decrypt, aes_encrypt, get_or_create_key
from med_errors import InvalidTransition, RecordNotFound, StorageFault, ValidationRejected
from med_log import FileAndRingHandler, RingLog
from med_prefs import DARK_MODE_KEY, PreferenceStore, ThemePreferences
from med_records import Frequency, MedicationDraft, MedicationRecord
from med_store import MedicationStore


def paracetamol(**kw):
    fields = dict(name="Paracetamol", start_date="01/01/2024", time="08:00", frequency="daily")
    fields.update(kw)
    return MedicationRecord(**fields)


def amoxicilina(**kw):
    fields = dict(name="Amoxicilina", start_date="01/01/2024", time="09:00",
                  frequency="limited", end_date="10/01/2024")
    fields.update(kw)
    return MedicationRecord(**fields)


class _TempDirCase(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.td = Path(self._td.name)
        self.key = AESGCM.generate_key(bit_length=256)

    def tearDown(self):
        self._td.cleanup()

    def make_store(self, key=None):
        return MedicationStore(self.td / "medications.db.aes", key or self.key, tmp_dir=self.td / "tmp")

    def watch(self, store):
        emissions = []
        sub = store.subscribe_all(emissions.append)
        return emissions, sub


class TestCrypto(_TempDirCase):
    def test_aesgcm_roundtrip(self):
        pt = os.urandom(1024 * 64)
        ct = aes_encrypt(pt, self.key)
        self.assertNotEqual(pt, ct[12:])
        self.assertEqual(pt, aes_decrypt(ct, self.key))

    def test_wrong_key_rejected(self):
        ct = aes_encrypt(b"medications", self.key)
        with self.assertRaises(InvalidTag):
            aes_decrypt(ct, AESGCM.generate_key(bit_length=256))
        with self.assertRaises(InvalidTag):
            aes_decrypt(b"short", self.key)

    def test_key_created_once(self):
        key_path = self.td / ".enc_key"
        k1 = get_or_create_key(key_path)
        k2 = get_or_create_key(key_path)
        self.assertEqual(len(k1), 32)
        self.assertEqual(k1, k2)
        self.assertTrue(key_path.exists())


class TestRecords(unittest.TestCase):
    def test_frequency_coerced_from_tag(self):
        r = paracetamol(frequency="limited")
        self.assertIs(r.frequency, Frequency.LIMITED)
        self.assertEqual(r.summary(), "08:00 • Limited or with pauses")
        with self.assertRaises(ValueError):
            paracetamol(frequency="weekly")

    def test_new_draft_defaults(self):
        d = MedicationDraft()
        self.assertIs(d.frequency, Frequency.DAILY)
        self.assertEqual(d.missing_fields(), ["name", "start_date", "time"])
        self.assertFalse(d.is_valid())

    def test_blank_required_fields_rejected(self):
        d = MedicationDraft(name="   ", start_date="01/01/2024", time="08:00")
        with self.assertRaises(ValidationRejected) as cm:
            d.to_record()
        self.assertEqual(cm.exception.missing, ("name",))

    def test_draft_roundtrip_keeps_id(self):
        r = amoxicilina(id=7, description="after meals")
        d = MedicationDraft.from_record(r)
        d.update(description="  with water ")
        out = d.to_record(r.id)
        self.assertEqual(out.id, 7)
        self.assertEqual(out.description, "with water")
        self.assertEqual(out.end_date, "10/01/2024")

    def test_draft_rejects_unknown_field(self):
        with self.assertRaises(TypeError):
            MedicationDraft().update(dosage="500mg")
        with self.assertRaises(ValueError):
            MedicationDraft().update(frequency="hourly")


class TestStore(_TempDirCase):
    def test_scenario_ids_and_order(self):
        store = self.make_store()
        emissions, _ = self.watch(store)
        self.assertEqual(emissions, [[]])

        self.assertEqual(store.insert(paracetamol()), 1)
        self.assertEqual(store.insert(amoxicilina()), 2)

        latest = emissions[-1]
        self.assertEqual([(r.name, r.id) for r in latest], [("Amoxicilina", 2), ("Paracetamol", 1)])
        self.assertEqual(len(emissions), 3)

    def test_insert_persists_all_fields(self):
        store = self.make_store()
        emissions, _ = self.watch(store)
        draft = amoxicilina(description="take with food")
        rid = store.insert(draft)
        matches = [r for r in emissions[-1] if r.id == rid]
        self.assertEqual(matches, [draft.with_id(rid)])

    def test_update_description_only(self):
        store = self.make_store()
        emissions, _ = self.watch(store)
        rid = store.insert(paracetamol())
        r = emissions[-1][0]
        store.update(replace(r, description="half tablet"))
        updated = [x for x in emissions[-1] if x.id == rid][0]
        self.assertEqual(updated.description, "half tablet")
        self.assertEqual((updated.name, updated.start_date, updated.time, updated.frequency),
                         (r.name, r.start_date, r.time, r.frequency))

    def test_update_missing_id(self):
        store = self.make_store()
        emissions, _ = self.watch(store)
        with self.assertRaises(RecordNotFound):
            store.update(paracetamol(id=42))
        with self.assertRaises(ValueError):
            store.update(paracetamol())
        self.assertEqual(emissions, [[]])

    def test_delete_twice_is_noop(self):
        store = self.make_store()
        emissions, _ = self.watch(store)
        rid = store.insert(paracetamol())
        store.insert(amoxicilina())
        store.delete(rid)
        self.assertNotIn(rid, [r.id for r in emissions[-1]])
        count = len(emissions)
        store.delete(rid)
        self.assertEqual(len(emissions), count)
        self.assertEqual([r.name for r in emissions[-1]], ["Amoxicilina"])

    def test_order_is_case_sensitive(self):
        store = self.make_store()
        emissions, _ = self.watch(store)
        for name in ("aspirin", "Zinc", "Bromazepam", "Zinc"):
            store.insert(paracetamol(name=name))
        self.assertEqual([r.name for r in emissions[-1]], ["Bromazepam", "Zinc", "Zinc", "aspirin"])
        zincs = [r.id for r in emissions[-1] if r.name == "Zinc"]
        self.assertEqual(zincs, sorted(zincs))

    def test_ids_not_reused_after_delete(self):
        store = self.make_store()
        first = store.insert(paracetamol())
        store.delete(first)
        self.assertNotEqual(store.insert(paracetamol()), first)

    def test_insert_with_id_replaces(self):
        store = self.make_store()
        emissions, _ = self.watch(store)
        rid = store.insert(paracetamol())
        self.assertEqual(store.insert(paracetamol(id=rid, time="20:00")), rid)
        self.assertEqual([(r.id, r.time) for r in emissions[-1]], [(rid, "20:00")])

    def test_emissions_follow_mutation_order(self):
        store = self.make_store()
        emissions, _ = self.watch(store)
        a = store.insert(paracetamol())
        store.insert(amoxicilina())
        store.delete(a)
        self.assertEqual([len(e) for e in emissions], [0, 1, 2, 1])

    def test_mutation_from_subscriber_keeps_order(self):
        store = self.make_store()

        def add_second(records):
            if len(records) == 1:
                store.insert(amoxicilina())

        store.subscribe_all(add_second)
        emissions, sub = self.watch(store)
        store.insert(paracetamol())
        self.assertEqual([len(e) for e in emissions], [0, 1, 2])
        self.assertEqual(len(sub.latest), 2)

    def test_failed_write_back_is_not_emitted(self):
        store = self.make_store()
        rid = store.insert(paracetamol())
        emissions, _ = self.watch(store)
        real_write = med_store.atomic_write_bytes

        def failing_write(path, data):
            if path == store.db_path:
                raise OSError("disk full")
            real_write(path, data)

        with mock.patch("med_store.atomic_write_bytes", side_effect=failing_write):
            with self.assertRaises(StorageFault):
                store.insert(amoxicilina())
            with self.assertRaises(StorageFault):
                store.update(paracetamol(id=rid, time="22:00"))
            with self.assertRaises(StorageFault):
                store.delete(rid)
        self.assertEqual(len(emissions), 1)

        reopened, _ = self.watch(self.make_store())
        self.assertEqual([(r.id, r.name, r.time) for r in reopened[0]], [(rid, "Paracetamol", "08:00")])

    def test_data_survives_reopen(self):
        self.make_store().insert(paracetamol())
        emissions, _ = self.watch(self.make_store())
        self.assertEqual([r.name for r in emissions[0]], ["Paracetamol"])

    def test_db_file_is_encrypted(self):
        self.make_store().insert(paracetamol())
        raw = (self.td / "medications.db.aes").read_bytes()
        self.assertNotIn(b"SQLite format", raw)
        self.assertNotIn(b"Paracetamol", raw)

    def test_wrong_key_is_storage_fault(self):
        self.make_store().insert(paracetamol())
        other = self.make_store(key=AESGCM.generate_key(bit_length=256))
        with self.assertRaises(StorageFault):
            other.insert(amoxicilina())
        with self.assertRaises(StorageFault):
            other.subscribe_all(lambda records: None)

    def test_failing_subscriber_does_not_block_others(self):
        store = self.make_store()

        def broken(records):
            raise RuntimeError("render failed")

        store.subscribe_all(lambda records: None)
        with self.assertLogs("mypills", level="ERROR"):
            store.subscribe_all(broken)
        emissions, _ = self.watch(store)
        with self.assertLogs("mypills", level="ERROR"):
            store.insert(paracetamol())
        self.assertEqual(len(emissions[-1]), 1)

    def test_closed_subscription_stops(self):
        store = self.make_store()
        emissions, sub = self.watch(store)
        sub.close()
        store.insert(paracetamol())
        self.assertEqual(emissions, [[]])
        self.assertEqual(store.subscriber_count, 0)
        self.assertEqual(sub.latest, [])


class TestPreferences(_TempDirCase):
    def test_default_then_write_and_restart(self):
        path = self.td / "settings.json"
        prefs = ThemePreferences(PreferenceStore(path))
        self.assertTrue(prefs.dark_mode)
        prefs.set_dark_mode(False)
        self.assertFalse(prefs.dark_mode)

        restarted = ThemePreferences(PreferenceStore(path))
        self.assertFalse(restarted.dark_mode)
        self.assertEqual(json.loads(path.read_text(encoding="utf-8")), {DARK_MODE_KEY: False})

    def test_corrupt_file_reads_default(self):
        path = self.td / "settings.json"
        path.write_text("{not json", encoding="utf-8")
        with self.assertLogs("mypills", level="WARNING"):
            self.assertTrue(ThemePreferences(PreferenceStore(path)).dark_mode)

    def test_subscribe_and_unsubscribe(self):
        prefs = ThemePreferences(PreferenceStore(self.td / "settings.json"))
        seen = []
        unsubscribe = prefs.subscribe(seen.append)
        prefs.set_dark_mode(False)
        unsubscribe()
        prefs.set_dark_mode(True)
        self.assertEqual(seen, [True, False])

    def test_failing_first_delivery_still_returns_handle(self):
        store = PreferenceStore(self.td / "settings.json")
        calls = []

        def broken(value):
            calls.append(value)
            raise RuntimeError("theme apply failed")

        with self.assertLogs("mypills", level="ERROR"):
            unsubscribe = store.subscribe(DARK_MODE_KEY, True, broken)
        unsubscribe()
        store.put_bool(DARK_MODE_KEY, False)
        self.assertEqual(calls, [True])
        self.assertEqual(store._subscribers[DARK_MODE_KEY], [])


class TestController(_TempDirCase):
    def setUp(self):
        super().setUp()
        self.store = self.make_store()
        self.theme = ThemePreferences(PreferenceStore(self.td / "settings.json"))
        self.c = AppController(self.store, self.theme).start()

    def tearDown(self):
        self.c.close()
        super().tearDown()

    def fill(self, **kw):
        values = dict(name="Paracetamol", start_date="01/01/2024", time="08:00")
        values.update(kw)
        self.c.update_draft(**values)

    def test_initial_state(self):
        self.assertIsInstance(self.c.state, NavigationState)
        self.assertIs(self.c.screen, Screen.LISTING)
        self.assertIsNone(self.c.editing)
        self.assertEqual(self.c.records, [])
        self.assertTrue(self.c.dark_mode)

    def test_add_submit_inserts(self):
        self.c.request_add()
        self.assertIs(self.c.screen, Screen.EDITING)
        self.assertTrue(self.c.state.is_new)
        self.assertIs(self.c.draft.frequency, Frequency.DAILY)
        self.assertFalse(self.c.can_submit)

        self.fill()
        self.assertTrue(self.c.can_submit)
        self.assertTrue(self.c.submit())
        self.assertIs(self.c.screen, Screen.LISTING)
        self.assertIsNone(self.c.draft)
        self.assertEqual([(r.id, r.name) for r in self.c.records], [(1, "Paracetamol")])

    def test_submit_with_empty_name_is_blocked(self):
        self.c.request_add()
        self.fill(name="")
        with mock.patch.object(self.store, "insert", wraps=self.store.insert) as insert:
            self.assertFalse(self.c.submit())
            insert.assert_not_called()
        self.assertIs(self.c.screen, Screen.EDITING)
        self.assertEqual(self.c.missing_fields, ["name"])
        self.assertEqual(self.c.records, [])

    def test_edit_submit_updates_same_id(self):
        self.store.insert(paracetamol())
        record = self.c.records[0]
        self.c.request_edit(record)
        self.assertIs(self.c.editing, record)
        self.assertEqual(self.c.draft.name, "Paracetamol")

        with mock.patch.object(self.store, "insert", wraps=self.store.insert) as insert:
            self.c.update_draft(description="after breakfast", frequency="limited")
            self.assertTrue(self.c.submit())
            insert.assert_not_called()

        self.assertEqual(len(self.c.records), 1)
        saved = self.c.records[0]
        self.assertEqual(saved.id, record.id)
        self.assertEqual(saved.description, "after breakfast")
        self.assertIs(saved.frequency, Frequency.LIMITED)

    def test_cancel_discards_draft(self):
        self.c.request_add()
        self.fill()
        self.c.cancel()
        self.assertIs(self.c.screen, Screen.LISTING)
        self.assertIsNone(self.c.draft)
        self.assertEqual(self.c.records, [])

    def test_delete_from_list(self):
        self.store.insert(paracetamol())
        self.store.insert(amoxicilina())
        self.c.request_delete(self.c.records[0])
        self.assertIs(self.c.screen, Screen.LISTING)
        self.assertEqual([r.name for r in self.c.records], ["Paracetamol"])

    def test_wrong_state_transitions(self):
        with self.assertRaises(InvalidTransition):
            self.c.submit()
        with self.assertRaises(InvalidTransition):
            self.c.cancel()
        with self.assertRaises(InvalidTransition):
            self.c.update_draft(name="x")
        self.c.request_add()
        with self.assertRaises(InvalidTransition):
            self.c.request_add()
        with self.assertRaises(InvalidTransition):
            self.c.request_delete(paracetamol(id=1))

    def test_store_failure_keeps_form_open(self):
        self.c.request_add()
        self.fill()
        with mock.patch.object(self.store, "insert", side_effect=StorageFault("disk full")):
            with self.assertRaises(StorageFault):
                self.c.submit()
        self.assertIs(self.c.screen, Screen.EDITING)
        self.assertEqual(self.c.draft.name, "Paracetamol")
        self.assertEqual(self.c.records, [])

    def test_edit_of_deleted_record_reports_not_found(self):
        self.store.insert(paracetamol())
        record = self.c.records[0]
        self.c.request_edit(record)
        self.store.delete(record.id)
        with self.assertRaises(RecordNotFound):
            self.c.submit()
        self.assertIs(self.c.screen, Screen.EDITING)

    def test_listeners_see_every_change(self):
        screens = []
        remove = self.c.add_listener(lambda c: screens.append(c.screen))
        self.c.request_add()
        self.fill()
        self.c.submit()
        remove()
        self.c.request_add()
        self.assertEqual(screens[0], Screen.EDITING)
        self.assertEqual(screens[-1], Screen.LISTING)

    def test_toggle_theme_persists(self):
        self.assertFalse(self.c.toggle_theme())
        self.assertFalse(self.c.dark_mode)
        self.assertFalse(ThemePreferences(PreferenceStore(self.td / "settings.json")).dark_mode)
        self.assertTrue(self.c.toggle_theme())
        self.assertTrue(self.c.dark_mode)


class TestConfig(unittest.TestCase):
    def test_env_override_and_layout(self):
        with tempfile.TemporaryDirectory() as td:
            with mock.patch.dict(os.environ, {med_config.ENV_DATA_DIR: td}):
                paths = med_config.resolve_paths()
            self.assertEqual(paths.base_dir, Path(td))
            self.assertEqual(paths.db_path.name, med_config.DB_FILENAME)
            self.assertEqual(paths.prefs_path.parent, Path(td))
            self.assertTrue(paths.tmp_dir.is_dir())

    def test_log_level_from_env(self):
        with mock.patch.dict(os.environ, {med_config.ENV_LOG_LEVEL: "debug"}):
            self.assertEqual(med_config.log_level(), "DEBUG")


class TestLogging(unittest.TestCase):
    def test_ring_keeps_latest_lines(self):
        ring = RingLog(max_lines=3)
        for i in range(5):
            ring.add(f"line {i}")
        ring.add("")
        self.assertEqual(ring.text(), "line 2\nline 3\nline 4")

    def test_handler_writes_file_and_ring(self):
        with tempfile.TemporaryDirectory() as td:
            log_path = Path(td) / "logs" / "app.log"
            ring = RingLog()
            handler = FileAndRingHandler(log_path, ring)
            log = logging.getLogger("mypills.test_handler")
            log.propagate = False
            log.addHandler(handler)
            try:
                log.warning("deleted medication id=3")
            finally:
                log.removeHandler(handler)
            self.assertIn("WARNING deleted medication id=3", log_path.read_text(encoding="utf-8"))
            self.assertIn("deleted medication id=3", ring.text())


if __name__ == "__main__":
    unittest.main(verbosity=2)
