import json
import tempfile
from datetime import datetime, timezone
import unittest
from pathlib import Path
from unittest.mock import patch

from opportunityos.domain import lifecycle
from opportunityos.domain.opportunity import new_opportunity
from opportunityos.errors import (
    AlreadyExistsError,
    InvalidRecordError,
    NotFoundError,
    StoreNotInitializedError,
)
from opportunityos.opportunity_store import OpportunityStore


def _opportunity(opportunity_id="opp_1", score=72):
    return new_opportunity(
        opportunity_id=opportunity_id,
        kind=lifecycle.FUNNEL_DROP,
        score=score,
        title="High Dropoff in Checkout Flow - Enter Payment",
        description="Users are dropping off at payment.",
        raw_data={"funnel_id": "funnel-2"},
        metrics={"dropoff_rate": 0.45, "user_count": 900, "step_index": 1},
        insights=["45.0% dropoff at step 2", "Affecting 900 users"],
    )


class OpportunityStoreTest(unittest.TestCase):
    def _store(self, tmp_dir):
        store = OpportunityStore(Path(tmp_dir) / "data" / "opportunities.json")
        store.initialize()
        return store

    def test_create_persists_and_returns_copy(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)

            created = store.create(_opportunity())
            created["title"] = "mutated"

            self.assertEqual(store.get("opp_1")["title"], "High Dropoff in Checkout Flow - Enter Payment")
            payload = json.loads(store.path.read_text(encoding="utf-8"))
            self.assertEqual(payload["schema_version"], 1)
            self.assertEqual([item["id"] for item in payload["opportunities"]], ["opp_1"])

    def test_create_twice_raises_already_exists(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            store.create(_opportunity())

            with self.assertRaises(AlreadyExistsError):
                store.create(_opportunity(score=90))
            self.assertEqual(store.get("opp_1")["score"], 72)

    def test_create_rejects_invalid_records(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            for score in (101, -1, 72.5, True):
                with self.subTest(score=score):
                    record = _opportunity(opportunity_id=f"opp_{score}")
                    record["score"] = score
                    with self.assertRaises(InvalidRecordError):
                        store.create(record)
            self.assertEqual(store.get_all(), [])

    def test_update_unknown_id_raises_not_found(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            with self.assertRaises(NotFoundError):
                store.update("missing", status=lifecycle.PROMOTED)

    def test_update_changes_status_and_stamps_updated_at(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            created = store.create(_opportunity())

            updated = store.update("opp_1", status=lifecycle.PROMOTED, external_ref="1700000000.000100")

            self.assertEqual(updated["status"], lifecycle.PROMOTED)
            self.assertEqual(updated["external_ref"], "1700000000.000100")
            self.assertEqual(updated["created_at"], created["created_at"])
            self.assertGreaterEqual(updated["updated_at"], created["updated_at"])

    def test_update_rejects_illegal_edge_and_keeps_record(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            store.create(_opportunity())

            with self.assertRaises(InvalidRecordError):
                store.update("opp_1", status=lifecycle.SHIPPED)
            self.assertEqual(store.get("opp_1")["status"], lifecycle.DETECTED)

    def test_update_rejects_immutable_field_changes(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            store.create(_opportunity())

            for fields in ({"score": 99}, {"title": "other"}, {"kind": lifecycle.LOW_NPS}):
                with self.subTest(fields=fields):
                    with self.assertRaises(InvalidRecordError):
                        store.update("opp_1", **fields)
            self.assertEqual(store.get("opp_1")["score"], 72)

    def test_spec_ref_requires_spec_bearing_status_and_never_changes(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            store.create(_opportunity())
            store.update("opp_1", status=lifecycle.PROMOTED)

            with self.assertRaises(InvalidRecordError):
                store.update("opp_1", spec_ref="https://specs/1")

            store.update("opp_1", status=lifecycle.SPEC_GENERATED, spec_ref="https://specs/1")
            with self.assertRaises(InvalidRecordError):
                store.update("opp_1", spec_ref="https://specs/2")
            with self.assertRaises(InvalidRecordError):
                store.update("opp_1", spec_ref=None)
            self.assertEqual(store.get("opp_1")["spec_ref"], "https://specs/1")

    def test_shipped_requires_impact_record(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            store.create(_opportunity())
            store.update("opp_1", status=lifecycle.PROMOTED)
            store.update("opp_1", status=lifecycle.SPEC_GENERATED, spec_ref="https://specs/1")

            with self.assertRaises(InvalidRecordError):
                store.update("opp_1", status=lifecycle.SHIPPED)

            shipped = store.update(
                "opp_1",
                status=lifecycle.SHIPPED,
                impact_record={
                    "metrics_before": {"dropoff_rate": 0.45},
                    "metrics_after": {"dropoff_rate": 0.2},
                    "measured_at": "2024-02-01T00:00:00+00:00",
                },
            )
            self.assertEqual(shipped["impact_record"]["metrics_after"], {"dropoff_rate": 0.2})

    def test_external_ref_is_set_once(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            store.create(_opportunity())
            store.update("opp_1", external_ref="111.1")

            with self.assertRaises(InvalidRecordError):
                store.update("opp_1", external_ref="222.2")

    def test_reload_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            store.create(_opportunity("opp_1"))
            store.create(_opportunity("opp_2", score=65))
            store.update("opp_2", status=lifecycle.DISMISSED)

            reloaded = OpportunityStore(store.path)
            reloaded.initialize()

            self.assertEqual(reloaded.get_all(), store.get_all())
            self.assertEqual([item["id"] for item in reloaded.get_by_status(lifecycle.DISMISSED)], ["opp_2"])
            self.assertEqual(reloaded.count_by_status()[lifecycle.DETECTED], 1)

    def test_get_missing_returns_none(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            self.assertIsNone(self._store(tmp_dir).get("nope"))

    def test_mutations_before_initialize_raise(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = OpportunityStore(Path(tmp_dir) / "opportunities.json")
            with self.assertRaises(StoreNotInitializedError):
                store.create(_opportunity())
            with self.assertRaises(StoreNotInitializedError):
                store.update("opp_1", status=lifecycle.PROMOTED)

    def test_initialize_is_idempotent(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            store.create(_opportunity())
            store.initialize()
            self.assertEqual(len(store.get_all()), 1)

    def test_corrupt_file_is_quarantined_and_store_starts_empty(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "opportunities.json"
            path.write_text("[{not json", encoding="utf-8")

            store = OpportunityStore(path)
            store.initialize()

            self.assertEqual(store.get_all(), [])
            self.assertEqual(len(list(Path(tmp_dir).glob("opportunities.json*.corrupt"))), 1)

    def test_unexpected_container_is_quarantined(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "opportunities.json"
            path.write_text('"just a string"', encoding="utf-8")

            store = OpportunityStore(path)
            store.initialize()

            self.assertEqual(store.get_all(), [])
            self.assertFalse(path.exists())

    def test_invalid_and_duplicate_records_are_skipped_with_warning(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "opportunities.json"
            broken = _opportunity("opp_bad")
            broken["score"] = 500
            path.write_text(
                json.dumps({"schema_version": 1, "opportunities": [_opportunity("opp_1"), broken, _opportunity("opp_1", 99)]}),
                encoding="utf-8",
            )

            store = OpportunityStore(path)
            with self.assertLogs("opportunityos.store", level="WARNING") as captured:
                store.initialize()

            self.assertEqual([item["id"] for item in store.get_all()], ["opp_1"])
            self.assertEqual(store.get("opp_1")["score"], 72)
            self.assertEqual(len(captured.records), 2)

    def test_legacy_bare_list_is_read_and_rewritten_versioned(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "opportunities.json"
            path.write_text(json.dumps([_opportunity("opp_1")]), encoding="utf-8")

            store = OpportunityStore(path)
            store.initialize()
            store.update("opp_1", status=lifecycle.INVESTIGATING)

            payload = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(payload["schema_version"], 1)
            self.assertEqual(payload["opportunities"][0]["status"], lifecycle.INVESTIGATING)

    def test_failed_save_rolls_back_in_memory_state(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            store.create(_opportunity())

            with patch("opportunityos.opportunity_store.atomic_write_json", side_effect=OSError("disk full")):
                with self.assertRaises(OSError):
                    store.update("opp_1", status=lifecycle.PROMOTED)
                with self.assertRaises(OSError):
                    store.create(_opportunity("opp_2"))

            self.assertEqual(store.get("opp_1")["status"], lifecycle.DETECTED)
            self.assertIsNone(store.get("opp_2"))

    def test_unexpected_save_error_rolls_back_and_store_keeps_working(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            store.create(_opportunity())

            with patch("opportunityos.opportunity_store.atomic_write_json", side_effect=TypeError("not serializable")):
                with self.assertRaises(TypeError):
                    store.create(_opportunity("opp_2"))
                with self.assertRaises(TypeError):
                    store.update("opp_1", status=lifecycle.PROMOTED)

            self.assertIsNone(store.get("opp_2"))
            self.assertEqual(store.get("opp_1")["status"], lifecycle.DETECTED)

            store.create(_opportunity("opp_3"))
            on_disk = json.loads(store.path.read_text(encoding="utf-8"))
            self.assertEqual([item["id"] for item in on_disk["opportunities"]], ["opp_1", "opp_3"])

    def test_unserializable_evidence_is_rejected_before_it_reaches_memory(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            bad = _opportunity("bad")
            bad["evidence"]["raw_data"] = {"when": datetime(2024, 1, 1, tzinfo=timezone.utc)}

            with self.assertRaises(InvalidRecordError):
                store.create(bad)

            self.assertIsNone(store.get("bad"))
            store.create(_opportunity("good"))
            on_disk = json.loads(store.path.read_text(encoding="utf-8"))
            self.assertEqual([item["id"] for item in on_disk["opportunities"]], ["good"])

    def test_update_with_unserializable_field_leaves_record_unchanged(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self._store(tmp_dir)
            store.create(_opportunity())

            with self.assertRaises(InvalidRecordError):
                store.update("opp_1", note=object())

            self.assertNotIn("note", store.get("opp_1"))
            self.assertEqual(store.update("opp_1", status=lifecycle.PROMOTED)["status"], lifecycle.PROMOTED)


if __name__ == "__main__":
    unittest.main()
