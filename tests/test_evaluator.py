import json
import os
import tempfile
import threading
import unittest

from prometheus_client import REGISTRY

from flagyard import (
    AudienceNotFoundError,
    Context,
    NotFoundError,
    RuleNotFoundError,
    StoreOptions,
    ToggleDirectoryNotFoundError,
    ToggleFileError,
    ToggleNotFoundError,
    ToggleSnapshot,
    ToggleStore,
)


def _write(directory, name, doc):
    with open(os.path.join(directory, name), "w", encoding="utf-8") as f:
        if isinstance(doc, str):
            f.write(doc)
        else:
            json.dump(doc, f)


_checkout = {
    "id": "1",
    "key": "checkout",
    "status": "enabled",
    "audiences": [
        {
            "id": "china",
            "name": "China adults",
            "rules": [
                {"id": "city", "attribute": "city", "operator": "in", "value": "Beijing,Shanghai"},
                {"id": "age", "attribute": "age", "operator": "gt", "value": "17"},
            ],
        },
        {
            "id": "vip",
            "name": "VIP",
            "rules": [
                {"id": "level", "attribute": "custom", "customAttribute": "vip_level", "operator": "equals", "value": "9"},
            ],
        },
    ],
}

_disabled = {
    "id": "2",
    "key": "search",
    "status": "disabled",
    "audiences": [{"id": "all", "name": "All", "rules": []}],
}

_everyone = {
    "id": "3",
    "key": "everyone",
    "status": "enabled",
    "audiences": [{"id": "all", "name": "All"}],
}

_nobody = {
    "id": "4",
    "key": "nobody",
    "status": "enabled",
}


class TestToggleStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name
        for name, doc in [("checkout.json", _checkout), ("search.json", _disabled), ("everyone.json", _everyone), ("nobody.json", _nobody)]:
            _write(self.dir, name, doc)
        self.store = ToggleStore(StoreOptions(toggles_path=self.dir))
        self.store.reload()

    def tearDown(self):
        self._tmp.cleanup()

    def test_is_allowed(self):
        store = self.store
        cases = [
            # key, context, expected
            ("checkout", Context("u1", {"city": "Beijing", "age": 30}), True),
            ("checkout", Context("u1", {"city": "beijing", "age": 18}), True),
            ("checkout", Context("u1", {"city": "Beijing", "age": 17}), False),
            ("checkout", Context("u1", {"city": "Tokyo", "age": 30}), False),
            ("checkout", Context("u1", {"city": "Beijing"}), False),
            ("checkout", Context("u1", {"vip_level": 9}), True),
            ("checkout", Context("u1", {"city": "Tokyo", "vip_level": "9"}), True),
            ("checkout", Context("u1"), False),
            ("checkout", {"user_id": "u1", "city": "Shanghai", "age": 40}, True),
            ("checkout", {"user_id": "u1", "VIP_LEVEL": "9"}, True),
            ("search", Context("u1"), False),
            ("everyone", Context("u1"), True),
            ("nobody", Context("u1"), False),
            ("missing", Context("u1"), False),
        ]
        for key, ctx, expected in cases:
            with self.subTest(f"{key} {ctx!r}"):
                self.assertEqual(store.is_allowed(key, ctx), expected)

    def test_invalid_context(self):
        with self.assertRaisesRegex(TypeError, "user_id"):
            self.store.is_allowed("checkout", {"city": "Beijing"})
        with self.assertRaises(TypeError):
            self.store.is_allowed("checkout", {"user_id": 1})
        with self.assertRaises(TypeError):
            self.store.is_allowed("checkout", {"user_id": "u1", "age": (1, 2)})
        with self.assertRaises(TypeError):
            self.store.is_allowed("checkout", "u1")  # type: ignore[arg-type]

    def test_case_sensitive_attributes(self):
        store = ToggleStore(StoreOptions(toggles_path=self.dir, case_insensitive_attributes=False))
        store.reload()
        self.assertTrue(store.is_allowed("checkout", {"user_id": "u1", "vip_level": "9"}))
        self.assertFalse(store.is_allowed("checkout", {"user_id": "u1", "VIP_LEVEL": "9"}))

    def test_evaluate(self):
        cases = [
            # key, context, (allowed, reason, audience)
            ("checkout", Context("u1", {"city": "Beijing", "age": 30, "vip_level": 9}), (True, "audience", "china")),
            ("checkout", Context("u1", {"vip_level": 9}), (True, "audience", "vip")),
            ("checkout", Context("u1"), (False, "no_match", "")),
            ("search", Context("u1"), (False, "disabled", "")),
            ("missing", Context("u1"), (False, "not_found", "")),
        ]
        for key, ctx, expected in cases:
            with self.subTest(key):
                e = self.store.evaluate(key, ctx)
                self.assertEqual((e.toggle, e.user_id), (key, "u1"))
                self.assertEqual((e.allowed, e.reason, e.audience), expected)

    def test_unknown_keys_share_one_metric_series(self):
        def series():
            return {
                tuple(sorted(s.labels.items()))
                for m in REGISTRY.collect()
                if m.name == "flagyard_evaluation_seconds"
                for s in m.samples
                if s.name == "flagyard_evaluation_seconds_count"
            }

        self.store.is_allowed("unknown_0", Context("u1"))
        before = series()
        for i in range(500):
            self.assertFalse(self.store.is_allowed(f"unknown_{i}", Context("u1")))
        after = series()
        self.assertSetEqual(after, before)
        self.assertIn((("reason", "not_found"), ("toggle", "")), after)

    def test_introspection(self):
        store = self.store
        self.assertEqual(store.toggle_count(), 4)
        self.assertListEqual(sorted(store.toggle_keys()), ["checkout", "everyone", "nobody", "search"])

        self.assertTrue(store.toggle_exists("checkout"))
        self.assertFalse(store.toggle_exists("missing"))
        self.assertTrue(store.audience_exists("checkout", "vip"))
        self.assertFalse(store.audience_exists("checkout", "eu"))
        self.assertFalse(store.audience_exists("missing", "vip"))
        self.assertTrue(store.rule_exists("checkout", "china", "age"))
        self.assertFalse(store.rule_exists("checkout", "china", "level"))
        self.assertFalse(store.rule_exists("checkout", "eu", "age"))
        self.assertFalse(store.rule_exists("missing", "china", "age"))

        self.assertTrue(store.get_toggle_status("checkout"))
        self.assertFalse(store.get_toggle_status("search"))
        self.assertEqual(store.audience_count("checkout"), 2)
        self.assertEqual(store.audience_count("nobody"), 0)
        self.assertEqual(store.rule_count("checkout", "china"), 2)
        self.assertEqual(store.rule_count("everyone", "all"), 0)
        self.assertListEqual(store.audience_ids("checkout"), ["china", "vip"])
        self.assertListEqual(store.rule_ids("checkout", "china"), ["city", "age"])

        self.assertEqual(store.get_toggle("checkout").id, "1")
        self.assertEqual(store.get_audience("checkout", "vip").name, "VIP")
        rule = store.get_rule("checkout", "vip", "level")
        self.assertEqual((rule.effective_attribute, rule.value, rule.toggle_key), ("vip_level", "9", "checkout"))

    def test_introspection_not_found(self):
        store = self.store
        cases = [
            (ToggleNotFoundError, lambda: store.get_toggle("missing")),
            (ToggleNotFoundError, lambda: store.get_toggle_status("missing")),
            (ToggleNotFoundError, lambda: store.audience_count("missing")),
            (ToggleNotFoundError, lambda: store.audience_ids("missing")),
            (ToggleNotFoundError, lambda: store.get_audience("missing", "vip")),
            (ToggleNotFoundError, lambda: store.rule_ids("missing", "vip")),
            (AudienceNotFoundError, lambda: store.get_audience("checkout", "eu")),
            (AudienceNotFoundError, lambda: store.rule_count("checkout", "eu")),
            (AudienceNotFoundError, lambda: store.rule_ids("checkout", "eu")),
            (AudienceNotFoundError, lambda: store.get_rule("checkout", "eu", "age")),
            (RuleNotFoundError, lambda: store.get_rule("checkout", "china", "level")),
        ]
        for i, (exc, call) in enumerate(cases):
            with self.subTest(i):
                with self.assertRaises(exc):
                    call()
                with self.assertRaises(NotFoundError):
                    call()
                with self.assertRaises(LookupError):
                    call()

    def test_empty_store(self):
        store = ToggleStore()
        self.assertEqual(store.toggle_count(), 0)
        self.assertFalse(store.is_allowed("checkout", Context("u1")))
        with self.assertRaisesRegex(ValueError, "toggles_path"):
            store.reload()
        with self.assertRaisesRegex(ValueError, "toggles_path"):
            store.watch()

    def test_reload_replaces_snapshot(self):
        store = self.store
        os.remove(os.path.join(self.dir, "search.json"))
        _write(self.dir, "everyone.json", {**_everyone, "status": "disabled"})
        before = store.snapshot
        after = store.reload()
        self.assertIs(store.snapshot, after)
        self.assertIsNot(before, after)
        self.assertFalse(store.toggle_exists("search"))
        self.assertFalse(store.is_allowed("everyone", Context("u1")))
        # The previous snapshot is untouched.
        self.assertIn("search", before.toggles)
        self.assertTrue(before.toggles["everyone"].enabled)

    def test_failed_reload_keeps_snapshot(self):
        store = self.store
        before = store.snapshot

        _write(self.dir, "broken.json", "{")
        with self.assertRaises(ToggleFileError):
            store.reload()
        self.assertIs(store.snapshot, before)
        self.assertTrue(store.is_allowed("everyone", Context("u1")))

        with self.assertRaises(ToggleDirectoryNotFoundError):
            store.reload(os.path.join(self.dir, "missing"))
        self.assertIs(store.snapshot, before)
        self.assertEqual(store.toggle_count(), 4)

    def test_load_snapshot(self):
        store = ToggleStore()
        store.load_snapshot(ToggleSnapshot.from_bytes(self.store.snapshot.to_bytes()))
        self.assertTrue(store.is_allowed("checkout", {"user_id": "u1", "vip_level": 9}))
        self.assertEqual(store.toggle_count(), 4)


class TestReloadAtomicity(unittest.TestCase):
    def _toggle(self, prefix):
        return {
            "id": "t",
            "key": "t",
            "status": "enabled",
            "audiences": [
                {"id": f"{prefix}{i}", "name": prefix, "rules": [{"id": f"{prefix}r{i}", "attribute": "user_id", "operator": "equals", "value": "u1"}]}
                for i in range(20)
            ],
        }

    def test_readers_see_whole_snapshots(self):
        with tempfile.TemporaryDirectory() as old, tempfile.TemporaryDirectory() as new:
            _write(old, "t.json", self._toggle("old"))
            _write(new, "t.json", self._toggle("new"))
            store = ToggleStore(StoreOptions(toggles_path=old))
            store.reload()

            expected = {tuple(f"{p}{i}" for i in range(20)) for p in ("old", "new")}
            stop = threading.Event()
            failures = []

            def reader():
                while not stop.is_set():
                    ids = tuple(a.id for a in store.get_toggle("t").audiences)
                    if ids not in expected:
                        failures.append(ids)
                    if not store.is_allowed("t", Context("u1")):
                        failures.append("not allowed")

            readers = [threading.Thread(target=reader) for _ in range(4)]
            for r in readers:
                r.start()
            try:
                for i in range(100):
                    store.reload(new if i % 2 else old)
            finally:
                stop.set()
                for r in readers:
                    r.join()

            self.assertListEqual(failures, [])
