import unittest

from modelvault.metadata import (
    CURRENT_SCHEMA_VERSION,
    ChangelogEntry,
    IndexEntry,
    ModelIdentity,
    ModelIndex,
    ModelMetadata,
    ensure_changelog_entry,
)


class TestModelMetadata(unittest.TestCase):
    def test_to_dict_from_dict_keeps_fields(self) -> None:
        meta = ModelMetadata(
            identity=ModelIdentity(id="m1", name="Sword"),
            version="1.0.0",
            description="A sword",
            author="ana",
            asset_ids=["g1", "g2"],
            payload_paths=["sword.fbx"],
            tags=["weapon"],
            scopes=["rpg"],
            extra={"license": "cc0"},
            triangle_count=120,
        )
        ensure_changelog_entry(meta, "first", "ana", "1.0.0", 10)

        loaded = ModelMetadata.from_dict(meta.to_dict())

        self.assertEqual(loaded, meta)

    def test_from_dict_tolerates_wrong_types(self) -> None:
        meta = ModelMetadata.from_dict(
            {
                "identity": "not-an-object",
                "version": 3,
                "asset_ids": "g1",
                "tags": ["ok", 5, None],
                "created_ticks": "yesterday",
                "changelog": [{"summary": "no version"}, "junk", {"version": "1.0.0"}],
            }
        )

        self.assertIsNone(meta.identity)
        self.assertIsNone(meta.version)
        self.assertEqual(meta.asset_ids, [])
        self.assertEqual(meta.tags, ["ok"])
        self.assertEqual(meta.created_ticks, 0)
        self.assertEqual([c.version for c in meta.changelog], ["1.0.0"])
        self.assertEqual(meta.changelog[0].author, "unknown")

    def test_legacy_camel_case_is_migrated(self) -> None:
        meta = ModelMetadata.from_dict(
            {
                "schemaVersion": 0,
                "identity": {"id": "m1", "name": "Old"},
                "version": "0.9.0",
                "assetGuids": ["g1"],
                "payloadRelativePaths": ["old.fbx"],
                "createdTimeTicks": 42,
                "tags": {"values": ["legacy", "legacy", " "]},
                "modelImporters": {"old.fbx": {"materialImportMode": "None"}},
            }
        )

        self.assertEqual(meta.schema_version, CURRENT_SCHEMA_VERSION)
        self.assertEqual(meta.asset_ids, ["g1"])
        self.assertEqual(meta.payload_paths, ["old.fbx"])
        self.assertEqual(meta.created_ticks, 42)
        self.assertEqual(meta.tags, ["legacy"])
        self.assertEqual(meta.importer_settings["old.fbx"].material_import_mode, "None")

    def test_display_name_falls_back_to_id(self) -> None:
        self.assertEqual(ModelMetadata(identity=ModelIdentity(id="m1")).display_name, "m1")
        self.assertEqual(ModelMetadata(identity=None).display_name, "")


class TestChangelog(unittest.TestCase):
    def test_second_write_replaces_entry(self) -> None:
        meta = ModelMetadata(identity=ModelIdentity(id="m1"), version="1.0.0")

        ensure_changelog_entry(meta, "first", "ana", "1.0.0", 10)
        ensure_changelog_entry(meta, "second", "bo", "1.0.0", 20)

        self.assertEqual(meta.changelog, [ChangelogEntry(version="1.0.0", summary="second", author="bo", timestamp=20)])

    def test_version_match_is_case_insensitive(self) -> None:
        meta = ModelMetadata()
        ensure_changelog_entry(meta, "a", "x", "Legacy", 1)
        ensure_changelog_entry(meta, "b", "x", "legacy", 2)
        self.assertEqual(len(meta.changelog), 1)
        self.assertEqual(meta.changelog[0].summary, "b")

    def test_defaults_for_blank_values(self) -> None:
        meta = ModelMetadata()
        entry = ensure_changelog_entry(meta, "  ", None, "1.0.0", 0)
        self.assertEqual(entry.summary, "Updated")
        self.assertEqual(entry.author, "unknown")
        self.assertGreater(entry.timestamp, 0)


class TestModelIndex(unittest.TestCase):
    def test_from_dict_skips_invalid_entries(self) -> None:
        index = ModelIndex.from_dict(
            {
                "entries": [
                    {"id": "a", "latest_version": "1.0.0"},
                    {"name": "no id"},
                    {"id": "b", "latestVersion": "2.0.0", "projectTags": ["x"]},
                    42,
                ],
                "versions": {"a": ["1.0.0", "0.9.0", "1.0.0"]},
            }
        )

        self.assertEqual(len(index), 2)
        self.assertEqual(index.get("b").latest_version, "2.0.0")
        self.assertEqual(index.get("b").scopes, ["x"])
        self.assertEqual(index.known_versions("a"), ["1.0.0", "0.9.0"])

    def test_visible_entries_by_scope(self) -> None:
        index = ModelIndex(
            entries={
                "open": IndexEntry(id="open"),
                "rpg": IndexEntry(id="rpg", scopes=["rpg"]),
                "racing": IndexEntry(id="racing", scopes=["racing"]),
            }
        )

        self.assertEqual(len(index.visible_entries()), 3)
        self.assertEqual({e.id for e in index.visible_entries("rpg")}, {"open", "rpg"})

    def test_record_and_forget_version(self) -> None:
        index = ModelIndex()
        index.record_version("m", "1.0.0")
        index.record_version("m", "1.0.0")
        index.record_version("m", "1.1.0")
        self.assertEqual(index.known_versions("m"), ["1.0.0", "1.1.0"])

        self.assertTrue(index.forget_version("m", "1.0.0"))
        self.assertFalse(index.forget_version("m", "1.0.0"))
        self.assertTrue(index.forget_version("m", "1.1.0"))
        self.assertEqual(index.known_versions("m"), [])

    def test_round_trip(self) -> None:
        index = ModelIndex(entries={"m": IndexEntry(id="m", name="M", latest_version="1.0.0", tags=["t"])})
        index.record_version("m", "1.0.0")
        self.assertEqual(ModelIndex.from_dict(index.to_dict()), index)


if __name__ == "__main__":
    unittest.main()
