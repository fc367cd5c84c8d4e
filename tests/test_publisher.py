import tempfile
import unittest
from pathlib import Path

from modelvault.client import InvalidArgumentError, InvalidOperationError, NotFoundError, RepositoryIOError
from modelvault.index import ModelIndexService
from modelvault.metadata import ModelIdentity, ModelMetadata
from modelvault.publisher import VersionPublisher
from modelvault.repository import FileSystemRepository


class FlakyRepository(FileSystemRepository):
    """Fails uploads whose repository path contains ``fail_on``."""

    def __init__(self, root: Path, fail_on: str) -> None:
        super().__init__(root)
        self.fail_on = fail_on
        self.index_saves = 0

    async def upload_file(self, repo_path: str, local_path: Path) -> None:
        if self.fail_on in repo_path:
            raise RepositoryIOError(f"upload refused: {repo_path}")
        await super().upload_file(repo_path, local_path)

    async def save_index(self, index) -> None:
        self.index_saves += 1
        await super().save_index(index)


def _payload(root: Path) -> Path:
    local = root / "local"
    (local / "textures").mkdir(parents=True)
    (local / "a.mesh").write_bytes(b"mesh-bytes")
    (local / "textures" / "b.tex").write_bytes(b"tex-bytes")
    (local / "model.json").write_text("{}", encoding="utf-8")
    return local


class TestSubmit(unittest.IsolatedAsyncioTestCase):
    async def test_submit_uploads_payload_and_updates_index(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            repo = FileSystemRepository(Path(td) / "repo")
            index = ModelIndexService(repo)
            publisher = VersionPublisher(repo, index, clock=lambda: 1000, id_factory=lambda: "abc123")
            meta = ModelMetadata(identity=ModelIdentity(name="Sword"), version="1.0.0")

            root = await publisher.submit_new_version(meta, _payload(Path(td)))

            self.assertEqual(root, "abc123/1.0.0")
            self.assertEqual(meta.model_id, "abc123")
            self.assertEqual(meta.created_ticks, 1000)
            self.assertEqual(meta.author, "unknown")
            self.assertEqual([(c.version, c.summary) for c in meta.changelog], [("1.0.0", "Initial submission")])
            self.assertEqual(meta.payload_paths, ["a.mesh", "textures/b.tex"])
            self.assertEqual(
                await repo.list_files("abc123"),
                ["abc123/1.0.0/a.mesh", "abc123/1.0.0/model.json", "abc123/1.0.0/textures/b.tex"],
            )
            stored = await repo.load_metadata("abc123", "1.0.0")
            self.assertEqual(stored.identity.name, "Sword")
            self.assertEqual((await index.get_entry("abc123")).latest_version, "1.0.0")

    async def test_submit_keeps_existing_id_and_summary(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            repo = FileSystemRepository(Path(td) / "repo")
            publisher = VersionPublisher(repo, ModelIndexService(repo))
            meta = ModelMetadata(identity=ModelIdentity(id="fixed", name="Shield"), version="2.0.0", author="ana")

            await publisher.submit_new_version(meta, _payload(Path(td)), "Rebuilt mesh")

            self.assertEqual(meta.model_id, "fixed")
            self.assertEqual(meta.changelog[0].summary, "Rebuilt mesh")
            self.assertEqual(meta.changelog[0].author, "ana")

    async def test_submit_validates_before_writing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            repo = FileSystemRepository(Path(td) / "repo")
            publisher = VersionPublisher(repo, ModelIndexService(repo))

            with self.assertRaises(InvalidArgumentError):
                await publisher.submit_new_version(ModelMetadata(version=" "), _payload(Path(td)))
            with self.assertRaises(InvalidArgumentError):
                await publisher.submit_new_version(ModelMetadata(version="1.0.0"), Path(td) / "missing")

            self.assertFalse((Path(td) / "repo").exists())

    async def test_older_submission_does_not_regress_latest(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            repo = FileSystemRepository(Path(td) / "repo")
            index = ModelIndexService(repo)
            publisher = VersionPublisher(repo, index)
            local = _payload(Path(td))

            await publisher.submit_new_version(ModelMetadata(identity=ModelIdentity(id="m"), version="1.0.0"), local)
            await publisher.submit_new_version(ModelMetadata(identity=ModelIdentity(id="m"), version="0.9.0"), local)

            self.assertEqual((await index.get_entry("m")).latest_version, "1.0.0")
            self.assertEqual(await index.list_versions("m"), ["1.0.0", "0.9.0"])


class TestMetadataUpdate(unittest.IsolatedAsyncioTestCase):
    async def _submit(self, td: str, repo: FileSystemRepository) -> tuple[ModelIndexService, ModelMetadata]:
        index = ModelIndexService(repo)
        publisher = VersionPublisher(repo, index, clock=lambda: 1000)
        meta = ModelMetadata(identity=ModelIdentity(id="m", name="Sword"), version="1.0.0", description="v1")
        await publisher.submit_new_version(meta, _payload(Path(td)))
        return index, meta

    async def test_clone_on_write(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            repo = FileSystemRepository(Path(td) / "repo")
            index, meta = await self._submit(td, repo)
            publisher = VersionPublisher(repo, index, clock=lambda: 2000)

            meta.description = "v1 with better tags"
            published = await publisher.publish_metadata_update(meta, change_summary="Retagged", author="bo")

            self.assertEqual(published.version, "1.0.1")
            self.assertEqual(meta.version, "1.0.0")
            root = Path(td) / "repo" / "m"
            for rel in ("a.mesh", "textures/b.tex"):
                self.assertEqual((root / "1.0.1" / rel).read_bytes(), (root / "1.0.0" / rel).read_bytes())

            old = await repo.load_metadata("m", "1.0.0")
            new = await repo.load_metadata("m", "1.0.1")
            self.assertEqual(old.description, "v1")
            self.assertEqual(new.description, "v1 with better tags")
            self.assertEqual(new.updated_ticks, 2000)
            self.assertEqual([(c.version, c.summary, c.author) for c in new.changelog], [
                ("1.0.0", "Initial submission", "unknown"),
                ("1.0.1", "Retagged", "bo"),
            ])
            self.assertEqual((await index.get_entry("m")).latest_version, "1.0.1")

    async def test_default_summary_and_custom_bump(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            repo = FileSystemRepository(Path(td) / "repo")
            index, meta = await self._submit(td, repo)
            publisher = VersionPublisher(repo, index)

            published = await publisher.publish_metadata_update(meta, "1.0.0", bump_strategy=lambda v: v.bump_minor())

            self.assertEqual(published.version, "1.1.0")
            self.assertEqual(published.changelog[-1].summary, "Metadata updated")

    async def test_same_version_skips_clone(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            repo = FileSystemRepository(Path(td) / "repo")
            index, meta = await self._submit(td, repo)
            publisher = VersionPublisher(repo, index)

            published = await publisher.publish_metadata_update(meta, "1.0.0", bump_strategy=lambda v: v)

            self.assertEqual(published.version, "1.0.0")
            self.assertEqual(len(published.changelog), 1)
            self.assertEqual(published.changelog[0].summary, "Metadata updated")

    async def test_invalid_base_versions(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            repo = FileSystemRepository(Path(td) / "repo")
            index, meta = await self._submit(td, repo)
            publisher = VersionPublisher(repo, index)

            with self.assertRaises(InvalidOperationError):
                await publisher.publish_metadata_update(ModelMetadata(identity=ModelIdentity(id="m")))
            with self.assertRaises(InvalidOperationError):
                await publisher.publish_metadata_update(meta, "legacy")
            with self.assertRaises(InvalidArgumentError):
                await publisher.publish_metadata_update(ModelMetadata(identity=None, version="1.0.0"))
            with self.assertRaises(NotFoundError):
                await publisher.publish_metadata_update(meta, "3.0.0")

    async def test_republishing_an_existing_version_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            repo = FlakyRepository(Path(td) / "repo", fail_on="never")
            index, meta = await self._submit(td, repo)
            publisher = VersionPublisher(repo, index)
            await publisher.publish_metadata_update(meta, "1.0.0")
            repo.fail_on = "1.0.1/textures"

            with self.assertRaises(InvalidOperationError):
                await publisher.publish_metadata_update(meta, "1.0.0")

            self.assertEqual((await index.get_entry("m")).latest_version, "1.0.1")
            self.assertEqual((await repo.load_metadata("m", "1.0.1")).version, "1.0.1")
            self.assertTrue((Path(td) / "repo" / "m" / "1.0.1" / "textures" / "b.tex").is_file())

    async def test_blank_author_takes_change_author(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            repo = FileSystemRepository(Path(td) / "repo")
            index, meta = await self._submit(td, repo)
            meta.author = " "

            published = await VersionPublisher(repo, index).publish_metadata_update(meta, author="bo")

            self.assertEqual(published.author, "bo")
            self.assertEqual((await repo.load_metadata("m", "1.0.1")).author, "bo")

    async def test_failed_clone_leaves_index_and_target_untouched(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            repo = FlakyRepository(Path(td) / "repo", fail_on="1.0.1/textures")
            index, meta = await self._submit(td, repo)
            publisher = VersionPublisher(repo, index)
            saves_before = repo.index_saves

            with self.assertRaises(RepositoryIOError):
                await publisher.publish_metadata_update(meta)

            self.assertEqual(repo.index_saves, saves_before)
            self.assertEqual((await index.get_entry("m")).latest_version, "1.0.0")
            self.assertFalse((Path(td) / "repo" / "m" / "1.0.1").exists())
            self.assertEqual(await index.list_versions("m"), ["1.0.0"])


if __name__ == "__main__":
    unittest.main()
