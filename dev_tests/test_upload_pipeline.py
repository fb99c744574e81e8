"""
Tests for services/upload_pipeline.py - multipart submission to stored assets.

Test Areas:
1. Naming and dedup
2. Dropped and skipped parts
3. Markup and plain fields
4. Failure handling (write failure, unknown MIME, size limit)
5. Output formatters
"""

import hashlib
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from services.asset_store import LocalAssetStore
from services.errors import StorageError, UnknownMimeType, UploadFailed, UploadTooLargeError, ValidationError
from services.upload_pipeline import Formatter, UploadPipeline


def _md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


class _FailingStore(LocalAssetStore):
    """Local store that refuses to write one specific key."""

    def __init__(self, *args, failing_key: str, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing_key = failing_key

    async def put(self, stream, key, *, content_type=None):
        if key == self.failing_key:
            raise StorageError(f"bucket rejected {key}")
        return await super().put(stream, key, content_type=content_type)


@pytest.fixture
def store(storage_settings):
    return LocalAssetStore(storage_settings.local_root, chunk_size=storage_settings.chunk_size)


@pytest.fixture
def pipeline(store, storage_settings):
    return UploadPipeline(store, storage_settings, verbose=True)


# ============================================================================
# Naming and dedup
# ============================================================================

class TestNaming:
    """Stored names and the original-name lookup map."""

    @pytest.mark.asyncio
    async def test_assets_are_keyed_by_normalized_stem(self, pipeline, store, form_factory, upload_factory, png_bytes):
        """
        Given: A file named 'Hero Banner.PNG'
        When: The submission is processed
        Then: The asset map uses 'hero-banner' and the stored name is <prefix>-<md5>.png
        """
        form = form_factory(("image", upload_factory(png_bytes["hero"], "Hero Banner.PNG", "image/png")))

        result = await pipeline.collect(form, prefix="m1")

        stored_name = f"m1-{_md5(png_bytes['hero'])}.png"
        assert result.assets == {"hero-banner": stored_name}
        assert await store.list("m1-") == [stored_name]
        assert (Path(store.root) / stored_name).read_bytes() == png_bytes["hero"]

    @pytest.mark.asyncio
    async def test_identical_bytes_share_one_stored_name(self, pipeline, store, form_factory, upload_factory, png_bytes):
        """
        Given: Two files with different names but identical bytes
        When: Uploaded with the same prefix
        Then: Both map to the same stored name and one object is written
        """
        form = form_factory(
            ("a", upload_factory(png_bytes["logo"], "logo.png")),
            ("b", upload_factory(png_bytes["logo"], "logo-copy.png")),
        )

        result = await pipeline.collect(form, prefix="m1")

        assert result.assets["logo"] == result.assets["logo-copy"]
        assert len(await store.list("m1-")) == 1

    @pytest.mark.asyncio
    async def test_extension_comes_from_declared_mime_type(self, pipeline, form_factory, upload_factory, png_bytes):
        form = form_factory(("a", upload_factory(png_bytes["logo"], "logo.png", "image/jpeg")))
        result = await pipeline.collect(form, prefix="m1")
        assert result.assets["logo"].endswith(".jpg")

    @pytest.mark.asyncio
    async def test_configured_hash_algorithm_is_used(self, store, storage_settings, form_factory, upload_factory, png_bytes):
        settings = storage_settings.model_copy(update={"hash_algorithm": "sha256"})
        pipeline = UploadPipeline(store, settings)
        form = form_factory(("a", upload_factory(png_bytes["logo"], "logo.png")))

        result = await pipeline.collect(form, prefix="m1")

        assert result.assets["logo"] == f"m1-{hashlib.sha256(png_bytes['logo']).hexdigest()}.png"


# ============================================================================
# Dropped and skipped parts
# ============================================================================

class TestDroppedParts:
    """Parts that never reach the asset map."""

    @pytest.mark.asyncio
    async def test_zero_byte_and_nameless_files_are_excluded(self, pipeline, store, form_factory, upload_factory, png_bytes):
        """
        Given: One valid file, one zero-byte file and one nameless file
        When: The submission is processed
        Then: Only the valid file is stored and mapped
        """
        form = form_factory(
            ("a", upload_factory(png_bytes["logo"], "logo.png")),
            ("b", upload_factory(b"", "empty.png")),
            ("c", upload_factory(png_bytes["hero"], None)),
            ("d", upload_factory(png_bytes["footer"], "")),
        )

        result = await pipeline.collect(form, prefix="m1")

        assert list(result.assets) == ["logo"]
        assert len(await store.list("m1-")) == 1

    @pytest.mark.asyncio
    async def test_name_that_normalizes_to_nothing_is_skipped(self, pipeline, form_factory, upload_factory, png_bytes, caplog):
        form = form_factory(
            ("a", upload_factory(png_bytes["logo"], "日本語.png")),
            ("b", upload_factory(png_bytes["hero"], "hero.png")),
        )

        result = await pipeline.collect(form, prefix="m1")

        assert list(result.assets) == ["hero"]
        assert any("nothing left of the name" in record.getMessage() for record in caplog.records)

    @pytest.mark.asyncio
    async def test_spooled_files_are_removed(self, pipeline, storage_settings, form_factory, upload_factory, png_bytes):
        form = form_factory(
            ("a", upload_factory(png_bytes["logo"], "logo.png")),
            ("b", upload_factory(b"", "empty.png")),
        )

        await pipeline.collect(form, prefix="m1")

        assert list(Path(storage_settings.tmp_dir).iterdir()) == []


# ============================================================================
# Markup and plain fields
# ============================================================================

class TestMarkupAndFields:
    """The reserved markup field and non-file fields."""

    @pytest.mark.asyncio
    async def test_markup_file_is_read_as_text_not_stored(self, pipeline, store, form_factory, upload_factory, png_bytes):
        form = form_factory(
            ("markup", upload_factory(b"<p>{{logo}}</p>", "template.html", "text/html")),
            ("a", upload_factory(png_bytes["logo"], "logo.png")),
        )

        result = await pipeline.collect(form, prefix="t1")

        assert result.markup == "<p>{{logo}}</p>"
        assert list(result.assets) == ["logo"]
        assert len(await store.list("t1-")) == 1

    @pytest.mark.asyncio
    async def test_markup_as_plain_field(self, pipeline, form_factory):
        form = form_factory(("markup", "<table></table>"), ("name", "Spring"))

        result = await pipeline.collect(form, prefix="t1")

        assert result.markup == "<table></table>"
        assert result.fields == {"name": "Spring"}
        assert result.assets == {}


# ============================================================================
# Failure handling
# ============================================================================

class TestFailures:
    """Whole-submission failures."""

    @pytest.mark.asyncio
    async def test_one_failed_write_fails_the_submission(self, storage_settings, form_factory, upload_factory, png_bytes):
        """
        Given: Three distinct files where the store rejects the second
        When: The submission is processed
        Then: UploadFailed is raised, chained from the store error, and no result is returned
        """
        failing_key = f"m1-{_md5(png_bytes['hero'])}.png"
        store = _FailingStore(storage_settings.local_root, failing_key=failing_key)
        pipeline = UploadPipeline(store, storage_settings)
        form = form_factory(
            ("a", upload_factory(png_bytes["logo"], "logo.png")),
            ("b", upload_factory(png_bytes["hero"], "hero.png")),
            ("c", upload_factory(png_bytes["footer"], "footer.png")),
        )

        with pytest.raises(UploadFailed) as exc_info:
            await pipeline.process(form, prefix="m1", formatter=Formatter.GROUPS)

        assert isinstance(exc_info.value.__cause__, StorageError)
        assert len(exc_info.value.errors) == 1
        assert list(Path(storage_settings.tmp_dir).iterdir()) == []

    @pytest.mark.asyncio
    async def test_unknown_mime_type_rejects_before_any_write(self, storage_settings, form_factory, upload_factory, png_bytes):
        store = AsyncMock()
        pipeline = UploadPipeline(store, storage_settings)
        form = form_factory(
            ("a", upload_factory(png_bytes["logo"], "logo.png")),
            ("b", upload_factory(png_bytes["hero"], "hero.xyz", "application/x-unknown")),
        )

        with pytest.raises(UnknownMimeType):
            await pipeline.collect(form, prefix="m1")

        store.put.assert_not_called()

    @pytest.mark.asyncio
    async def test_oversized_part_is_rejected(self, store, storage_settings, form_factory, upload_factory):
        settings = storage_settings.model_copy(update={"max_size_bytes": 16})
        pipeline = UploadPipeline(store, settings)
        form = form_factory(("a", upload_factory(b"x" * 17, "big.png")))

        with pytest.raises(UploadTooLargeError):
            await pipeline.collect(form, prefix="m1")

        assert await store.list("m1-") == []
        assert list(Path(settings.tmp_dir).iterdir()) == []

    @pytest.mark.asyncio
    async def test_invalid_prefix(self, pipeline, form_factory):
        with pytest.raises(ValidationError):
            await pipeline.collect(form_factory(), prefix="../m1")


# ============================================================================
# Output formatters
# ============================================================================

class TestFormatters:
    """editor and groups response shapes."""

    @pytest.mark.asyncio
    async def test_editor_shape(self, pipeline, form_factory, upload_factory, png_bytes):
        form = form_factory(("files[]", upload_factory(png_bytes["logo"], "logo.png")))

        payload = await pipeline.process(form, prefix="m1", formatter="editor")

        stored_name = f"m1-{_md5(png_bytes['logo'])}.png"
        assert payload == {
            "files": [
                {
                    "name": stored_name,
                    "size": len(png_bytes["logo"]),
                    "type": "image/png",
                    "url": f"/filemanager/img/{stored_name}",
                    "thumbnailUrl": f"/filemanager/img/{stored_name}",
                }
            ]
        }

    @pytest.mark.asyncio
    async def test_editor_without_widget_file(self, pipeline, form_factory):
        with pytest.raises(ValidationError):
            await pipeline.process(form_factory(("name", "x")), prefix="m1", formatter=Formatter.EDITOR)

    @pytest.mark.asyncio
    async def test_groups_shape_merges_fields(self, pipeline, form_factory, upload_factory, png_bytes):
        form = form_factory(
            ("name", "Spring template"),
            ("markup", "<p>hi</p>"),
            ("logo", upload_factory(png_bytes["logo"], "logo.png")),
        )

        payload = await pipeline.process(form, prefix="t1", formatter=Formatter.GROUPS)

        assert payload == {
            "name": "Spring template",
            "markup": "<p>hi</p>",
            "assets": {"logo": f"t1-{_md5(png_bytes['logo'])}.png"},
        }

    @pytest.mark.asyncio
    async def test_groups_without_markup_omits_key(self, pipeline, form_factory):
        payload = await pipeline.process(form_factory(), prefix="t1")
        assert payload == {"assets": {}}
