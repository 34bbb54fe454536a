"""
SnapNote — Content Cache Unit Tests
====================================

What:  Tests for the filesystem and in-memory ContentCache adapters and
       the model registry they store artifacts for.
How:   FileSystemContentCache runs against pytest's tmp_path.
"""

import pytest

from snapnote.exceptions import PersistenceError, UnknownModelError
from snapnote.schemas.models import ModelCategory
from snapnote.services.content_cache import (
    FileSystemContentCache,
    InMemoryContentCache,
    manifest_key,
    model_namespace,
)
from snapnote.services.model_registry import (
    MODEL_REGISTRY,
    available_models,
    get_model,
    models_by_category,
    recommended_model,
)


class TestFileSystemContentCache:
    def setup_method(self):
        self.weights = f"{model_namespace('tiny')}weights.gguf"

    @pytest.mark.asyncio
    async def test_streamed_entry_is_visible(self, tmp_path):
        cache = FileSystemContentCache(str(tmp_path))
        async with cache.open_writer(self.weights) as writer:
            await writer.write(b"abc")
            await writer.write(b"def")

        assert await cache.has(self.weights)
        assert cache.local_path(self.weights).read_bytes() == b"abcdef"
        assert await cache.keys("models/") == [self.weights]

    @pytest.mark.asyncio
    async def test_delete_by_prefix_removes_namespace_only(self, tmp_path):
        cache = FileSystemContentCache(str(tmp_path))
        await cache.put(self.weights, b"123")
        await cache.put(manifest_key("tiny"), b"{}")
        await cache.put(f"{model_namespace('other')}weights.gguf", b"456")

        deleted = await cache.delete_by_prefix(model_namespace("tiny"))

        assert deleted == 2
        assert await cache.keys() == ["models/other/weights.gguf"]
        assert not (tmp_path / "models" / "tiny").exists()

    @pytest.mark.asyncio
    async def test_usage_counts_cached_bytes(self, tmp_path):
        cache = FileSystemContentCache(str(tmp_path))
        await cache.put(self.weights, b"x" * 2048)

        usage = await cache.usage()

        assert usage.used_bytes == 2048
        assert usage.quota_bytes >= usage.used_bytes

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["", "/etc/passwd", "models/../../escape"])
    async def test_keys_cannot_escape_root(self, tmp_path, key):
        cache = FileSystemContentCache(str(tmp_path))
        with pytest.raises(PersistenceError):
            await cache.put(key, b"nope")


class TestInMemoryContentCache:
    @pytest.mark.asyncio
    async def test_partial_entry_visible_while_writing(self):
        cache = InMemoryContentCache()
        async with cache.open_writer("models/a/w.gguf") as writer:
            await writer.write(b"half")
            assert await cache.has("models/a/w.gguf")

        assert cache.read("models/a/w.gguf") == b"half"
        assert cache.write_count == 1

    @pytest.mark.asyncio
    async def test_usage_unavailable_without_quota(self):
        assert await InMemoryContentCache(quota_bytes=None).usage() is None

    @pytest.mark.asyncio
    async def test_usage_reports_quota(self):
        cache = InMemoryContentCache(quota_bytes=1024 ** 3)
        await cache.put("models/a/w.gguf", b"x" * 10)

        usage = await cache.usage()

        assert usage.used_bytes == 10
        assert usage.available_gb == 1.0

    @pytest.mark.asyncio
    async def test_local_path_unsupported(self):
        assert InMemoryContentCache().local_path("models/a/w.gguf") is None


class TestModelRegistry:
    def test_lookup_by_id(self):
        assert get_model("Phi-3-mini-4k-instruct-q4").category == ModelCategory.SMALL

    def test_unknown_id_raises(self):
        with pytest.raises(UnknownModelError):
            get_model("gpt-17")

    def test_size_cap_hides_large_models(self):
        visible = {m.id for m in available_models(max_size_bytes=4 * 1024 ** 3)}
        assert "Mistral-7B-Instruct-v0.3-q4" not in visible
        assert len(visible) == len(MODEL_REGISTRY) - 1

    def test_models_by_category(self):
        grouped = models_by_category(max_size_bytes=4 * 1024 ** 3)
        assert [m.id for m in grouped["tiny"]] == ["Qwen2-0.5B-Instruct-q4", "TinyLlama-1.1B-Chat-q4"]
        assert grouped["medium"] == []

    @pytest.mark.parametrize(
        "available_gb, expected",
        [
            (0.5, "Qwen2-0.5B-Instruct-q4"),
            (2.0, "TinyLlama-1.1B-Chat-q4"),
            (4.0, "Phi-3-mini-4k-instruct-q4"),
            # Mistral is above the default 4GB cap, so the largest visible model wins
            (12.0, "Phi-3-mini-4k-instruct-q4"),
        ],
    )
    def test_recommended_model(self, available_gb, expected):
        assert recommended_model(available_gb).id == expected

    def test_descriptor_serializes_size_in_gb(self):
        data = get_model("TinyLlama-1.1B-Chat-q4").model_dump()
        assert data["approx_size_gb"] == 0.7
