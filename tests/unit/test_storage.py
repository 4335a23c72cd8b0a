import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.services.storage import LocalBlobStorage


@pytest.fixture
def blobs(tmp_path):
    storage = LocalBlobStorage(root_dir=str(tmp_path / "blobs"))
    storage.init_directories()
    return storage


class TestLocalBlobStorage:
    @pytest.mark.asyncio
    async def test_put_then_get(self, blobs):
        stored = await blobs.put("user-1/req-1", b'{"a": 1}', "application/json")
        assert stored.key == "user-1/req-1"
        assert stored.size == 8
        assert stored.url.startswith("file://")

        data, content_type = await blobs.get("user-1/req-1")
        assert data == b'{"a": 1}'
        assert content_type == "application/json"

    @pytest.mark.asyncio
    async def test_put_overwrites(self, blobs):
        await blobs.put("user-1/req-1", b"old")
        await blobs.put("user-1/req-1", b"new", "text/plain")
        assert await blobs.get("user-1/req-1") == (b"new", "text/plain")

    @pytest.mark.asyncio
    async def test_missing_meta_falls_back_to_octet_stream(self, blobs):
        await blobs.put("user-1/req-1", b"x", "text/plain")
        (blobs.root / "user-1" / "req-1.meta").unlink()
        assert await blobs.get("user-1/req-1") == (b"x", "application/octet-stream")

    @pytest.mark.asyncio
    async def test_missing_blob(self, blobs):
        with pytest.raises(NotFoundError):
            await blobs.get("user-1/nope")

    @pytest.mark.asyncio
    async def test_delete(self, blobs):
        await blobs.put("user-1/req-1", b"x")
        assert await blobs.delete("user-1/req-1") is True
        assert await blobs.delete("user-1/req-1") is False
        assert not (blobs.root / "user-1" / "req-1").exists()
        assert not (blobs.root / "user-1" / "req-1.meta").exists()
        with pytest.raises(NotFoundError):
            await blobs.get("user-1/req-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["", "/etc/passwd", "../outside", "user-1/../../outside"])
    async def test_rejects_keys_outside_root(self, blobs, key):
        with pytest.raises(ValidationError):
            await blobs.put(key, b"x")
