"""Unit tests for the filesystem object store."""

import pytest

from hanzicards.exceptions import StorageError
from hanzicards.utils.object_store import LocalObjectStore


def test_put_get_exists(tmp_path):
    store = LocalObjectStore(tmp_path)

    store.put("media/ab/image.png", b"png", "image/png")

    assert store.exists("media/ab/image.png")
    assert store.get("media/ab/image.png") == b"png"
    assert store.get("media/ab/audio.mp3") is None


def test_put_replaces_without_leaving_temp_files(tmp_path):
    store = LocalObjectStore(tmp_path)

    store.put("media/ab/image.png", b"v1", "image/png")
    store.put("media/ab/image.png", b"v2", "image/png")

    assert store.get("media/ab/image.png") == b"v2"
    assert store.list_keys() == ["media/ab/image.png"]


def test_delete(tmp_path):
    store = LocalObjectStore(tmp_path)
    store.put("media/ab/image.png", b"png", "image/png")

    assert store.delete("media/ab/image.png") is True
    assert store.delete("media/ab/image.png") is False


def test_list_keys_by_prefix(tmp_path):
    store = LocalObjectStore(tmp_path)
    store.put("media/ab/image.png", b"1", "image/png")
    store.put("other/cd/image.png", b"2", "image/png")

    assert store.list_keys("media/") == ["media/ab/image.png"]


def test_rejects_keys_outside_root(tmp_path):
    store = LocalObjectStore(tmp_path / "root")

    with pytest.raises(StorageError):
        store.put("../escape.png", b"x", "image/png")


def test_url_for(tmp_path):
    store = LocalObjectStore(tmp_path, public_url="https://cdn.example.com/")
    assert store.url_for("media/ab/image.png") == "https://cdn.example.com/media/ab/image.png"
