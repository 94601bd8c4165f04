from __future__ import annotations

import pytest

from media_codec import bytes_to_payload
from media_store import HANDLE_PREFIX, MediaStore
from tests.fakes import PNG_10x10


def test_acquire_open_release():
    store = MediaStore()
    handle = store.acquire(PNG_10x10, "image/png")

    assert handle.startswith(HANDLE_PREFIX)
    assert handle in store
    assert store.open(handle) == (PNG_10x10, "image/png")
    assert store.to_payload(handle) == bytes_to_payload(PNG_10x10, "image/png")

    store.release(handle)
    assert handle not in store
    with pytest.raises(KeyError):
        store.open(handle)


def test_handles_are_unique_per_acquire():
    store = MediaStore()
    first = store.acquire(b"same", "image/png")
    second = store.acquire(b"same", "image/png")
    assert first != second
    assert len(store) == 2


def test_double_release_is_an_error():
    store = MediaStore()
    handle = store.acquire(b"x", "image/png")
    store.release(handle)
    with pytest.raises(KeyError, match="already released"):
        store.release(handle)


def test_release_all_empties_the_store():
    store = MediaStore()
    for i in range(3):
        store.acquire(bytes([i]), "image/png")
    assert store.release_all() == 3
    assert len(store) == 0
    assert store.release_all() == 0
