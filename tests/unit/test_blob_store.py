"""
Unit tests for the content-addressed blob store.
"""

import hashlib
from unittest.mock import patch

import pytest

from snapvault.snapshot import blob_store as blob_store_module
from snapvault.snapshot.blob_store import BlobStore, normalize_extension, preferred_extension
from snapvault.snapshot.hashing import compute_blob_hash, compute_file_hash, hashes_equal, is_blob_hash


def sha1_upper(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest().upper()


@pytest.mark.unit
class TestHashing:
    """Tests for blob hashing helpers."""

    def test_blob_hash_is_uppercase_sha1(self):
        assert compute_blob_hash(b"hello") == sha1_upper(b"hello")
        assert is_blob_hash(compute_blob_hash(b"hello"))

    def test_file_hash_matches_bytes_hash(self, tmp_path):
        path = tmp_path / "data.bin"
        path.write_bytes(b"x" * 5000)
        assert compute_file_hash(path) == compute_blob_hash(b"x" * 5000)

    def test_hashes_compare_case_insensitively(self):
        assert hashes_equal("abcdef", "ABCDEF")
        assert not hashes_equal("abcdef", "abcdee")


@pytest.mark.unit
class TestExtensionRules:
    """Tests for preferred blob extension derivation."""

    def test_extension_from_logical_path_is_lowercased(self):
        assert preferred_extension("chara/equipment/e0001/material/mt_top.MTRL") == ".mtrl"

    def test_backslash_paths(self):
        assert preferred_extension("chara\\human\\c0101\\skin.tex") == ".tex"

    def test_missing_extension_falls_back_to_dat(self):
        assert preferred_extension("chara/no_extension") == ".dat"
        assert preferred_extension(None) == ".dat"
        assert normalize_extension("") == ".dat"

    def test_too_long_extension_falls_back_to_dat(self):
        assert normalize_extension(".abcdefghijklmnopq") == ".dat"

    def test_invalid_characters_fall_back_to_dat(self):
        assert normalize_extension(".t?x") == ".dat"

    def test_extension_without_dot(self):
        assert normalize_extension("Tex") == ".tex"


@pytest.mark.unit
class TestBlobStore:
    """Tests for BlobStore."""

    def test_put_writes_preferred_name(self, tmp_path):
        store = BlobStore(tmp_path / "_files", create_dirs=True)
        blob_hash = store.put(b"material", "chara/a/mt_a.mtrl")

        assert blob_hash == sha1_upper(b"material")
        assert (tmp_path / "_files" / f"{blob_hash}.mtrl").read_bytes() == b"material"

    def test_put_without_hint_uses_legacy_extension(self, tmp_path):
        store = BlobStore(tmp_path / "_files", create_dirs=True)
        blob_hash = store.put(b"data")
        assert store.legacy_path(blob_hash).is_file()

    def test_put_twice_writes_once(self, tmp_path):
        store = BlobStore(tmp_path / "_files", create_dirs=True)
        original = blob_store_module.atomic_write_bytes

        with patch.object(blob_store_module, "atomic_write_bytes", wraps=original) as writer:
            first = store.put(b"same bytes", "a.tex")
            second = store.put(b"same bytes", "b.tex")

        assert first == second
        assert writer.call_count == 1
        assert store.count() == 1

    def test_put_skips_when_legacy_blob_exists(self, tmp_path):
        store = BlobStore(tmp_path / "_files", create_dirs=True)
        blob_hash = sha1_upper(b"old")
        store.legacy_path(blob_hash).write_bytes(b"old")

        assert store.put(b"old", "chara/x.tex") == blob_hash
        assert not store.preferred_path(blob_hash, "chara/x.tex").exists()
        assert store.count() == 1

    def test_find_any_prefers_non_dat(self, tmp_path):
        store = BlobStore(tmp_path / "_files", create_dirs=True)
        blob_hash = sha1_upper(b"both")
        store.legacy_path(blob_hash).write_bytes(b"both")
        (store.files_dir / f"{blob_hash}.tex").write_bytes(b"both")

        assert store.find_any(blob_hash).suffix == ".tex"

    def test_find_any_ignores_hash_case(self, tmp_path):
        store = BlobStore(tmp_path / "_files", create_dirs=True)
        blob_hash = store.put(b"payload", "x.mdl")
        assert store.find_any(blob_hash.lower()) == store.files_dir / f"{blob_hash}.mdl"

    def test_find_any_miss(self, tmp_path):
        store = BlobStore(tmp_path / "_files")
        assert store.find_any("0" * 40) is None
        assert not store.exists("0" * 40)

    def test_resolve_order(self, tmp_path):
        store = BlobStore(tmp_path / "_files", create_dirs=True)
        blob_hash = sha1_upper(b"legacy")
        store.legacy_path(blob_hash).write_bytes(b"legacy")

        # Hint names a file that does not exist: fall back to what exists
        assert store.resolve(blob_hash, "chara/x.tex") == store.legacy_path(blob_hash)

        # Miss: the preferred path is the write target
        other = "F" * 40
        assert store.resolve(other, "chara/x.tex") == store.files_dir / f"{other}.tex"

    def test_read(self, tmp_path):
        store = BlobStore(tmp_path / "_files", create_dirs=True)
        blob_hash = store.put(b"read me", "a.tex")
        assert store.read(blob_hash) == b"read me"
        assert store.read("A" * 40) is None

    def test_import_file(self, tmp_path):
        source = tmp_path / "source.tex"
        source.write_bytes(b"texture bytes")
        store = BlobStore(tmp_path / "_files", create_dirs=True)

        blob_hash = store.import_file(source, "chara/y.tex")
        assert blob_hash == sha1_upper(b"texture bytes")
        assert store.find_any(blob_hash).name == f"{blob_hash}.tex"

    def test_iter_blobs_skips_hidden_files(self, tmp_path):
        store = BlobStore(tmp_path / "_files", create_dirs=True)
        blob_hash = store.put(b"visible", "a.tex")
        (store.files_dir / ".tmp-file").write_bytes(b"x")

        assert [h for h, _ in store.iter_blobs()] == [blob_hash]
