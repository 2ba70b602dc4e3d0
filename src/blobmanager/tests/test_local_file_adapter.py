import os
import sys

import pytest

from blobmanager import LocalFileAdapter, StorageServiceError


@pytest.fixture
def adapter(tmp_path):
    adapter = LocalFileAdapter(tmp_path / "account", page_size=2)
    adapter.create_container("images")
    return adapter


def status_of(excinfo):
    return excinfo.value.status_code


def test_create_container_conflict(adapter):
    with pytest.raises(StorageServiceError) as excinfo:
        adapter.create_container("images")
    assert status_of(excinfo) == 409


def test_missing_container_is_not_found(adapter):
    with pytest.raises(StorageServiceError) as excinfo:
        adapter.get_container_properties("nope")
    assert status_of(excinfo) == 404


def test_container_properties_keep_metadata(adapter):
    adapter.create_container("tagged", metadata={"owner": "bosh"})
    assert adapter.get_container_properties("tagged")["metadata"] == {"owner": "bosh"}


def test_list_blobs_pages_with_markers(adapter):
    for name in ["e", "a", "c", "b", "d"]:
        adapter.create_page_blob("images", name, 512)

    first = adapter.list_blobs("images")
    second = adapter.list_blobs("images", marker=first.next_marker)
    third = adapter.list_blobs("images", marker=second.next_marker)

    assert [b.name for b in first.entries] == ["a", "b"]
    assert [b.name for b in second.entries] == ["c", "d"]
    assert [b.name for b in third.entries] == ["e"]
    assert third.next_marker is None


def test_list_blobs_hides_snapshots(adapter):
    adapter.create_page_blob("images", "nested/disk.vhd", 512, metadata={"k": "v"})
    adapter.create_blob_snapshot("images", "nested/disk.vhd")

    page = adapter.list_blobs("images")

    assert [b.name for b in page.entries] == ["nested/disk.vhd"]
    assert page.entries[0].metadata == {"k": "v"}


def test_create_page_blob_requires_alignment(adapter):
    with pytest.raises(StorageServiceError) as excinfo:
        adapter.create_page_blob("images", "disk", 1000)
    assert status_of(excinfo) == 400


def test_put_blob_pages_validates_ranges(adapter):
    adapter.create_page_blob("images", "disk", 1024)

    with pytest.raises(StorageServiceError) as excinfo:
        adapter.put_blob_pages("images", "disk", 100, 611, b"x" * 512)
    assert status_of(excinfo) == 400

    with pytest.raises(StorageServiceError) as excinfo:
        adapter.put_blob_pages("images", "disk", 0, 511, b"x" * 10)
    assert status_of(excinfo) == 400

    with pytest.raises(StorageServiceError) as excinfo:
        adapter.put_blob_pages("images", "disk", 1024, 1535, b"x" * 512)
    assert status_of(excinfo) == 416


def test_put_blob_pages_to_missing_blob(adapter):
    with pytest.raises(StorageServiceError) as excinfo:
        adapter.put_blob_pages("images", "ghost", 0, 511, b"x" * 512)
    assert status_of(excinfo) == 404


def test_delete_blob_with_snapshots_requires_include(adapter):
    adapter.create_page_blob("images", "disk", 512)
    snapshot_id = adapter.create_blob_snapshot("images", "disk")

    with pytest.raises(StorageServiceError) as excinfo:
        adapter.delete_blob("images", "disk")
    assert status_of(excinfo) == 409

    adapter.delete_blob("images", "disk", delete_snapshots="include")
    with pytest.raises(StorageServiceError) as excinfo:
        adapter.delete_blob("images", "disk", snapshot=snapshot_id)
    assert status_of(excinfo) == 404


def test_snapshot_keeps_content(adapter):
    adapter.create_page_blob("images", "disk", 512)
    adapter.put_blob_pages("images", "disk", 0, 511, b"a" * 512)
    snapshot_id = adapter.create_blob_snapshot("images", "disk")
    adapter.put_blob_pages("images", "disk", 0, 511, b"b" * 512)

    snapshot_path = adapter._snapshot_dir("images", "disk") / snapshot_id
    assert snapshot_path.read_bytes() == b"a" * 512


def test_copy_rejects_non_file_sources(adapter):
    with pytest.raises(StorageServiceError) as excinfo:
        adapter.copy_blob_from_uri("images", "disk", "https://example.com/x.vhd")
    assert status_of(excinfo) == 400


def test_copy_missing_source(adapter, tmp_path):
    with pytest.raises(StorageServiceError) as excinfo:
        adapter.copy_blob_from_uri("images", "disk", (tmp_path / "nope").as_uri())
    assert status_of(excinfo) == 404


def test_abort_copy_without_pending_copy(adapter):
    adapter.create_page_blob("images", "disk", 512)
    with pytest.raises(StorageServiceError) as excinfo:
        adapter.abort_copy("images", "disk", "some-copy-id")
    assert status_of(excinfo) == 409


def test_local_path_traversal_protection(adapter):
    with pytest.raises(ValueError) as excinfo:
        adapter.create_page_blob("images", "../../etc/passwd", 512)
    assert "escapes base directory" in str(excinfo.value)

    # Also test malicious container name
    with pytest.raises(ValueError):
        adapter.create_container("../outside_container")


def test_reserved_snapshot_name(adapter):
    with pytest.raises(StorageServiceError) as excinfo:
        adapter.create_page_blob("images", ".snapshots/disk", 512)
    assert status_of(excinfo) == 400


def test_symlink_outside_protection(adapter, tmp_path):
    if not hasattr(os, "symlink"):
        pytest.skip("Symlinks not supported on this platform")
    if sys.platform == "win32":
        # Windows requires admin or Developer Mode for symlinks
        try:
            test_link = tmp_path / "test_link"
            test_target = tmp_path / "test_target"
            test_target.write_text("x")
            test_link.symlink_to(test_target)
        except OSError:
            pytest.skip("Symlink creation not permitted on this Windows system")

    # Create a file outside the account
    outside_file = tmp_path / "outside.vhd"
    outside_file.write_bytes(b"\x00" * 512)

    # Create a symlink inside the container pointing to the outside file
    symlink_path = adapter._container_path("images") / "link.vhd"
    symlink_path.symlink_to(outside_file)

    with pytest.raises(ValueError):
        adapter.put_blob_pages("images", "link.vhd", 0, 511, b"x" * 512)

    with pytest.raises(ValueError):
        adapter.delete_blob("images", "link.vhd")

    assert outside_file.exists(), "Outside file should not be deleted"
