"""
Unit tests for live capture, the snapshot index and the snapshot library.
"""

import hashlib
import json

import pytest

from snapvault.core.notify import NotificationLevel
from snapvault.snapshot.blob_store import BlobStore
from snapvault.snapshot.capture import (
    CaptureData,
    CaptureService,
    JsonCaptureProvider,
    ManipulationProvider,
)
from snapvault.snapshot.index import SnapshotIndex, SnapshotLibrary, split_actor_name
from snapvault.snapshot.paths import SnapshotPaths
from snapvault.snapshot.state import SnapshotState


def sha1_upper(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest().upper()


def write_capture(tmp_path, actor="Bob", world_id=None, **extra):
    sources = tmp_path / "sources"
    sources.mkdir(exist_ok=True)
    (sources / "top.mdl").write_bytes(b"model bytes")
    (sources / "top.tex").write_bytes(b"texture bytes")
    document = {
        "Actor": actor,
        "Files": {
            "chara/equipment/e0001/model/c0101e0001_top.mdl": "sources/top.mdl",
            "chara/equipment/e0001/texture/v01_c0101e0001_top_d.tex": "sources/top.tex",
        },
        "Glamourer": "glamourer-design",
        "Customize": {"Bones": {"n_root": {"Scaling": {"X": 1.2, "Y": 1.2, "Z": 1.2}}}},
    }
    if world_id is not None:
        document["WorldId"] = world_id
    document.update(extra)
    path = tmp_path / "capture.json"
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


class FixedManipulation(ManipulationProvider):
    def get_manipulation(self, actor):
        return "override-manip"


@pytest.mark.unit
class TestActorNames:
    """Tests for split_actor_name."""

    def test_split(self):
        assert split_actor_name("Alice@Balmung") == ("Alice", "Balmung")
        assert split_actor_name("Alice") == ("Alice", None)
        assert split_actor_name("Alice@") == ("Alice", None)
        assert split_actor_name("") == ("", None)


@pytest.mark.unit
class TestSnapshotIndex:
    """Tests for SnapshotIndex lookups."""

    def test_find_by_world_id(self, working_dir, snapshot_dir):
        index = SnapshotIndex()
        assert index.refresh(working_dir) == 1
        assert index.find("Alice", 73) == snapshot_dir

    def test_find_by_world_name(self, working_dir, snapshot_dir):
        SnapshotState.create("Alice@Zalera", 41, {"a.tex": "A" * 40}).save(working_dir / "Alice Zalera")
        index = SnapshotIndex()
        index.refresh(working_dir)

        assert index.find("Alice@Balmung") == snapshot_dir
        assert index.find("Alice", 41) == working_dir / "Alice Zalera"
        assert index.find("Alice") is None

    def test_single_candidate_matches_by_name(self, working_dir, snapshot_dir):
        index = SnapshotIndex()
        index.refresh(working_dir)
        assert index.find("alice") == snapshot_dir
        assert index.find("Nobody") is None

    def test_unreadable_metadata_is_skipped(self, working_dir, snapshot_dir):
        broken = working_dir / "Broken"
        broken.mkdir()
        (broken / "snapshot.json").write_text("{oops", encoding="utf-8")

        index = SnapshotIndex()
        assert index.refresh(working_dir) == 1

    def test_missing_working_directory(self, tmp_path):
        assert SnapshotIndex().refresh(tmp_path / "absent") == 0


@pytest.mark.unit
class TestCaptureService:
    """Tests for CaptureService."""

    def test_first_capture_creates_snapshot(self, working_dir, tmp_path, notifications, recorder):
        provider = JsonCaptureProvider(write_capture(tmp_path, world_id=21))

        snapshot_path = CaptureService(working_dir, notifications).capture("Bob", provider)

        assert snapshot_path == working_dir / "Bob"
        state = SnapshotState.load(snapshot_path)
        assert state.source_actor == "Bob"
        assert state.source_world_id == 21
        assert dict(state.file_replacements) == {
            "chara/equipment/e0001/model/c0101e0001_top.mdl": sha1_upper(b"model bytes"),
            "chara/equipment/e0001/texture/v01_c0101e0001_top_d.tex": sha1_upper(b"texture bytes"),
        }
        assert BlobStore(SnapshotPaths.of(snapshot_path).files_dir).count() == 2

        glamourer = state.histories.glamourer.last
        assert glamourer.description.startswith("Glamourer Update - ")
        assert glamourer.file_map_id == state.current_file_map_id
        customize = state.histories.customize.last
        assert customize.description.startswith("Customize+ Update - ")
        assert customize.customize_template != ""

        assert recorder.messages(NotificationLevel.SUCCESS) == ["New snapshot for 'Bob' created successfully."]
        assert recorder.event_count() == 1

    def test_unchanged_capture_adds_nothing(self, working_dir, tmp_path, notifications, recorder):
        provider = JsonCaptureProvider(write_capture(tmp_path))
        service = CaptureService(working_dir, notifications)

        service.capture("Bob", provider)
        service.capture("Bob", provider)

        state = SnapshotState.load(working_dir / "Bob")
        assert len(state.chain) == 1
        assert len(state.histories.glamourer) == 1
        assert len(state.histories.customize) == 1
        assert recorder.messages(NotificationLevel.SUCCESS)[-1] == "Snapshot for 'Bob' updated successfully."

    def test_changed_capture_appends_node(self, working_dir, tmp_path, notifications):
        service = CaptureService(working_dir, notifications)
        service.capture("Bob", JsonCaptureProvider(write_capture(tmp_path)))

        (tmp_path / "sources" / "new.tex").write_bytes(b"new texture")
        second = write_capture(tmp_path, Files={
            "chara/equipment/e0001/texture/v01_c0101e0001_top_d.tex": "sources/new.tex",
        }, Glamourer="glamourer-design-2")
        service.capture("Bob", JsonCaptureProvider(second))

        state = SnapshotState.load(working_dir / "Bob")
        assert len(state.chain) == 2
        assert state.current_node.parent_id is not None
        assert dict(state.file_replacements) == {
            "chara/equipment/e0001/texture/v01_c0101e0001_top_d.tex": sha1_upper(b"new texture"),
        }
        assert len(state.histories.glamourer) == 2

    def test_capture_updates_existing_snapshot_by_world(self, working_dir, snapshot_dir, tmp_path, notifications):
        provider = JsonCaptureProvider(write_capture(tmp_path, actor="Alice", world_id=73))

        assert CaptureService(working_dir, notifications).capture("Alice", provider) == snapshot_dir
        assert len(SnapshotState.load(snapshot_dir).chain) == 2

    def test_manipulation_provider_overrides(self, working_dir, tmp_path, notifications):
        provider = JsonCaptureProvider(write_capture(tmp_path, Manipulation="captured"))
        CaptureService(working_dir, notifications).capture("Bob", provider, FixedManipulation())

        assert SnapshotState.load(working_dir / "Bob").resolve_manipulation() == "override-manip"

    def test_missing_source_keeps_declared_hash(self, working_dir, notifications):
        data = CaptureData(file_replacements={"chara/a.tex": "D" * 40})
        snapshot_path = CaptureService(working_dir, notifications).update_snapshot("Eve", data)

        assert dict(SnapshotState.load(snapshot_path).file_replacements) == {"chara/a.tex": "D" * 40}

    def test_mismatched_declared_hash_uses_content_hash(self, working_dir, tmp_path, notifications):
        source = tmp_path / "a.tex"
        source.write_bytes(b"actual bytes")
        data = CaptureData(
            file_replacements={"chara/a.tex": "E" * 40},
            blob_sources={"E" * 40: source},
        )
        snapshot_path = CaptureService(working_dir, notifications).update_snapshot("Eve", data)

        assert dict(SnapshotState.load(snapshot_path).file_replacements) == {
            "chara/a.tex": sha1_upper(b"actual bytes")
        }

    def test_provider_without_data(self, working_dir, notifications, recorder):
        class Offline:
            def capture(self, actor):
                return None

        assert CaptureService(working_dir, notifications).capture("Ghost", Offline()) is None
        assert recorder.messages(NotificationLevel.ERROR) == ["Could not capture data for Ghost."]


@pytest.mark.unit
class TestJsonCaptureProvider:
    """Tests for JsonCaptureProvider."""

    def test_missing_sources_are_skipped(self, tmp_path):
        path = write_capture(tmp_path, Files={"chara/gone.tex": "sources/gone.tex"})
        data = JsonCaptureProvider(path).capture()
        assert data.file_replacements == {}

    def test_customize_string_is_kept(self, tmp_path):
        path = write_capture(tmp_path, Customize='{"Bones": {}}')
        assert JsonCaptureProvider(path).capture().customize == '{"Bones": {}}'

    def test_non_object_document_rejected(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(ValueError):
            JsonCaptureProvider(path)


@pytest.mark.unit
class TestSnapshotLibrary:
    """Tests for listing and renaming snapshots."""

    def test_list(self, working_dir, snapshot_dir):
        summaries = SnapshotLibrary(working_dir).list_snapshots()
        assert [s.name for s in summaries] == ["Alice"]
        assert summaries[0].source_actor == "Alice@Balmung"
        assert summaries[0].file_map_count == 1
        assert summaries[0].replacement_count == 2

    def test_rename(self, working_dir, snapshot_dir, notifications, recorder):
        target = SnapshotLibrary(working_dir, notifications).rename("Alice", "Alice Old")

        assert target == working_dir / "Alice Old"
        assert not snapshot_dir.exists()
        assert recorder.messages(NotificationLevel.SUCCESS) == ["Snapshot 'Alice' renamed to 'Alice Old'."]
        assert recorder.event_count() == 1

    def test_rename_rejects_empty_name(self, working_dir, snapshot_dir, notifications, recorder):
        assert SnapshotLibrary(working_dir, notifications).rename("Alice", "   ") is None
        assert recorder.messages(NotificationLevel.ERROR) == ["New snapshot name cannot be empty."]

    def test_rename_rejects_existing_name(self, working_dir, snapshot_dir, notifications, recorder):
        (working_dir / "Taken").mkdir()
        assert SnapshotLibrary(working_dir, notifications).rename("Alice", "Taken") is None
        assert recorder.messages(NotificationLevel.ERROR) == ["A directory with that name already exists."]
        assert snapshot_dir.exists()
