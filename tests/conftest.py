"""
Shared test fixtures and configuration for pytest.
"""

import logging
import sys
from pathlib import Path

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from snapvault.core.notify import NotificationChannel, RecordingSubscriber


logger = logging.getLogger(__name__)


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def working_dir(tmp_path: Path) -> Path:
    """Empty working directory holding snapshot directories."""
    path = tmp_path / "snapshots"
    path.mkdir()
    return path


@pytest.fixture
def snapshot_dir(working_dir: Path) -> Path:
    """A snapshot directory with one root node and two blobs."""
    from snapvault.snapshot.blob_store import BlobStore
    from snapvault.snapshot.paths import SnapshotPaths
    from snapvault.snapshot.state import SnapshotState

    paths = SnapshotPaths.of(working_dir / "Alice")
    store = BlobStore(paths.files_dir, create_dirs=True)
    mapping = {
        "chara/human/c0101/obj/body/b0001/texture/c0101b0001_d.tex": store.put(b"body texture", "x.tex"),
        "chara/equipment/e0001/model/c0101e0001_top.mdl": store.put(b"top model", "x.mdl"),
    }
    state = SnapshotState.create("Alice@Balmung", 73, mapping, "")
    state.save(paths.root)
    return paths.root


@pytest.fixture
def recorder() -> RecordingSubscriber:
    """Recorder of every notification published on the test channel."""
    return RecordingSubscriber()


@pytest.fixture
def notifications(recorder: RecordingSubscriber) -> NotificationChannel:
    """Notification channel with the recorder subscribed."""
    channel = NotificationChannel(log_notifications=False)
    channel.subscribe(recorder)
    return channel
