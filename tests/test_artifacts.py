"""Tests for the expiring, ref-namespaced artifact store."""

import pytest

from ciplan.artifacts import ArtifactStore, parse_duration
from ciplan.errors import PipelineConfigError

DAY = 86400


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    return ArtifactStore(tmp_path / "store", clock=clock)


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    (ws / "dist").mkdir(parents=True)
    (ws / "dist" / "pkg-1.0.tar.gz").write_text("package")
    (ws / "VERSION").write_text("1.0\n")
    return ws


class TestArtifactStore:
    def test_save_and_restore(self, store, workspace, tmp_path) -> None:
        record = store.save("build", "main", ["dist/", "VERSION"], workspace)
        assert sorted(record.files) == ["VERSION", "dist/pkg-1.0.tar.gz"]

        target = tmp_path / "downstream"
        restored = store.restore("build", "main", target)
        assert restored is not None
        assert (target / "VERSION").read_text() == "1.0\n"
        assert (target / "dist" / "pkg-1.0.tar.gz").read_text() == "package"

    def test_globs(self, store, workspace) -> None:
        record = store.save("build", "main", ["dist/*.tar.gz"], workspace)
        assert record.files == ["dist/pkg-1.0.tar.gz"]

    def test_nothing_matched(self, store, workspace) -> None:
        assert store.save("build", "main", ["missing/"], workspace) is None
        assert store.load("build", "main") is None

    def test_paths_outside_workspace_are_ignored(self, store, workspace) -> None:
        assert store.save("build", "main", ["../"], workspace) is None

    def test_default_expiry_is_thirty_days(self, store, workspace, clock) -> None:
        record = store.save("build", "main", ["VERSION"], workspace)
        assert record.expires_at == clock.now + 30 * DAY

        clock.advance(30 * DAY - 1)
        assert store.load("build", "main") is not None
        clock.advance(1)
        assert store.load("build", "main") is None

    def test_never_expires(self, store, workspace, clock) -> None:
        store.save("build", "main", ["VERSION"], workspace, expire_in="never")
        clock.advance(3650 * DAY)
        assert store.load("build", "main") is not None

    def test_namespaced_by_ref_and_job(self, store, workspace, tmp_path) -> None:
        store.save("build", "main", ["VERSION"], workspace)
        (workspace / "VERSION").write_text("2.0-dev\n")
        store.save("build", "feature/x", ["VERSION"], workspace)
        store.save("docs", "main", ["dist/"], workspace)

        target = tmp_path / "t"
        store.restore("build", "main", target)
        assert (target / "VERSION").read_text() == "1.0\n"
        assert store.load("build", "feature/x").ref == "feature/x"
        assert len(store.records()) == 3

    def test_records_from_another_pipeline_count_as_absent(self, store, workspace, tmp_path) -> None:
        store.save("build", "main", ["VERSION"], workspace, pipeline_id="run-1")
        assert store.load("build", "main", "run-1") is not None
        assert store.load("build", "main", "run-2") is None
        assert store.restore("build", "main", tmp_path / "next", "run-2") is None
        assert not (tmp_path / "next" / "VERSION").exists()
        # without a pipeline id any live record is returned
        assert store.load("build", "main").pipeline_id == "run-1"

    def test_reports_are_recorded(self, store, workspace) -> None:
        record = store.save("unit", "main", ["VERSION"], workspace, reports={"junit": ["VERSION"]})
        assert store.load("unit", "main").reports == {"junit": ["VERSION"]}
        assert record.reports == {"junit": ["VERSION"]}

    def test_prune_expired(self, store, workspace, clock) -> None:
        store.save("short", "main", ["VERSION"], workspace, expire_in="1 hour")
        store.save("long", "main", ["VERSION"], workspace, expire_in="1 week")
        clock.advance(2 * 3600)

        removed = store.prune_expired()
        assert [r.job for r in removed] == ["short"]
        assert [r.job for r in store.records()] == ["long"]
        assert not store.archive_path("short", "main").exists()


class TestParseDuration:
    @pytest.mark.parametrize(
        "value, seconds",
        [
            ("30 days", 30 * DAY),
            ("1 week 2 days", 9 * DAY),
            ("1 week and 2 days", 9 * DAY),
            ("3 hrs", 3 * 3600),
            ("90", 90),
            (90, 90),
            ("2 mins", 120),
            (None, 30 * DAY),
        ],
    )
    def test_durations(self, value, seconds) -> None:
        assert parse_duration(value) == seconds

    def test_never(self) -> None:
        assert parse_duration("never") is None
        assert parse_duration("Never") is None

    @pytest.mark.parametrize("value", ["5 parsecs", "soon", "days"])
    def test_invalid(self, value) -> None:
        with pytest.raises(PipelineConfigError):
            parse_duration(value)
