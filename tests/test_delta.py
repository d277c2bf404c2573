"""Tests for git-backed storage and delta detection."""

import tempfile
from pathlib import Path

import pytest
import yaml

from chartifact.artifact import decompose, to_file_tree
from chartifact.errors import ChannelNotFoundError, GitOperationError
from chartifact.git import ChannelTreeStore, DeltaDetector, GitRepository
from chartifact.git.delta import DeltaChangeType, format_for_cli
from chartifact.git.repository import ChangedPath, parse_name_status

FIXTURES = Path(__file__).parent / "fixtures"


def _export(store, fixture, mutate=None):
    artifact = decompose((FIXTURES / fixture).read_text(encoding="utf-8"))
    if mutate:
        mutate(artifact)
    return store.write_channel(artifact.channel_dir, to_file_tree(artifact))


def _seeded_repo(tmp):
    repo = GitRepository.open_or_init(tmp)
    store = ChannelTreeStore(tmp)
    _export(store, "channel.xml")
    _export(store, "router.xml")
    repo.commit("Initial export")
    return repo, store


# --- Repository ---


def test_open_rejects_non_repository():
    with tempfile.TemporaryDirectory() as tmp:
        with pytest.raises(GitOperationError):
            GitRepository(tmp)


def test_commit_returns_none_when_clean():
    with tempfile.TemporaryDirectory() as tmp:
        repo, _ = _seeded_repo(tmp)
        assert repo.head_sha() is not None
        assert repo.commit("nothing") is None


def test_read_file_at_revision():
    with tempfile.TemporaryDirectory() as tmp:
        repo, _ = _seeded_repo(tmp)
        text = repo.read_file_at("HEAD", "channels/router/channel.yaml")
        assert yaml.safe_load(text)["id"] == "a1b2c3d4-0002"
        assert repo.read_file_at("HEAD", "channels/missing/channel.yaml") is None


def test_parse_name_status():
    out = "M\tchannels/a/channel.yaml\nR100\tchannels/b/x.js\tchannels/b/y.js\nD\tenvironments/prod.yaml"
    assert parse_name_status(out) == [
        ChangedPath("M", "channels/a/channel.yaml"),
        ChangedPath("R", "channels/b/y.js", "channels/b/x.js"),
        ChangedPath("D", "environments/prod.yaml"),
    ]


# --- Store ---


def test_store_lists_and_finds_channels():
    with tempfile.TemporaryDirectory() as tmp:
        _, store = _seeded_repo(tmp)
        assert store.list_channels() == ["adt-inbound", "router"]
        assert store.channel_ids() == {"a1b2c3d4-0001": "adt-inbound", "a1b2c3d4-0002": "router"}
        assert store.find_channel("a1b2c3d4-0002") == "router"
        assert store.find_channel("ADT Inbound") == "adt-inbound"
        assert store.find_channel("router") == "router"
        with pytest.raises(ChannelNotFoundError):
            store.find_channel("nope")


def test_store_write_replaces_stale_files():
    with tempfile.TemporaryDirectory() as tmp:
        _, store = _seeded_repo(tmp)
        assert "scripts/preprocess.js" in store.read_channel("adt-inbound")
        _export(store, "channel.xml", lambda a: setattr(a.scripts, "preprocess", "return message;"))
        assert "scripts/preprocess.js" not in store.read_channel("adt-inbound")


# --- Delta ---


def test_delta_isolates_single_changed_channel():
    with tempfile.TemporaryDirectory() as tmp:
        repo, store = _seeded_repo(tmp)

        def bump(artifact):
            artifact.destinations[0].properties["host"] = "/var/outbox2"

        _export(store, "router.xml", bump)
        repo.commit("Change router outbox")

        result = DeltaDetector(repo).detect("HEAD~1", "HEAD")
        assert result.affected_ids == ["a1b2c3d4-0002"]
        change = result.changed_channels[0]
        assert change.channel_dir == "router"
        assert change.change_type is DeltaChangeType.MODIFIED
        assert "destinations/write-file" in change.sections


def test_delta_added_and_deleted_channels():
    with tempfile.TemporaryDirectory() as tmp:
        repo, store = _seeded_repo(tmp)
        store.delete_channel("router")
        repo.commit("Remove router")

        result = DeltaDetector(repo).detect()
        assert len(result.changed_channels) == 1
        deleted = result.changed_channels[0]
        assert deleted.change_type is DeltaChangeType.DELETED
        # id comes from the older revision for deletions
        assert deleted.channel_id == "a1b2c3d4-0002"

        _export(store, "router.xml")
        repo.commit("Restore router")
        added = DeltaDetector(repo).detect().changed_channels[0]
        assert added.change_type is DeltaChangeType.ADDED


def test_delta_environment_change_cascades():
    with tempfile.TemporaryDirectory() as tmp:
        repo, _ = _seeded_repo(tmp)
        repo.write_file("environments/prod.yaml", "DB_HOST: db.prod\n")
        repo.commit("Prod variables")

        plain = DeltaDetector(repo).detect()
        assert plain.changed_channels == []
        assert [c.file for c in plain.changed_config] == ["environments/prod.yaml"]
        assert plain.cascaded_channels == []

        cascaded = DeltaDetector(repo).detect(include_cascades=True)
        assert sorted(cascaded.affected_ids) == ["a1b2c3d4-0001", "a1b2c3d4-0002"]
        assert "Cascaded:" in format_for_cli(cascaded)


def test_delta_ignores_other_trees():
    with tempfile.TemporaryDirectory() as tmp:
        repo, _ = _seeded_repo(tmp)
        _export(ChannelTreeStore(tmp, "trees/prod"), "router.xml")
        repo.commit("Promote router")

        assert DeltaDetector(repo).detect().changed_channels == []
        prod = DeltaDetector(repo, "trees/prod").detect()
        assert [c.channel_dir for c in prod.changed_channels] == ["router"]


def test_classify_is_pure():
    detector = DeltaDetector(repository=None)
    result = detector.classify(
        [
            ChangedPath("M", "channels/a/source/connector.yaml"),
            ChangedPath("M", "channels/a/scripts/deploy.js"),
            ChangedPath("A", "channels/b/channel.yaml"),
            ChangedPath("A", "channels/b/_raw.xml"),
            ChangedPath("M", "README.md"),
        ]
    )
    assert [(c.channel_dir, c.change_type) for c in result.changed_channels] == [
        ("a", DeltaChangeType.MODIFIED),
        ("b", DeltaChangeType.ADDED),
    ]
    assert result.changed_channels[0].sections == ["scripts", "source"]


def test_no_changes_summary():
    with tempfile.TemporaryDirectory() as tmp:
        repo, _ = _seeded_repo(tmp)
        result = DeltaDetector(repo).detect("HEAD", "HEAD")
        assert result.summary == "Delta: No changes detected"
