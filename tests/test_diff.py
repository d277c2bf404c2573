"""Tests for structural channel diffs."""

from pathlib import Path

from chartifact.artifact import assemble, decompose
from chartifact.artifact.diff import ChangeType, ChannelDiff, format_for_cli, new_channel_result

FIXTURES = Path(__file__).parent / "fixtures"


def _artifact():
    return decompose((FIXTURES / "channel.xml").read_text(encoding="utf-8"))


def _paths(result):
    return [c.path for c in result.config_changes]


def test_identical_channels_have_no_changes():
    result = ChannelDiff().diff(_artifact(), _artifact())
    assert not result.has_changes
    assert result.summary == "ADT Inbound: no changes"


def test_formatting_differences_are_not_drift():
    reformatted = decompose(assemble(_artifact()).replace("\n    ", "\n\t"))
    assert not ChannelDiff().diff(_artifact(), reformatted).has_changes


def test_property_change_reported_with_dotted_path():
    old, new = _artifact(), _artifact()
    new.destinations[0].properties["username"] = "svc"
    result = ChannelDiff().diff(old, new)
    assert _paths(result) == ["destinations.archive-to-db.connector.properties.username"]
    change = result.config_changes[0]
    assert change.type is ChangeType.CHANGED
    assert change.old_value == "${DB_USER:mirth}"
    assert change.new_value == "svc"


def test_nested_property_added_and_removed():
    old, new = _artifact(), _artifact()
    del new.source.properties["respondOnNewConnection"]
    new.source.properties["listenerConnectorProperties"]["backlog"] = "50"
    result = ChannelDiff().diff(old, new)
    types = {c.path: c.type for c in result.config_changes}
    assert types["source.connector.properties.respondOnNewConnection"] is ChangeType.REMOVED
    assert types["source.connector.properties.listenerConnectorProperties.backlog"] is ChangeType.ADDED


def test_list_property_change():
    old, new = _artifact(), _artifact()
    new.destinations[0].properties["parameters"]["string"].append("facility")
    result = ChannelDiff().diff(old, new)
    assert _paths(result) == ["destinations.archive-to-db.connector.properties.parameters.string[2]"]


def test_step_attribute_and_body_changes():
    old, new = _artifact(), _artifact()
    new.source.transformer.steps[2].enabled = True
    new.source.transformer.steps[0].body += "\nlogger.info(mrn);"
    result = ChannelDiff().diff(old, new)

    assert "source.connector.transformer.steps.step-2-stamp-facility.enabled" in _paths(result)
    assert len(result.script_changes) == 1
    script = result.script_changes[0]
    assert script.path == "source/transformer/step-0-normalize-mrn.js"
    assert script.type is ChangeType.CHANGED
    assert "+logger.info(mrn);" in script.unified_diff
    assert script.unified_diff.startswith("--- old/source/transformer/step-0-normalize-mrn.js")


def test_channel_script_added():
    old, new = _artifact(), _artifact()
    old.scripts.postprocess = None
    result = ChannelDiff().diff(old, new)
    assert [(s.path, s.type) for s in result.script_changes] == [("scripts/postprocess.js", ChangeType.ADDED)]


def test_destination_added_and_removed():
    old, new = _artifact(), _artifact()
    new.destinations = new.destinations[:1]
    result = ChannelDiff().diff(old, new)
    assert ("destinations.forward-to-router", ChangeType.REMOVED) in [
        (c.path, c.type) for c in result.config_changes
    ]

    reverse = ChannelDiff().diff(new, old)
    assert ("destinations.forward-to-router", ChangeType.ADDED) in [
        (c.path, c.type) for c in reverse.config_changes
    ]


def test_destination_reorder_reported():
    old, new = _artifact(), _artifact()
    new.destinations.reverse()
    result = ChannelDiff().diff(old, new)
    assert _paths(result) == ["destinations.order"]


def test_ignore_whitespace():
    old, new = _artifact(), _artifact()
    new.scripts.preprocess = new.scripts.preprocess.replace(" + ", "   +   ")
    assert ChannelDiff().diff(old, new).has_changes
    assert not ChannelDiff(ignore_whitespace=True).diff(old, new).has_changes


def test_unified_diff_empty_for_equal_text():
    assert ChannelDiff().unified_diff("a\nb", "a\nb") == ""


def test_format_for_cli():
    old, new = _artifact(), _artifact()
    new.metadata.revision = 5
    new.scripts.preprocess = "logger.debug('pre');\nreturn message;"
    text = format_for_cli(ChannelDiff().diff(old, new))
    assert text.startswith("Channel: ADT Inbound (2 changes)")
    assert "metadata.revision: 4 -> 5" in text
    assert "--- scripts/preprocess.js ---" in text
    assert "+logger.debug('pre');" in text


def test_new_channel_result():
    result = new_channel_result("Fresh")
    assert result.change_count == 1
    assert "no changes" not in format_for_cli(result)
