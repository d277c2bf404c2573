"""Tests for decomposing channel documents and assembling them back."""

import copy
from pathlib import Path

import pytest

from chartifact.artifact import (
    AssembleOptions,
    ConnectorFiles,
    Step,
    assemble,
    decompose,
    from_file_tree,
    to_file_tree,
)
from chartifact.artifact.assembler import substitute_variables
from chartifact.artifact.decomposer import is_default_script, parse_step_file, step_header
from chartifact.artifact.models import StepListKind, sanitize_name
from chartifact.artifact.xmltree import elements, parse_document, trees_equal
from chartifact.errors import MalformedArtifactError

FIXTURES = Path(__file__).parent / "fixtures"
TRANSFORMER_PATH = "sourceConnector/transformer/elements"


def _fixture(name="channel.xml"):
    return (FIXTURES / name).read_text(encoding="utf-8")


def _root(xml):
    return parse_document(xml)[0]


# --- Decompose ---


def test_decompose_metadata():
    artifact = decompose(_fixture())
    meta = artifact.metadata
    assert meta.id == "a1b2c3d4-0001"
    assert meta.name == "ADT Inbound"
    assert meta.revision == 4
    assert meta.version == "3.9.1"
    assert meta.description == "Receives ADT messages and fans them out"
    assert meta.next_meta_data_id == 3
    assert meta.enabled is None
    assert artifact.channel_dir == "adt-inbound"


def test_decompose_source_connector():
    source = decompose(_fixture()).source
    assert source.transport_kind == "TCP Listener"
    assert source.mode == "SOURCE"
    assert source.wait_for_previous is True
    assert source.properties_kind == "com.mirth.connect.connectors.tcp.TcpReceiverProperties"
    assert source.properties_version == "3.9.1"
    assert source.properties["listenerConnectorProperties"] == {
        "host": "${LISTEN_HOST:0.0.0.0}",
        "port": "${LISTEN_PORT:6661}",
    }
    assert source.properties["pluginProperties"] == ""


def test_decompose_step_lists():
    source = decompose(_fixture()).source
    steps = source.transformer.steps
    assert [s.name for s in steps] == ["Normalize MRN", "Map patient name", "Stamp facility"]
    assert [s.sequence_number for s in steps] == [0, 1, 2]
    assert steps[1].kind == "com.mirth.connect.plugins.mapper.MapperStep"
    assert steps[2].enabled is False
    assert steps[0].body.startswith("var mrn")
    assert source.transformer.inbound_data_type == "HL7V2"

    rule = source.filter.steps[0]
    assert rule.operator == "NONE"
    assert rule.kind_version == "3.9.1"
    assert source.response_transformer is None


def test_decompose_destinations_in_order():
    artifact = decompose(_fixture())
    assert [d.name for d in artifact.destinations] == ["Archive to DB", "Forward to Router"]
    assert [d.dir_name for d in artifact.destinations] == ["archive-to-db", "forward-to-router"]
    db = artifact.destinations[0]
    assert db.properties["parameters"] == {"string": ["mrn", "patientName"]}
    assert db.response_transformer is not None
    assert db.response_transformer.steps == []
    assert artifact.destinations[1].transformer is None


def test_decompose_scripts():
    scripts = decompose(_fixture()).scripts
    assert scripts.preprocess.startswith("logger.info")
    assert is_default_script(scripts.deploy)
    assert not is_default_script(scripts.preprocess)


def test_decompose_rejects_wrong_root():
    with pytest.raises(MalformedArtifactError):
        decompose("<codeTemplate><id>1</id></codeTemplate>")


def test_decompose_rejects_missing_source():
    with pytest.raises(MalformedArtifactError):
        decompose("<channel><id>1</id><name>x</name></channel>")


def test_decompose_rejects_non_xml():
    with pytest.raises(MalformedArtifactError):
        decompose("not xml at all")


# --- Round trip ---


def test_round_trip_tree_equal():
    xml = _fixture()
    assert trees_equal(_root(assemble(decompose(xml))), _root(xml))


def test_round_trip_without_prolog():
    xml = _fixture("router.xml")
    out = assemble(decompose(xml))
    assert not out.startswith("<?xml")
    assert trees_equal(_root(out), _root(xml))


def test_prolog_and_comments_preserved():
    out = assemble(decompose(_fixture()))
    assert out.startswith('<?xml version="1.0" encoding="UTF-8" standalone="no"?>')
    assert "<!-- exported by engine 3.9.1 -->" in out


def test_file_tree_round_trip():
    xml = _fixture()
    files = {e.path: e.content for e in to_file_tree(decompose(xml))}
    rebuilt = from_file_tree(files)
    assert trees_equal(_root(assemble(rebuilt)), _root(xml))


def test_file_tree_layout():
    paths = {e.path for e in to_file_tree(decompose(_fixture()))}
    assert "channel.yaml" in paths
    assert "_raw.xml" in paths
    assert "source/connector.yaml" in paths
    assert "source/transformer.yaml" in paths
    assert "source/transformer/step-1-map-patient-name.js" in paths
    assert "source/filter/rule-0-only-adt.js" in paths
    assert "destinations/archive-to-db/connector.yaml" in paths
    assert "destinations/forward-to-router/connector.yaml" in paths
    assert "scripts/preprocess.js" in paths
    # stock templates are not written out
    assert "scripts/deploy.js" not in paths


def test_file_tree_requires_backbone():
    with pytest.raises(MalformedArtifactError):
        from_file_tree({"channel.yaml": "id: x\n"})


def test_hand_edits_flow_through_assembly():
    files = {e.path: e.content for e in to_file_tree(decompose(_fixture()))}
    files["destinations/archive-to-db/connector.yaml"] = files[
        "destinations/archive-to-db/connector.yaml"
    ].replace("org.postgresql.Driver", "com.example.Driver")
    step_path = "source/transformer/step-2-stamp-facility.js"
    files[step_path] = files[step_path].replace("'MAIN'", "'EAST'")
    files["scripts/deploy.js"] = "logger.info('deployed');"

    root = _root(assemble(from_file_tree(files)))
    assert root.findtext("destinationConnectors/connector/properties/driver") == "com.example.Driver"
    stamp = elements(root.find(TRANSFORMER_PATH))[2]
    assert "'EAST'" in stamp.findtext("script")
    assert root.findtext("deployScript") == "logger.info('deployed');"


def test_destination_order_survives_file_tree():
    artifact = decompose(_fixture())
    artifact.destinations.reverse()
    files = {e.path: e.content for e in to_file_tree(artifact)}
    rebuilt = from_file_tree(files)
    assert [d.name for d in rebuilt.destinations] == ["Forward to Router", "Archive to DB"]


# --- Assembly edits ---


def test_assemble_writes_modelled_fields():
    artifact = decompose(_fixture())
    artifact.metadata.name = "ADT Inbound v2"
    artifact.metadata.revision = 5
    artifact.destinations[0].properties["username"] = "svc_adt"
    artifact.source.transformer.steps[0].body = "return;"

    root = _root(assemble(artifact))
    assert root.findtext("name") == "ADT Inbound v2"
    assert root.findtext("revision") == "5"
    assert root.findtext("destinationConnectors/connector/properties/username") == "svc_adt"
    assert elements(root.find(TRANSFORMER_PATH))[0].findtext("script") == "return;"
    # unmodelled content survives
    mapper = elements(root.find(TRANSFORMER_PATH))[1]
    assert mapper.findtext("mapping") == "msg['PID']['PID.5']['PID.5.1'].toString()"
    assert root.findtext("properties/clearGlobalChannelMap") == "true"
    assert root.find("sourceConnector/transformer/inboundProperties") is not None


def test_assemble_never_introduces_missing_metadata():
    artifact = decompose(_fixture("router.xml"))
    artifact.metadata.description = "added later"
    artifact.metadata.enabled = False
    root = _root(assemble(artifact))
    assert root.find("description") is None
    assert root.find("enabled") is None


def test_assemble_keeps_interleaved_step_order():
    root = _root(assemble(decompose(_fixture())))
    names = [e.findtext("name") for e in elements(root.find(TRANSFORMER_PATH))]
    assert names == ["Normalize MRN", "Map patient name", "Stamp facility"]


def test_assemble_group_steps_by_kind():
    out = assemble(decompose(_fixture()), AssembleOptions(group_steps_by_kind=True))
    names = [e.findtext("name") for e in elements(_root(out).find(TRANSFORMER_PATH))]
    assert names == ["Normalize MRN", "Stamp facility", "Map patient name"]


def test_assemble_reordered_destinations_keep_their_slots():
    artifact = decompose(_fixture())
    artifact.destinations.reverse()
    root = _root(assemble(artifact))
    connectors = elements(root.find("destinationConnectors"))
    assert [c.findtext("name") for c in connectors] == ["Forward to Router", "Archive to DB"]
    assert connectors[0].find("transformer") is None
    assert connectors[1].find("transformer") is not None


def test_assemble_added_destination_clones_last_slot():
    artifact = decompose(_fixture())
    extra = copy.deepcopy(artifact.destinations[1])
    extra.name = "Forward to Audit"
    extra.meta_data_id = 3
    extra.properties["channelId"] = "a1b2c3d4-0003"
    artifact.destinations.append(extra)

    root = _root(assemble(artifact))
    connectors = elements(root.find("destinationConnectors"))
    assert len(connectors) == 3
    assert connectors[2].findtext("name") == "Forward to Audit"
    assert connectors[2].findtext("properties/channelId") == "a1b2c3d4-0003"
    assert connectors[2].find("properties").get("class") == "com.mirth.connect.connectors.vm.VmDispatcherProperties"


def test_assemble_removed_destination():
    artifact = decompose(_fixture())
    artifact.destinations = artifact.destinations[:1]
    root = _root(assemble(artifact))
    assert [c.findtext("name") for c in elements(root.find("destinationConnectors"))] == ["Archive to DB"]


def test_assemble_added_step():
    artifact = decompose(_fixture())
    artifact.destinations[0].transformer.steps.append(
        Step(
            name="Audit",
            sequence_number=1,
            body="logger.info('audit');",
            kind="com.mirth.connect.plugins.javascriptstep.JavaScriptStep",
        )
    )
    root = _root(assemble(artifact))
    items = elements(root.find("destinationConnectors/connector/transformer/elements"))
    assert [i.findtext("name") for i in items] == ["Pick MRN", "Audit"]


def test_assemble_substitutes_variables_single_pass():
    options = AssembleOptions(variables={"DB_HOST": "db.prod", "LISTEN_PORT": "${NESTED}"})
    root = _root(assemble(decompose(_fixture()), options))
    url = root.findtext("destinationConnectors/connector/properties/url")
    assert url == "jdbc:postgresql://db.prod:5432/adt"
    assert root.findtext("sourceConnector/properties/listenerConnectorProperties/port") == "${NESTED}"
    template = root.findtext("destinationConnectors/connector[2]/properties/channelTemplate")
    assert template == "${message.encodedData}"


def test_assemble_without_raw_tree():
    artifact = decompose(_fixture("router.xml"))
    artifact.raw_tree = None
    artifact.prolog = None
    root = _root(assemble(artifact))
    assert root.findtext("id") == "a1b2c3d4-0002"
    assert root.findtext("sourceConnector/transportName") == "Channel Reader"
    assert root.findtext("destinationConnectors/connector/name") == "Write File"


# --- Helpers ---


def test_substitute_variables_leaves_unknown():
    assert substitute_variables("${A}/${B:b}/${C}", {"A": "a"}) == "a/b/${C}"


def test_step_file_round_trip():
    step = Step(
        name="Only ADT",
        sequence_number=4,
        enabled=False,
        body="// keep me\nreturn true;",
        kind="com.mirth.connect.plugins.rulebuilder.RuleBuilderRule",
        kind_version="3.9.1",
        operator="AND",
    )
    assert parse_step_file(step_header(step) + step.body) == step


def test_sanitize_name():
    assert sanitize_name("Send to Lab (HL7)") == "send-to-lab-hl7"
    assert sanitize_name("***") == "unnamed"


def test_step_list_kinds():
    assert StepListKind.FILTER.step_prefix == "rule"
    assert StepListKind.RESPONSE_TRANSFORMER.element_tag == "responseTransformer"


def test_connector_step_list_accessors():
    connector = ConnectorFiles(name="x")
    assert connector.step_list(StepListKind.TRANSFORMER) is None


def _three_destinations(names):
    connectors = "".join(
        f"""
    <connector version="3.9.1">
      <metaDataId>{i + 1}</metaDataId>
      <name>{name}</name>
      <properties class="com.mirth.connect.connectors.vm.VmDispatcherProperties" version="3.9.1">
        <v>{value}</v>
      </properties>
      <transportName>Channel Writer</transportName>
      <mode>DESTINATION</mode>
      <enabled>true</enabled>
    </connector>"""
        for i, (name, value) in enumerate(zip(names, ["one", "two", "three"]))
    )
    document = _fixture("router.xml")
    start = document.index("<destinationConnectors>") + len("<destinationConnectors>")
    end = document.index("</destinationConnectors>")
    return document[:start] + connectors + "\n  " + document[end:]


def test_suffixed_names_never_collide_with_real_names():
    artifact = decompose(_three_destinations(["X", "X", "X 1"]))
    dir_names = [d.dir_name for d in artifact.destinations]
    assert dir_names == ["x", "x-1", "x-1-1"]
    assert len(set(dir_names)) == 3

    rebuilt = from_file_tree({e.path: e.content for e in to_file_tree(artifact)})
    assert [d.name for d in rebuilt.destinations] == ["X", "X", "X 1"]
    assert [d.properties["v"] for d in rebuilt.destinations] == ["one", "two", "three"]


def test_duplicate_names_get_counting_suffixes():
    artifact = decompose(_three_destinations(["Out", "Out", "Out"]))
    assert [d.dir_name for d in artifact.destinations] == ["out", "out-1", "out-2"]
