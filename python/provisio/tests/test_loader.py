"""Tests for the declaration loader: parsing, expansion and structural errors."""

import pytest

from provisio.engine.loader import load_declarations
from provisio.errors import DuplicateNameError, ParseError, UnresolvedReferenceError


class TestLoadDeclarations:
    """Happy-path loading."""

    def test_builds_graph_with_reference_edges(self, load, nsi_yaml):
        decls = load(nsi_yaml)

        assert len(decls.graph) == 3
        assert decls.graph.dependencies("subnet.s") == ["network.n"]
        assert decls.graph.dependencies("instance.i") == ["subnet.s"]
        assert decls.provider is not None and decls.provider.name == "memory"
        assert set(decls.outputs) == {"ip"}

    def test_records_source_and_line(self, load, nsi_yaml):
        decls = load(nsi_yaml)

        subnet = decls.graph.get("subnet.s")
        assert subnet.source.endswith("main.yaml")
        assert subnet.line == 8

    def test_explicit_depends_on_adds_edge(self, load):
        decls = load(
            """
            resources:
              - kind: network
                name: a
              - kind: network
                name: b
                depends_on: [network.a]
            """
        )
        assert decls.graph.dependencies("network.b") == ["network.a"]

    def test_variables_use_defaults_and_overrides(self, load):
        text = """
            variables:
              cidr: 10.0.0.0/16
            resources:
              - kind: network
                name: n
                attributes:
                  cidr_block: "${var.cidr}"
                  label: "net-${var.cidr}"
            """
        assert load(text).graph.get("network.n").attributes["cidr_block"] == "10.0.0.0/16"

        overridden = load(text, cidr="10.9.0.0/16").graph.get("network.n")
        assert overridden.attributes["cidr_block"] == "10.9.0.0/16"
        assert overridden.attributes["label"] == "net-10.9.0.0/16"

    def test_whole_expression_keeps_raw_value(self, load):
        decls = load(
            """
            variables:
              ports: [22, 80]
            resources:
              - kind: security_group
                name: sg
                attributes:
                  ports: "${var.ports}"
            """
        )
        assert decls.graph.get("security_group.sg").attributes["ports"] == [22, 80]

    def test_file_contents_are_inlined_and_escaped(self, load, tmp_path):
        (tmp_path / "boot.sh").write_text('echo "${HOME}"\n', encoding="utf-8")
        decls = load(
            """
            resources:
              - kind: instance
                name: i
                attributes:
                  user_data: "${file(boot.sh)}"
            """
        )
        instance = decls.graph.get("instance.i")
        assert instance.attributes["user_data"] == 'echo "$${HOME}"\n'
        assert instance.references() == []

    def test_directory_loads_all_documents_in_name_order(self, write_doc, tmp_path):
        write_doc(
            """
            resources:
              - kind: subnet
                name: s
                attributes: {network_id: "${network.n.id}"}
            """,
            name="stack/b.yaml",
        )
        write_doc(
            """
            resources:
              - kind: network
                name: n
            """,
            name="stack/a.yml",
        )
        (tmp_path / "stack" / "notes.txt").write_text("ignored", encoding="utf-8")

        decls = load_declarations([str(tmp_path / "stack")])

        assert [r.address for r in decls.graph.nodes] == ["network.n", "subnet.s"]
        assert len(decls.sources) == 2


class TestLoaderErrors:
    """Structural errors carry the offending file and line."""

    def test_duplicate_name(self, load):
        with pytest.raises(DuplicateNameError) as exc_info:
            load(
                """
                resources:
                  - kind: network
                    name: a
                  - kind: network
                    name: a
                """
            )
        err = exc_info.value
        assert err.address == "network.a"
        assert err.line == 4
        assert "main.yaml:2" in str(err)

    def test_unresolved_reference(self, load):
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            load(
                """
                resources:
                  - kind: subnet
                    name: s
                    attributes: {network_id: "${network.missing.id}"}
                """
            )
        assert exc_info.value.address == "subnet.s"
        assert exc_info.value.line == 2
        assert "network.missing" in str(exc_info.value)

    def test_unresolved_depends_on(self, load):
        with pytest.raises(UnresolvedReferenceError):
            load(
                """
                resources:
                  - kind: network
                    name: a
                    depends_on: [network.b]
                """
            )

    def test_malformed_yaml_reports_line(self, load):
        with pytest.raises(ParseError) as exc_info:
            load(
                """
                resources:
                  - kind: network
                    name: [unclosed
                """
            )
        assert exc_info.value.line is not None

    def test_unknown_resource_field_reports_resource_line(self, load):
        with pytest.raises(ParseError) as exc_info:
            load(
                """
                resources:
                  - kind: network
                    name: a
                  - kind: network
                    name: b
                    atributes: {}
                """
            )
        assert exc_info.value.line == 4

    def test_invalid_name(self, load):
        with pytest.raises(ParseError):
            load(
                """
                resources:
                  - kind: Network
                    name: a
                """
            )

    def test_undefined_variable(self, load):
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            load(
                """
                resources:
                  - kind: network
                    name: n
                    attributes: {cidr_block: "${var.nope}"}
                """
            )
        assert "nope" in str(exc_info.value)

    def test_missing_included_file(self, load):
        with pytest.raises(ParseError) as exc_info:
            load(
                """
                resources:
                  - kind: instance
                    name: i
                    attributes: {user_data: "${file(missing.sh)}"}
                """
            )
        assert exc_info.value.address == "instance.i"

    def test_output_reference_outside_local_files(self, load):
        with pytest.raises(ParseError):
            load(
                """
                resources:
                  - kind: network
                    name: n
                    attributes: {label: "${output.ip}"}
                """
            )

    def test_output_referencing_undeclared_resource(self, load):
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            load(
                """
                resources:
                  - kind: network
                    name: n
                outputs:
                  ip: "${instance.ghost.public_ip}"
                """
            )
        assert exc_info.value.source.endswith("main.yaml")
        assert exc_info.value.line == 5

    def test_local_file_referencing_undeclared_output(self, load):
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            load(
                """
                resources:
                  - kind: network
                    name: n
                local_files:
                  - name: cfg
                    path: /tmp/cfg
                    template: cfg.tpl
                    vars: {host: "${output.ip}"}
                """
            )
        assert exc_info.value.line == 5
        assert "main.yaml:5" in str(exc_info.value)

    def test_conflicting_providers(self, write_doc, tmp_path):
        write_doc("provider: {name: memory}\n", name="stack/a.yaml")
        write_doc("provider: {name: aws, region: us-west-2}\n", name="stack/b.yaml")
        with pytest.raises(ParseError):
            load_declarations([str(tmp_path / "stack")])

    def test_missing_path(self, tmp_path):
        with pytest.raises(ParseError):
            load_declarations([str(tmp_path / "nowhere")])
