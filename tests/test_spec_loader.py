"""Tests for definition loading and validation."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from converge.spec_loader import ParseError, load_definitions, parse_definition
from fake_cloud import NETWORK_STACK, write_definitions


class TestParseDefinition:
    """Tests for parse_definition."""

    def test_flat_document(self) -> None:
        """Test a document with top-level variables and resources."""
        documents = parse_definition(NETWORK_STACK, Path("main.yaml"))

        assert len(documents) == 1
        assert documents[0].variables["region"] == "westeurope"
        assert [b.block_address for b in documents[0].resources] == [
            "fake_network.main",
            "fake_subnet.app",
            "fake_vm.web",
            "fake_bucket.logs",
        ]
        assert documents[0].resources[1].count == 2

    def test_kubernetes_style_wrapper(self) -> None:
        """Test that apiVersion/kind/spec documents are unwrapped."""
        content = """
apiVersion: converge/v1
kind: Definitions
metadata:
  name: core
spec:
  resources:
    - type: fake_bucket
      name: logs
      attributes:
        name: logs
"""
        documents = parse_definition(content, Path("core.yaml"))

        assert documents[0].resources[0].block_address == "fake_bucket.logs"

    def test_multiple_documents(self) -> None:
        """Test that --- separated documents are all loaded."""
        content = """
resources:
  - type: fake_bucket
    name: a
---
resources:
  - type: fake_bucket
    name: b
"""
        documents = parse_definition(content, Path("multi.yaml"))

        assert [d.resources[0].name for d in documents] == ["a", "b"]

    def test_lifecycle_aliases(self) -> None:
        """Test camelCase lifecycle and dependsOn keys."""
        content = """
resources:
  - type: fake_vm
    name: web
    dependsOn: [fake_bucket.logs]
    lifecycle:
      createBeforeDestroy: true
      ignoreChanges: ["tags"]
"""
        block = parse_definition(content, Path("main.yaml"))[0].resources[0]

        assert block.depends_on == ["fake_bucket.logs"]
        assert block.lifecycle.create_before_destroy is True
        assert block.lifecycle.ignore_changes == ["tags"]

    def test_invalid_yaml(self) -> None:
        """Test that malformed YAML raises ParseError naming the file."""
        with pytest.raises(ParseError) as exc_info:
            parse_definition("resources: [unclosed", Path("broken.yaml"))

        assert "broken.yaml" in str(exc_info.value)

    def test_non_mapping_document(self) -> None:
        """Test that a YAML list at the top level is rejected."""
        with pytest.raises(ParseError):
            parse_definition("- a\n- b\n", Path("list.yaml"))

    def test_unrecognized_document(self) -> None:
        """Test that a mapping without resources or spec is rejected."""
        with pytest.raises(ParseError) as exc_info:
            parse_definition("foo: bar\n", Path("other.yaml"))

        assert "resources" in str(exc_info.value)

    def test_invalid_type_name(self) -> None:
        """Test that resource type names are validated."""
        content = """
resources:
  - type: Fake-Bucket
    name: logs
"""
        with pytest.raises(ParseError) as exc_info:
            parse_definition(content, Path("main.yaml"))

        assert "resources.0.type" in str(exc_info.value)

    def test_count_and_for_each_exclusive(self) -> None:
        """Test that count and forEach cannot be combined."""
        content = """
resources:
  - type: fake_bucket
    name: logs
    count: 2
    forEach: [a, b]
"""
        with pytest.raises(ParseError) as exc_info:
            parse_definition(content, Path("main.yaml"))

        assert "mutually exclusive" in str(exc_info.value)

    def test_negative_count(self) -> None:
        """Test that count must not be negative."""
        content = """
resources:
  - type: fake_bucket
    name: logs
    count: -1
"""
        with pytest.raises(ParseError):
            parse_definition(content, Path("main.yaml"))

    def test_misspelled_block_key(self) -> None:
        """Test that an unknown block key is rejected with its location."""
        content = """
resources:
  - type: fake_bucket
    name: logs
    dependOn: [fake_network.main]
"""
        with pytest.raises(ParseError) as exc_info:
            parse_definition(content, Path("main.yaml"))

        assert "resources.0.dependOn" in str(exc_info.value)
        assert "Extra inputs are not permitted" in str(exc_info.value)

    def test_misspelled_lifecycle_key(self) -> None:
        """Test that an unknown lifecycle key is rejected."""
        content = """
resources:
  - type: fake_bucket
    name: logs
    lifecycle:
      ignoreChange: [tags]
"""
        with pytest.raises(ParseError) as exc_info:
            parse_definition(content, Path("main.yaml"))

        assert "resources.0.lifecycle.ignoreChange" in str(exc_info.value)

    def test_unknown_top_level_key(self) -> None:
        """Test that the flat body accepts only variables and resources."""
        content = """
variables:
  region: westeurope
resource:
  - type: fake_bucket
    name: logs
"""
        with pytest.raises(ParseError) as exc_info:
            parse_definition(content, Path("main.yaml"))

        assert "- resource: Extra inputs are not permitted" in str(exc_info.value)

    def test_duplicate_for_each_entries(self) -> None:
        """Test that forEach lists must not repeat keys."""
        content = """
resources:
  - type: fake_bucket
    name: logs
    forEach: [a, a]
"""
        with pytest.raises(ParseError):
            parse_definition(content, Path("main.yaml"))


class TestLoadDefinitions:
    """Tests for load_definitions."""

    def test_loads_directory(self, definitions_dir: Path) -> None:
        """Test that every YAML file in a directory is loaded, sorted."""
        write_definitions(definitions_dir, "variables:\n  a: 1\n", "b.yaml")
        write_definitions(definitions_dir, "resources: []\n", "a.yml")
        write_definitions(definitions_dir, "not yaml definitions", "notes.txt")

        loaded = load_definitions(definitions_dir)

        assert [p.name for p in loaded.sources] == ["a.yml", "b.yaml"]
        assert loaded.variables == {"a": 1}

    def test_loads_single_file(self, definitions_dir: Path) -> None:
        """Test that a single file path is accepted."""
        path = write_definitions(definitions_dir, NETWORK_STACK)

        loaded = load_definitions(path)

        assert len(loaded.documents) == 1
        assert loaded.variables["prefix"] == "demo"

    def test_missing_path(self, tmp_path: Path) -> None:
        """Test that a missing path raises ParseError."""
        with pytest.raises(ParseError) as exc_info:
            load_definitions(tmp_path / "missing")

        assert "not found" in str(exc_info.value)

    def test_duplicate_variable(self, definitions_dir: Path) -> None:
        """Test that a variable declared in two files is rejected."""
        write_definitions(definitions_dir, "variables:\n  region: a\n", "a.yaml")
        write_definitions(definitions_dir, "variables:\n  region: b\n", "b.yaml")

        with pytest.raises(ParseError) as exc_info:
            load_definitions(definitions_dir)

        assert "region" in str(exc_info.value)

    def test_file_size_limit(self, definitions_dir: Path) -> None:
        """Test that oversized definition files are refused."""
        write_definitions(definitions_dir, "resources: []\n" + "#" * 200)

        with patch("converge.spec_loader.MAX_DEFINITION_FILE_SIZE_BYTES", 100):
            with pytest.raises(ParseError) as exc_info:
                load_definitions(definitions_dir)

        assert "maximum size" in str(exc_info.value)
