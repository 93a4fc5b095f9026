"""Tests for JSON Schema validation of model YAML files."""

from pathlib import Path

import pytest

from servforge.metadata.validator import (
    ValidationIssue,
    validate_model_dir,
    validate_yaml_file,
)

SAMPLE_MODEL = Path(__file__).parent.parent / "sample" / "model"


@pytest.fixture
def model_dir(tmp_path):
    (tmp_path / "entities").mkdir()
    (tmp_path / "services").mkdir()
    return tmp_path


def write(path: Path, text: str) -> Path:
    path.write_text(text)
    return path


# =============================================================================
# Single files
# =============================================================================


class TestEntitySchema:
    def test_valid_entity(self, model_dir):
        path = write(
            model_dir / "entities" / "Orders.yaml",
            "entity: Orders\n"
            "fields:\n"
            "  - name: ID\n"
            "    type: String\n"
            "    key: true\n"
            "compositions:\n"
            "  - name: items\n"
            "    target: OrderItems\n"
            "    cardinality: many\n"
            "    on:\n"
            "      order_ID: ID\n",
        )
        assert validate_yaml_file(path, "entity.schema.json") == []

    def test_unknown_type(self, model_dir):
        path = write(
            model_dir / "entities" / "Bad.yaml",
            "entity: Bad\nfields:\n  - name: ID\n    type: Blob\n    key: true\n",
        )
        issues = validate_yaml_file(path, "entity.schema.json")
        assert len(issues) == 1
        assert issues[0].path == "fields[0].type"

    def test_unknown_property(self, model_dir):
        path = write(
            model_dir / "entities" / "Bad.yaml",
            "entity: Bad\nscope: tenant\nfields:\n  - name: ID\n    key: true\n",
        )
        issues = validate_yaml_file(path, "entity.schema.json")
        assert any("scope" in i.message for i in issues)

    def test_link_needs_on(self, model_dir):
        path = write(
            model_dir / "entities" / "Bad.yaml",
            "entity: Bad\n"
            "fields:\n  - name: ID\n    key: true\n"
            "associations:\n  - name: other\n    target: Other\n",
        )
        issues = validate_yaml_file(path, "entity.schema.json")
        assert any("'on'" in i.message for i in issues)

    def test_empty_file(self, model_dir):
        path = write(model_dir / "entities" / "Empty.yaml", "")
        issues = validate_yaml_file(path, "entity.schema.json")
        assert "empty" in issues[0].message

    def test_yaml_parse_error(self, model_dir):
        path = write(model_dir / "entities" / "Broken.yaml", "entity: [oops\n")
        issues = validate_yaml_file(path, "entity.schema.json")
        assert "YAML parse error" in issues[0].message


class TestServiceSchema:
    def test_projection_with_bare_on_key(self, model_dir):
        path = write(
            model_dir / "services" / "catalog.yaml",
            "service: CatalogService\n"
            "projections:\n"
            "  - as: Products\n"
            "    on: Products\n"
            "    readonly: true\n"
            "actions:\n"
            "  - name: placeOrder\n",
        )
        assert validate_yaml_file(path, "service.schema.json") == []

    def test_bad_path(self, model_dir):
        path = write(model_dir / "services" / "catalog.yaml", "service: CatalogService\npath: catalog\n")
        issues = validate_yaml_file(path, "service.schema.json")
        assert issues[0].path == "path"

    def test_unknown_parameter_type(self, model_dir):
        path = write(
            model_dir / "services" / "catalog.yaml",
            "service: CatalogService\n"
            "actions:\n"
            "  - name: orderBook\n"
            "    params:\n"
            "      - name: product\n"
            "        type: Strng\n",
        )
        issues = validate_yaml_file(path, "service.schema.json")
        assert [i.path for i in issues] == ["actions[0].params[0].type"]

    def test_scalar_return_type(self, model_dir):
        path = write(
            model_dir / "services" / "admin.yaml",
            "service: AdminService\nfunctions:\n  - name: stockLevel\n    returns: Integer\n",
        )
        assert validate_yaml_file(path, "service.schema.json") == []


# =============================================================================
# Directories
# =============================================================================


class TestValidateModelDir:
    def test_sample_model_is_valid(self):
        assert validate_model_dir(SAMPLE_MODEL) == []

    def test_missing_directory(self, tmp_path):
        issues = validate_model_dir(tmp_path / "nope")
        assert issues[0].severity == "error"

    def test_service_without_impl_warns(self, model_dir):
        write(model_dir / "services" / "catalog.yaml", "service: CatalogService\n")
        issues = validate_model_dir(model_dir)
        assert [i.severity for i in issues] == ["warning"]

    def test_strict_escalates_warnings(self, model_dir):
        write(model_dir / "services" / "catalog.yaml", "service: CatalogService\n")
        issues = validate_model_dir(model_dir, strict=True)
        assert [i.severity for i in issues] == ["error"]

    def test_issue_str(self, tmp_path):
        issue = ValidationIssue(file=tmp_path / "a.yaml", message="bad", path="fields[0]")
        assert str(issue) == f"[ERROR] {tmp_path / 'a.yaml'} at fields[0]: bad"

    def test_duplicate_entity_name(self, model_dir):
        text = "entity: Books\nfields:\n  - name: ID\n    key: true\n"
        write(model_dir / "entities" / "Books.yaml", text)
        write(model_dir / "entities" / "MoreBooks.yaml", text)
        issues = validate_model_dir(model_dir)
        assert len(issues) == 1
        assert issues[0].file.name == "MoreBooks.yaml"
        assert issues[0].path == "entity"
        assert "already declared in Books.yaml" in issues[0].message

    def test_explicit_impl(self, model_dir):
        write(model_dir / "services" / "handlers.py", "")
        write(model_dir / "services" / "catalog.yaml", "service: CatalogService\nimpl: handlers.py\n")
        assert validate_model_dir(model_dir) == []

    def test_invalid_service_has_no_impl_warning(self, model_dir):
        write(model_dir / "services" / "catalog.yaml", "service: CatalogService\npath: catalog\n")
        issues = validate_model_dir(model_dir)
        assert [i.severity for i in issues] == ["error"]
