import pytest

from luna.config import DEFAULT_SCHEMA_PATH
from luna.semantic_loader import get_schema_descriptor, load_schema_descriptor, parse_schema_descriptor


def test_bundled_descriptor_lists_restaurant_tables():
    descriptor = load_schema_descriptor(DEFAULT_SCHEMA_PATH)

    assert descriptor.dialect == "postgres"
    assert set(descriptor.table_names) >= {"time_entries", "item_selection_details", "costs"}
    time_entries = descriptor.table("time_entries")
    assert time_entries.columns[0].name == "location"
    assert time_entries.columns[0].nullable is False
    assert descriptor.table("no_such_table") is None
    assert descriptor.join_rules
    assert any(e.question == "are we getting better or worse?" for e in descriptor.examples)


def test_descriptor_is_loaded_once_per_path():
    assert get_schema_descriptor(DEFAULT_SCHEMA_PATH) is get_schema_descriptor(DEFAULT_SCHEMA_PATH)


def test_parse_accepts_unwrapped_mapping_and_defaults():
    descriptor = parse_schema_descriptor(
        {
            "tables": {"sales": {"columns": [{"name": "amount"}]}},
            "guidance": ["", "Always truncate timestamps."],
            "examples": [{"question": "no sql"}, {"question": "all", "sql": "\nSELECT * FROM sales\n"}],
        }
    )

    assert descriptor.dialect == "postgres"
    assert descriptor.tables[0].columns[0].data_type == "text"
    assert descriptor.guidance == ("Always truncate timestamps.",)
    assert [e.sql for e in descriptor.examples] == ["SELECT * FROM sales"]


@pytest.mark.parametrize(
    "data, message",
    [
        ({"schema": {"tables": {}}}, "at least one table"),
        ({"tables": {"sales": {"columns": [{"type": "numeric"}]}}}, "without a name"),
    ],
)
def test_parse_rejects_incomplete_descriptors(data, message):
    with pytest.raises(ValueError, match=message):
        parse_schema_descriptor(data)


def test_load_reads_yaml_from_disk(tmp_path):
    path = tmp_path / "schema.yaml"
    path.write_text(
        "schema:\n"
        "  dialect: postgres\n"
        "  tables:\n"
        "    costs:\n"
        "      description: Monthly cost lines\n"
        "      columns:\n"
        "        - {name: amount, type: numeric, nullable: false}\n",
        encoding="utf-8",
    )

    descriptor = load_schema_descriptor(path)
    assert descriptor.table("costs").description == "Monthly cost lines"
