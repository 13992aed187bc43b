from __future__ import annotations

import pytest

from rollwave_core.targeting import (
    Comparison,
    FilterSyntaxError,
    Junction,
    combine_filters,
    compile_filter,
    parse_filter,
)


@pytest.mark.core
def test_parse_filter_precedence():
    node = parse_filter("tag==beta;name==a*,controller_id==edge-7")
    assert isinstance(node, Junction)
    assert node.kind == "OR"
    first, second = node.children
    assert isinstance(first, Junction) and first.kind == "AND"
    assert second == Comparison("controller_id", "==", ("edge-7",))


@pytest.mark.core
def test_parse_filter_value_lists_and_quotes():
    node = parse_filter("tag=in=(beta, canary);name=='lab rack 2'")
    assert isinstance(node, Junction)
    assert node.children[0] == Comparison("tag", "=in=", ("beta", "canary"))
    assert node.children[1] == Comparison("name", "==", ("lab rack 2",))


@pytest.mark.core
def test_compile_filter_uses_parameters():
    sql, params = compile_filter("controller_id==edge-*;attribute.hw!=rev1")
    assert "LIKE ?" in sql
    assert "NOT EXISTS" in sql
    assert params == ["edge-%", "hw", "rev1"]
    assert "edge" not in sql


@pytest.mark.core
def test_combine_filters_skips_blank_entries():
    assert combine_filters([None, "  "]) == ("1 = 1", [])
    sql, params = combine_filters(["tag==a", None, "name==b"])
    assert sql.startswith("(EXISTS")
    assert sql.endswith("(t.name = ?)")
    assert params == ["a", "b"]


@pytest.mark.core
@pytest.mark.parametrize(
    "text",
    ["", "tag==", "color==red", "tag=gt=5", "(tag==a", "name==a;", "name=~x"],
)
def test_invalid_filters_raise(text):
    with pytest.raises(FilterSyntaxError):
        compile_filter(text)


@pytest.mark.core
def test_filters_select_targets(store, register_targets):
    register_targets(3, prefix="lab", tags=["beta"], attributes={"hw": "rev2"})
    register_targets(2, prefix="field", attributes={"hw": "rev1"})

    assert store.count_targets(["tag==beta"]) == 3
    assert store.count_targets(["attribute.hw==rev1"]) == 2
    assert store.count_targets(["controller_id==lab-*", "attribute.hw==rev1"]) == 0
    assert store.count_targets(["tag!=beta"]) == 2
    assert store.count_targets(["controller_id=in=(lab-000,field-001)"]) == 2
    names = sorted(
        target.controller_id
        for target in store.list_targets(target_filter="name==field*")
    )
    assert names == ["field-000", "field-001"]
