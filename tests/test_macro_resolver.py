# test_macro_resolver.py
import pytest

from script_variables.models.variable_types import (
    ConditionBranch,
    HiddenVariable,
    Table,
    TableColumn,
    Variable,
    VariableSystem,
)
from script_variables.services.macro_resolver import MacroResolver


@pytest.fixture
def system():
    return VariableSystem(
        variables={
            "score": Variable(type="number", value=15),
            "idx": Variable(type="number", value=1),
            "Foo": Variable(type="object", value={"bar": ["x"]}),
            "rank": Variable(
                type="string",
                value="none",
                is_conditional=True,
                branches=[ConditionBranch(condition="score > 10", value="high"), ConditionBranch(value="low")],
            ),
        },
        tables={
            "items": Table(
                name="items",
                columns=[TableColumn(name="id", type="number", required=True), TableColumn(name="label")],
                rows=[{"id": 1, "label": "sword"}, {"id": 2, "label": "shield"}, {"id": 3}],
            ),
        },
    )


def test_nested_macros(system):
    """${a} -> ${b} -> 7"""
    system.variables["a"] = Variable(type="string", value="${b}")
    system.variables["b"] = Variable(type="number", value=7)
    assert MacroResolver(system).replace("值: ${a}") == "值: 7"


def test_self_reference_stops_at_max_depth(system):
    system.variables["loop"] = Variable(type="string", value="${loop}")
    assert MacroResolver(system, max_depth=3).replace("${loop}") == "${loop}"


def test_table_macros(system):
    resolver = MacroResolver(system)
    assert resolver.replace("${items.label}") == "sword"
    assert resolver.replace("${items.label.1}") == "shield"
    assert resolver.replace("${items.label.idx}") == "shield"
    assert resolver.replace("${items.label.9}") == ""
    assert resolver.replace("${items.label.2}") == ""
    assert resolver.replace("${items.id.2}") == "3"


def test_object_paths(system):
    resolver = MacroResolver(system)
    assert resolver.replace("${Foo.bar.0}") == "x"
    assert resolver.replace("${Foo.bar.5}") == ""
    assert resolver.replace("${Foo.nope}") == ""
    assert resolver.replace("${Foo}") == '{"bar":["x"]}'


def test_conditional_variable(system):
    resolver = MacroResolver(system)
    assert resolver.replace("${rank}") == "high"

    system.variables["score"].value = 5
    assert resolver.replace("${rank}") == "low"


def test_conditional_without_match_falls_back_to_value(system):
    system.variables["title"] = Variable(
        type="string",
        value="平民",
        is_conditional=True,
        branches=[ConditionBranch(condition="score > 100", value="英雄")],
    )
    assert MacroResolver(system).replace("${title}") == "平民"


def test_hidden_variable_with_expiration(system):
    system.variables["level"] = Variable(type="number", value=1)
    system.hidden_variables["secret"] = HiddenVariable(condition="level >= 3", value="treasure", has_expiration=True)

    resolver = MacroResolver(system)
    assert resolver.replace("${secret}") == ""
    assert system.hidden_variables["secret"].is_expired is False

    system.variables["level"].value = 5
    assert resolver.replace("${secret}") == "treasure"
    assert system.hidden_variables["secret"].is_expired is True
    assert resolver.expired_hidden == ["secret"]
    assert resolver.replace("${secret}") == ""


def test_hidden_variable_without_expiration(system):
    system.hidden_variables["hint"] = HiddenVariable(condition="score > 10", value="look left")
    resolver = MacroResolver(system)
    assert resolver.replace("${hint} ${hint}") == "look left look left"
    assert resolver.expired_hidden == []


def test_dynamic_macros(system):
    resolver = MacroResolver(system, default_dynamic_id="s1")
    assert resolver.replace("${scriptHistoryRecent}") == "[DYNAMIC:scriptHistory:s1:10]"
    assert resolver.replace("${characterChatRecent:c2:3}") == "[DYNAMIC:chatHistory:c2:3]"
    assert resolver.replace("${characterChatRecent::0}") == "[DYNAMIC:chatHistory:s1:10]"
    assert resolver.replace("${characterChatRecent::abc}") == "[DYNAMIC:chatHistory:s1:10]"


def test_dynamic_macros_take_precedence_over_variables(system):
    system.variables["scriptHistoryRecent"] = Variable(type="string", value="暂无剧本历史")
    resolver = MacroResolver(system, default_dynamic_id="s1")
    assert resolver.replace("${scriptHistoryRecent}") == "[DYNAMIC:scriptHistory:s1:10]"


def test_dynamic_macros_without_id(system):
    resolver = MacroResolver(system)
    assert resolver.replace("${scriptHistoryRecent}") == "暂无剧本历史"
    assert resolver.replace("${characterChatRecent}") == "暂无聊天历史"


def test_unknown_macro_is_empty(system):
    assert MacroResolver(system).replace("[${nothing}]") == "[]"


def test_text_without_macros_is_unchanged(system):
    assert MacroResolver(system).replace("plain {text}") == "plain {text}"
    assert MacroResolver(system).replace("") == ""
