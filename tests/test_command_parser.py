# test_command_parser.py
import pytest

from script_variables.models.variable_types import Variable, VariableSystem
from script_variables.services.command_parser import (
    BranchError,
    CommandInterpreter,
    TagConfig,
    parse_branches,
    set_value_by_dotted_path,
    todo_list_default_schema,
)

ITEMS_TABLE = (
    '<registerTable name="items" columns=\'[{"name": "id", "type": "number", "required": true}, '
    '{"name": "label", "type": "string"}]\' />'
)


@pytest.fixture
def interpreter():
    return CommandInterpreter()


@pytest.fixture
def system():
    return VariableSystem()


# --- setVar ---

def test_auto_register_infers_types(interpreter, system):
    """未声明的变量按字面量自动推断类型"""
    text = 'A<setVar name="n" value="42" /><setVar name="flag" value="true" /><setVar name="s" value="hello" />B'
    result = interpreter.parse_commands(text, system)

    assert result.clean_text == "AB"
    assert result.changed is True
    assert system.variables["n"].type == "number"
    assert system.variables["n"].value == 42
    assert system.variables["flag"].type == "boolean"
    assert system.variables["flag"].value is True
    assert system.variables["s"].type == "string"
    assert system.variables["s"].value == "hello"


def test_set_existing_variable_keeps_declared_type(interpreter, system):
    system.variables["n"] = Variable(type="number", value=1)
    result = interpreter.parse_commands('<setVar name="n" value="5"></setVar>', system)

    assert system.variables["n"].value == 5
    assert "🔄 变量 n: 1 -> 5 (属性格式)" in result.logs


def test_content_form_operators(interpreter, system):
    system.variables["hp"] = Variable(type="number", value=10)
    system.variables["name"] = Variable(type="string", value="A")
    result = interpreter.parse_commands("<setVar>hp += 5; hp--; name += B; x++; y += 3</setVar>", system)

    assert result.clean_text == ""
    assert system.variables["hp"].value == 14
    assert system.variables["name"].value == "AB"
    # ++ 作用于未声明的变量时先注册为 0
    assert system.variables["x"].value == 1
    # += 作用于未声明的变量时右值即为初始值
    assert system.variables["y"].value == 3


def test_unsupported_operations_are_logged_and_skipped(interpreter, system):
    system.variables["flag"] = Variable(type="boolean", value=True)
    system.variables["obj"] = Variable(type="object", value={})
    result = interpreter.parse_commands("<setVar>flag++; obj -= 1; ???</setVar>", system)

    assert system.variables["flag"].value is True
    assert system.variables["obj"].value == {}
    assert any(line.startswith("⚠️ 忽略非数字变量的++操作") for line in result.logs)
    assert any(line.startswith("⚠️ 忽略不支持的赋值操作") for line in result.logs)
    assert "⚠️ 忽略无法解析的赋值: ???" in result.logs


def test_dotted_path_creates_object_root(interpreter, system):
    interpreter.parse_commands('<setVar name="Foo.bar.0" value="x" />', system)

    assert system.variables["Foo"].type == "object"
    assert system.variables["Foo"].value == {"bar": ["x"]}


def test_dotted_path_parses_json_values(interpreter, system):
    interpreter.parse_commands('<setVar name="cfg.items" value="[1,2]" />', system)
    assert system.variables["cfg"].value == {"items": [1, 2]}


def test_todo_list_uses_default_schema(interpreter, system):
    interpreter.parse_commands('<setVar name="ToDoList.currentChapter" value="第一章" />', system)

    expected = todo_list_default_schema()
    expected["currentChapter"] = "第一章"
    assert system.variables["ToDoList"].value == expected


def test_html_entities_are_decoded(interpreter, system):
    result = interpreter.parse_commands('前&lt;setVar name=&quot;n&quot; value=&quot;7&quot; /&gt;后', system)
    assert result.clean_text == "前后"
    assert system.variables["n"].value == 7


def test_no_commands_means_no_change(interpreter, system):
    result = interpreter.parse_commands("只是普通文本", system)
    assert result.clean_text == "只是普通文本"
    assert result.changed is False
    assert result.to_dict()["errors"] is None


# --- 表格 ---

def test_table_lifecycle(interpreter, system):
    interpreter.parse_register_commands(ITEMS_TABLE, system)
    table = system.tables["items"]
    assert [c.name for c in table.columns] == ["id", "label"]

    result = interpreter.parse_commands('<addTableRow table="items">label=sword</addTableRow>', system)
    assert table.rows == []
    assert "❌ 表格 items 添加行失败: 缺少必填字段 (id)" in result.logs

    interpreter.parse_commands('<addTableRow table="items">id=1; label=sword</addTableRow>', system)
    assert table.rows == [{"id": 1, "label": "sword"}]

    interpreter.parse_commands('<setTable table="items" row="0">label=shield</setTable>', system)
    assert table.rows[0]["label"] == "shield"

    result = interpreter.parse_commands('<removeTableRow table="items" row="5"></removeTableRow>', system)
    assert len(table.rows) == 1
    assert result.clean_text == ""
    assert "❌ 表格 items 删除行失败: 索引 5 无效" in result.logs

    # 索引等于行数时同样越界
    result = interpreter.parse_commands('<removeTableRow table="items" row="1" />', system)
    assert len(table.rows) == 1
    assert result.clean_text == ""
    assert "❌ 表格 items 删除行失败: 索引 1 无效" in result.logs

    interpreter.parse_commands('<removeTableRow table="items" row="0" />', system)
    assert table.rows == []


def test_malformed_columns_keep_tag(interpreter, system):
    text = '<registerTable name="bad" columns=\'not json\' />'
    result = interpreter.parse_register_commands(text, system)

    assert "bad" not in system.tables
    assert result.clean_text == text
    assert len(result.errors) == 1


# --- 注册 / 注销 ---

def test_register_conditional_variable(interpreter, system):
    text = ('<registerVar name="rank" type="string" initVal="none" '
            'conditional=\'[{"condition": "score > 10", "value": "high"}, {"value": "low"}]\' />')
    result = interpreter.parse_register_commands(text, system)

    rank = system.variables["rank"]
    assert rank.is_conditional is True
    assert [b.condition for b in rank.branches] == ["score > 10", None]
    assert "📝 已注册变量宏: ${rank} (条件变量)" in result.logs


def test_misordered_branches_keep_tag(interpreter, system):
    text = ('<registerVar name="mood" type="string" initVal="calm" '
            'conditional=\'[{"value": "a"}, {"condition": "x > 1", "value": "b"}]\' />')
    result = interpreter.parse_register_commands(text, system)

    assert "mood" not in system.variables
    assert result.clean_text == text
    assert len(result.errors) == 1


def test_register_vars_skips_bad_entries(interpreter, system):
    text = (
        "<registerVars>\n"
        '  <var name="a" type="number" initVal="1" />\n'
        '  <var name="b" type="string" initVal="x" conditional=\'oops\' />\n'
        "</registerVars>"
    )
    result = interpreter.parse_register_commands(text, system)

    assert system.variables["a"].value == 1
    assert "b" not in system.variables
    assert len(result.errors) == 1
    assert result.clean_text.strip() == ""


def test_unknown_type_is_consumed(interpreter, system):
    result = interpreter.parse_register_commands('<registerVar name="z" type="weird" initVal="1" />', system)
    assert "z" not in system.variables
    assert result.clean_text == ""
    assert result.errors == []


def test_unregister_commands(interpreter, system):
    interpreter.parse_register_commands(
        '<registerVar name="a" type="number" initVal="1" />'
        '<registerVar name="b" type="number" initVal="2" />' + ITEMS_TABLE,
        system,
    )
    result = interpreter.parse_register_commands(
        '<unregisterVar name="a" /><unregisterVars><var name="b" /></unregisterVars>'
        '<unregisterTable name="items" />',
        system,
    )

    assert system.variables == {}
    assert system.tables == {}
    assert "🗑️ 已注销变量: a" in result.logs
    assert "🗑️ 已注销表格: items" in result.logs


def test_hidden_variable_commands(interpreter, system):
    result = interpreter.parse_register_commands(
        '<registerHiddenVar name="secret" condition="level >= 3" hasExpiration="true">treasure</registerHiddenVar>',
        system,
    )
    hidden = system.hidden_variables["secret"]
    assert hidden.value == "treasure"
    assert hidden.has_expiration is True
    assert hidden.is_expired is False
    assert "🔒 已注册隐变量宏: ${secret} (有期限)" in result.logs

    interpreter.parse_commands('<setHiddenVar name="secret" condition="level >= 9"> gold </setHiddenVar>', system)
    assert system.hidden_variables["secret"].value == "gold"
    assert system.hidden_variables["secret"].condition == "level >= 9"
    assert system.hidden_variables["secret"].has_expiration is False

    interpreter.parse_register_commands('<unregisterHiddenVar name="secret" />', system)
    assert system.hidden_variables == {}


# --- 预览 / 标签配置 ---

def test_extract_and_strip_commands(interpreter):
    text = 'a<setVar name="n" value="1" />b<registerVar name="m" type="number" initVal="2" />c'

    assert interpreter.has_commands(text) is True
    assert interpreter.extract_commands(text) == [
        '<setVar name="n" value="1" />',
        '<registerVar name="m" type="number" initVal="2" />',
    ]
    assert interpreter.strip_commands(text) == "abc"
    assert interpreter.has_commands("no tags here") is False


def test_custom_tag_names(interpreter, system):
    interpreter.update_tag_config({"setVar": "set"})

    interpreter.parse_commands('<set name="n" value="1" />', system)
    assert system.variables["n"].value == 1
    assert interpreter.has_commands('<setVar name="n" value="1" />') is False


def test_tag_config_updates():
    config = TagConfig().updated({"set_var": "x", "registerVar": "reg", "nope": "y"})
    assert config.set_var == "x"
    assert config.register_var == "reg"
    assert config.to_dict()["setVar"] == "x"
    assert config.to_dict()["removeTableRow"] == "removeTableRow"


# --- 辅助函数 ---

def test_parse_branches_rejects_bad_input():
    with pytest.raises(BranchError):
        parse_branches("[]")
    with pytest.raises(BranchError):
        parse_branches('[{"condition": "a"}]')
    branches = parse_branches('[{"condition": "a > 1", "value": 1}, {"value": 0}]')
    assert branches[-1].condition is None


def test_set_value_by_dotted_path():
    # 下一段是数字时，对象会转换为数组（只保留数字键）
    container = {"a": {"0": "x", "k": 1}}
    assert set_value_by_dotted_path(container, "a.1", "y") == (True, None)
    assert container == {"a": ["x", "y"]}

    container = {"a": {"0": "x"}}
    assert set_value_by_dotted_path(container, "a.1.name", "y") == (True, None)
    assert container == {"a": ["x", {"name": "y"}]}

    success, error = set_value_by_dotted_path({}, "0", "v")
    assert success is False
    assert error
