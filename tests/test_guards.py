import pytest

from rigger_automation.errors import GuardEvaluationError
from rigger_automation.guards import Guard, Ref
from rigger_automation.types import UNDEFINED


def lookup_from(values: dict):
    return lambda name: values.get(name, UNDEFINED)


def test_comparison_against_registered_result():
    guard = Guard.parse("port_80_check.rc == 0")
    assert guard.evaluate(lookup_from({"port_80_check": {"rc": 0}})) is True
    assert guard.evaluate(lookup_from({"port_80_check": {"rc": 1}})) is False
    assert guard.references() == {"port_80_check"}


def test_not_in_with_string_literal():
    guard = Guard.parse('"Status: active" not in ufw_status.stdout')
    assert guard.evaluate(lookup_from({"ufw_status": {"stdout": "Status: inactive"}})) is True
    assert guard.evaluate(lookup_from({"ufw_status": {"stdout": "Status: active\n"}})) is False


def test_boolean_operators_short_circuit():
    guard = Guard.parse("marker is defined and marker.stat.exists")
    assert guard.evaluate(lookup_from({})) is False
    assert guard.evaluate(lookup_from({"marker": {"stat": {"exists": True}}})) is True


def test_not_and_parentheses():
    guard = Guard.parse("not (enable_https and certbot_auto_renew)")
    assert guard.evaluate(lookup_from({"enable_https": True, "certbot_auto_renew": False})) is True
    assert guard.evaluate(lookup_from({"enable_https": True, "certbot_auto_renew": True})) is False


def test_string_truthiness_follows_yaml_words():
    guard = Guard.parse("enable_https")
    assert guard.evaluate(lookup_from({"enable_https": "yes"})) is True
    assert guard.evaluate(lookup_from({"enable_https": "false"})) is False


def test_membership_in_list_literal():
    guard = Guard.parse("os_family in ['Debian', 'RedHat']")
    assert guard.evaluate(lookup_from({"os_family": "Debian"})) is True
    assert guard.evaluate(lookup_from({"os_family": "Alpine"})) is False


def test_result_tests():
    failed = {"failed": True, "changed": False, "skipped": False}
    changed = {"failed": False, "changed": True, "skipped": False}
    lookup = lookup_from({"a": failed, "b": changed})
    assert Guard.parse("a is failed").evaluate(lookup) is True
    assert Guard.parse("a is succeeded").evaluate(lookup) is False
    assert Guard.parse("b is changed").evaluate(lookup) is True
    assert Guard.parse("b is not skipped").evaluate(lookup) is True


def test_undefined_reference_raises():
    guard = Guard.parse("missing.rc == 0")
    with pytest.raises(GuardEvaluationError) as excinfo:
        guard.evaluate(lookup_from({}))
    assert "missing.rc" in str(excinfo.value)
    assert excinfo.value.expression == "missing.rc == 0"


def test_parse_error_reports_column():
    with pytest.raises(GuardEvaluationError) as excinfo:
        Guard.parse("x == = 1")
    assert excinfo.value.column == 6


def test_unknown_test_name_is_rejected():
    with pytest.raises(GuardEvaluationError):
        Guard.parse("x is purple")


def test_bool_and_list_forms():
    assert Guard.parse(False).evaluate(lookup_from({})) is False
    guard = Guard.parse(["a == 1", "b == 2"])
    assert guard.source == "(a == 1) and (b == 2)"
    assert guard.evaluate(lookup_from({"a": 1, "b": 2})) is True
    assert guard.evaluate(lookup_from({"a": 1, "b": 3})) is False


def test_jinja_braces_are_stripped():
    guard = Guard.parse("{{ enable_https }}")
    assert guard.source == "enable_https"
    assert isinstance(guard.node, Ref)


def test_incomparable_values_raise():
    with pytest.raises(GuardEvaluationError):
        Guard.parse("a < b").evaluate(lookup_from({"a": 1, "b": "x"}))
