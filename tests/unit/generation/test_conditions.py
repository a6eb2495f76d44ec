"""
Unit Tests for Template Conditions
"""
import pytest


class TestEvaluateCondition:
    """Tests for {{#if}} condition evaluation"""

    @pytest.mark.parametrize("value,expected", [
        ("secret", True),
        ("", False),
        ("false", False),
        ("FALSE", False),
        (0, False),
        (1, True),
        (True, True),
        (None, False),
    ])
    def test_key_truthiness(self, value, expected):
        """Test a bare key evaluates the value's truthiness"""
        from nrinstall.modules.generation.conditions import evaluate_condition

        assert evaluate_condition("redis_password", {"redis_password": value}) is expected

    def test_missing_key_is_false(self):
        """Test an absent key is false"""
        from nrinstall.modules.generation.conditions import evaluate_condition

        assert evaluate_condition("redis_password", {}) is False

    @pytest.mark.parametrize("condition,expected", [
        ("params.redis_port == 6379", True),
        ("redis_port == '6379'", True),
        ("redis_port != 6379", False),
        ("redis_port > 1024", True),
        ("redis_port < 1024", False),
        ("os == 'ubuntu'", True),
        ("os != \"centos\"", True),
        ("tls == true", True),
    ])
    def test_comparisons(self, condition, expected):
        """Test comparison operators with literal coercion"""
        from nrinstall.modules.generation.conditions import evaluate_condition

        params = {"redis_port": 6379, "os": "ubuntu", "tls": "true"}
        assert evaluate_condition(condition, params) is expected

    def test_missing_param_never_equal(self):
        """Test a missing parameter compares unequal"""
        from nrinstall.modules.generation.conditions import evaluate_condition

        assert evaluate_condition("version == 'latest'", {}) is False
        assert evaluate_condition("version != 'latest'", {}) is True

    @pytest.mark.parametrize("condition", [
        "",
        "a == ",
        "a b c d",
        "__import__('os').system('id')",
        "redis_port >> 1",
        "name > 'abc'",
    ])
    def test_unparseable_is_false(self, condition):
        """Test anything malformed evaluates to false without raising"""
        from nrinstall.modules.generation.conditions import evaluate_condition

        assert evaluate_condition(condition, {"redis_port": 6379, "name": "x"}) is False

    def test_parse_condition_shapes(self):
        """Test parsed operand kinds"""
        from nrinstall.modules.generation.conditions import (
            parse_condition, Comparison, ParamRef, NumberLiteral, Truthy
        )

        parsed = parse_condition("params.port == 80")
        assert parsed == Comparison(ParamRef("port"), "==", NumberLiteral(80.0))
        assert parse_condition("enabled") == Truthy(ParamRef("enabled"))
        assert parse_condition("a == == b") is None
