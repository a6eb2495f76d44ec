"""
Unit Tests for Security Helpers
Tests secret masking, name validation and shell escaping
"""
import pytest


class TestMasking:
    """Tests for secret masking"""

    def test_mask_value_keeps_first_and_last(self):
        """Test masking keeps the first and last character"""
        from nrinstall.core.security import mask_value

        assert mask_value("ABCD1234WXYZ") == "A**********Z"

    def test_mask_value_short(self):
        """Test short values are fully masked"""
        from nrinstall.core.security import mask_value

        assert mask_value("ab") == "**"
        assert mask_value("") == ""

    def test_mask_license_key_assignment(self):
        """Test key=value masking of a license key"""
        from nrinstall.core.security import mask_sensitive_data

        assert mask_sensitive_data("license_key=ABCD1234WXYZ") == "license_key=A**********Z"

    def test_mask_yaml_style_and_quotes(self):
        """Test key: value and quoted values are masked"""
        from nrinstall.core.security import mask_sensitive_data

        assert mask_sensitive_data("password: hunter2") == "password: h*****2"
        assert mask_sensitive_data('API_KEY="abcdef"') == 'API_KEY="a****f"'

    def test_mask_cli_flags(self):
        """Test --flag value masking"""
        from nrinstall.core.security import mask_sensitive_data

        masked = mask_sensitive_data("agent --license-key ABCD1234WXYZ --verbose")
        assert "ABCD1234WXYZ" not in masked
        assert "--verbose" in masked

    def test_mask_is_idempotent(self):
        """Test masking an already masked string is a no-op"""
        from nrinstall.core.security import mask_sensitive_data

        once = mask_sensitive_data("token=supersecretvalue")
        assert mask_sensitive_data(once) == once

    def test_plain_text_untouched(self):
        """Test text without secrets is unchanged"""
        from nrinstall.core.security import mask_sensitive_data

        text = "redis-cli -h localhost -p 6379 ping"
        assert mask_sensitive_data(text) == text
        assert mask_sensitive_data(None) is None

    def test_mask_parameters(self):
        """Test parameter dict masking by key name"""
        from nrinstall.core.security import mask_parameters

        masked = mask_parameters({
            "redis_password": "s3cret",
            "redis_port": 6379,
            "nested": {"api_key": "abcdef"},
        })
        assert masked["redis_password"] == "s****t"
        assert masked["redis_port"] == 6379
        assert masked["nested"]["api_key"] == "a****f"


class TestValidation:
    """Tests for name and path validation"""

    @pytest.mark.parametrize("name", ["redis", "mysql-8", "my_integration", "A1"])
    def test_valid_integration_names(self, name):
        """Test alphanumeric, hyphen and underscore names are accepted"""
        from nrinstall.core.security import validate_integration_name

        assert validate_integration_name(name) is True

    @pytest.mark.parametrize("name", ["", "../etc", "redis;rm", "a b", "a/b", "x" * 65])
    def test_invalid_integration_names(self, name):
        """Test traversal, shell metacharacters and overlong names are rejected"""
        from nrinstall.core.security import validate_integration_name

        assert validate_integration_name(name) is False

    def test_path_segments(self):
        """Test OS/version segments"""
        from nrinstall.core.security import validate_path_segment

        assert validate_path_segment("22.04") is True
        assert validate_path_segment("ubuntu") is True
        assert validate_path_segment("..") is False
        assert validate_path_segment("a/b") is False
        assert validate_path_segment(".hidden") is False


class TestShellEscaping:
    """Tests for shell argument escaping"""

    def test_escape_quotes_metacharacters(self):
        """Test values with metacharacters become one quoted word"""
        from nrinstall.core.security import escape_shell_arg

        assert escape_shell_arg("a b; rm x") == "'a b; rm x'"
        assert escape_shell_arg(6379) == "6379"

    def test_secure_ids_are_unique(self):
        """Test generated ids are unique and prefixed"""
        from nrinstall.core.security import generate_secure_id

        ids = {generate_secure_id("att-") for _ in range(100)}
        assert len(ids) == 100
        assert all(i.startswith("att-") for i in ids)
