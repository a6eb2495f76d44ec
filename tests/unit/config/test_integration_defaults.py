"""
Unit Tests for the Integration Defaults Loader
"""
import pytest


class TestIntegrationDefaults:
    """Tests for YAML-backed integration defaults"""

    @pytest.fixture
    def config_file(self, tmp_path):
        path = tmp_path / "integrations.yml"
        path.write_text(
            "integrations:\n"
            "  redis:\n"
            "    parameters:\n"
            "      redis_host: localhost\n"
            "      redis_port: 6379\n"
            "    verification_checks:\n"
            "      - command: 'pgrep newrelic-infra'\n"
            "        description: agent running\n"
            "        retry_count: 2\n"
            "      - description: missing command\n"
            "  nginx:\n"
        )
        return path

    def test_packaged_file_loads(self):
        """Test the packaged defaults file is valid"""
        from nrinstall.config.integration_defaults import IntegrationDefaults

        defaults = IntegrationDefaults()
        assert "redis" in defaults.integrations()
        assert defaults.get_parameters("redis")["redis_port"] == 6379

    def test_request_parameters_override_defaults(self, config_file):
        """Test request parameters win over defaults"""
        from nrinstall.config.integration_defaults import IntegrationDefaults

        defaults = IntegrationDefaults(str(config_file))
        merged = defaults.merge_parameters("redis", {"redis_port": 6380, "redis_password": "x"})
        assert merged == {"redis_host": "localhost", "redis_port": 6380, "redis_password": "x"}

    def test_unknown_integration_is_empty(self, config_file):
        """Test unknown and empty entries yield no defaults"""
        from nrinstall.config.integration_defaults import IntegrationDefaults

        defaults = IntegrationDefaults(str(config_file))
        assert defaults.get_parameters("postgresql") == {}
        assert defaults.get_parameters("nginx") == {}
        assert defaults.get_verification_checks("nginx") == []

    def test_invalid_checks_are_skipped(self, config_file):
        """Test malformed verification checks are dropped"""
        from nrinstall.config.integration_defaults import IntegrationDefaults

        checks = IntegrationDefaults(str(config_file)).get_verification_checks("redis")
        assert len(checks) == 1
        assert checks[0].command == "pgrep newrelic-infra"
        assert checks[0].retry_count == 2

    def test_missing_file(self, tmp_path):
        """Test a missing file means no defaults"""
        from nrinstall.config.integration_defaults import IntegrationDefaults

        defaults = IntegrationDefaults(str(tmp_path / "absent.yml"))
        assert defaults.integrations() == []

    def test_malformed_yaml(self, tmp_path):
        """Test unparseable YAML is a validation error"""
        from nrinstall.config.integration_defaults import IntegrationDefaults
        from nrinstall.core.exceptions import ValidationError

        path = tmp_path / "bad.yml"
        path.write_text("integrations: [unclosed\n")
        with pytest.raises(ValidationError):
            IntegrationDefaults(str(path)).integrations()

    def test_integrations_must_be_mapping(self, tmp_path):
        """Test a list under 'integrations' is rejected"""
        from nrinstall.config.integration_defaults import IntegrationDefaults
        from nrinstall.core.exceptions import ValidationError

        path = tmp_path / "list.yml"
        path.write_text("integrations:\n  - redis\n")
        with pytest.raises(ValidationError):
            IntegrationDefaults(str(path)).get_parameters("redis")

    def test_reload(self, config_file):
        """Test reload picks up file changes"""
        from nrinstall.config.integration_defaults import IntegrationDefaults

        defaults = IntegrationDefaults(str(config_file))
        assert "redis" in defaults.integrations()
        config_file.write_text("integrations:\n  mysql: {}\n")
        defaults.reload()
        assert defaults.integrations() == ["mysql"]
