"""
Unit Tests for the Installation State Machine
"""
import pytest


class TestInstallationAttempt:
    """Tests for phase transitions"""

    @pytest.fixture
    def attempt(self):
        from nrinstall.modules.orchestrator.state_machine import InstallationAttempt
        return InstallationAttempt(attempt_id="att-1", integration="redis")

    def test_initial_phase(self, attempt):
        """Test attempts start generating the script"""
        from nrinstall.modules.orchestrator.state_machine import InstallPhase

        assert attempt.phase == InstallPhase.GENERATING_SCRIPT
        assert attempt.history() == ["generating_script"]
        assert attempt.is_terminal is False

    def test_happy_path(self, attempt):
        """Test the full install path is recorded in order"""
        from nrinstall.modules.orchestrator.state_machine import InstallPhase

        for phase in (InstallPhase.PROVISIONING, InstallPhase.EXECUTING,
                      InstallPhase.VERIFYING, InstallPhase.COMPLETED):
            attempt.transition(phase)

        assert attempt.history() == [
            "generating_script", "provisioning", "executing", "verifying", "completed"
        ]
        assert attempt.is_terminal is True
        assert attempt.to_dict()["transitions"][-1]["to"] == "completed"

    def test_rollback_only_leads_to_failed(self, attempt):
        """Test ROLLING_BACK can only end in FAILED"""
        from nrinstall.core.exceptions import IntegrationError
        from nrinstall.modules.orchestrator.state_machine import InstallPhase

        attempt.transition(InstallPhase.PROVISIONING)
        attempt.transition(InstallPhase.EXECUTING)
        attempt.transition(InstallPhase.ROLLING_BACK, reason="exit 1")

        assert attempt.can_transition(InstallPhase.COMPLETED) is False
        with pytest.raises(IntegrationError):
            attempt.transition(InstallPhase.COMPLETED)
        attempt.transition(InstallPhase.FAILED)

    @pytest.mark.parametrize("phase", ["COMPLETED", "FAILED", "DONE"])
    def test_terminal_phases_are_final(self, phase):
        """Test nothing leaves a terminal phase"""
        from nrinstall.modules.orchestrator.state_machine import (
            InstallationAttempt, InstallPhase, INSTALL_TRANSITIONS
        )

        assert INSTALL_TRANSITIONS[InstallPhase[phase]] == set()
        attempt = InstallationAttempt(attempt_id="att-2", integration="x", phase=InstallPhase[phase])
        assert not any(attempt.can_transition(p) for p in InstallPhase)

    def test_dry_run_only_from_generating(self, attempt):
        """Test DONE is reachable only before provisioning"""
        from nrinstall.modules.orchestrator.state_machine import InstallPhase

        assert attempt.can_transition(InstallPhase.DONE) is True
        attempt.transition(InstallPhase.PROVISIONING)
        assert attempt.can_transition(InstallPhase.DONE) is False

    def test_transitions_are_logged(self, attempt):
        """Test each transition goes through the structured logger"""
        from unittest.mock import Mock
        from nrinstall.modules.orchestrator.state_machine import InstallPhase

        logger = Mock()
        attempt.transition(InstallPhase.FAILED, reason="bad template", logger=logger)

        logger.log_phase_transition.assert_called_once_with(
            "att-1", "generating_script", "failed", reason="bad template"
        )
