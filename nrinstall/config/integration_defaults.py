"""
Integration Defaults Loader

Loads per-integration default parameters and extra verification checks from
YAML (defaults to nrinstall/config/integrations.yml).
"""

from typing import Any, Dict, List, Optional
from pathlib import Path
import yaml

from nrinstall.core.config import settings
from nrinstall.core.exceptions import ValidationError
from nrinstall.core.logging_config import logger
from nrinstall.schemas.installation import VerificationCheckSpec


class IntegrationDefaults:
    """Load integration defaults from a YAML file"""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize IntegrationDefaults

        Args:
            config_path: Path to the YAML file (defaults to settings.integrations_config_path)
        """
        self.config_path = Path(config_path) if config_path else settings.integrations_config_path
        self._integrations: Optional[Dict[str, Dict[str, Any]]] = None

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._integrations is not None:
            return self._integrations

        if not self.config_path.exists():
            logger.warning(f"Integration defaults file not found: {self.config_path}")
            self._integrations = {}
            return self._integrations

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ValidationError(f"Cannot load integration defaults from {self.config_path}: {e}", cause=e)

        integrations = config.get('integrations') or {}
        if not isinstance(integrations, dict):
            raise ValidationError(f"'integrations' in {self.config_path} must be a mapping")

        self._integrations = {str(name): (data or {}) for name, data in integrations.items()}
        logger.info(f"Loaded defaults for {len(self._integrations)} integrations from {self.config_path}")
        return self._integrations

    def reload(self):
        self._integrations = None
        self._load()

    def integrations(self) -> List[str]:
        return sorted(self._load().keys())

    def get_parameters(self, integration: str) -> Dict[str, Any]:
        """Default parameters for an integration (empty if unknown)"""
        data = self._load().get(integration, {})
        return dict(data.get('parameters') or {})

    def merge_parameters(self, integration: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """Defaults overlaid with the request parameters"""
        merged = self.get_parameters(integration)
        merged.update(parameters or {})
        return merged

    def get_verification_checks(self, integration: str) -> List[VerificationCheckSpec]:
        data = self._load().get(integration, {})
        checks = []
        for entry in data.get('verification_checks') or []:
            try:
                checks.append(VerificationCheckSpec(**entry))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid verification check for {integration}: {e}")
        return checks
