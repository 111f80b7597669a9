"""Configuration, concrete deployment steps and the Deployer facade."""

from deploykit.deployment.config_manager import ConfigManager, DeployConfig
from deploykit.deployment.deployer import Deployer
from deploykit.deployment.steps import DeploymentSteps, readiness_probes, report_probes

__all__ = [
    "ConfigManager",
    "DeployConfig",
    "DeploymentSteps",
    "Deployer",
    "readiness_probes",
    "report_probes",
]
