"""Auditflow: template-driven audit workflows with step tracking."""

from .advancement import AdvancementEngine
from .catalog import TemplateCatalog
from .contracts import Audit, AuditView, Step, StepDefinition, Template
from .manager import AuditInstanceManager, HealResult, build_services
from .persistence import get_repository
from .progress import compute_percent
from .tracker import StepProgressTracker
from .workspace import AuditWorkspace

__version__ = "0.1.0"
__all__ = [
    "AdvancementEngine",
    "Audit",
    "AuditInstanceManager",
    "AuditView",
    "AuditWorkspace",
    "HealResult",
    "Step",
    "StepDefinition",
    "StepProgressTracker",
    "Template",
    "TemplateCatalog",
    "build_services",
    "compute_percent",
    "get_repository",
]
