"""
Services: the orchestrator state machine, the panel driving loop and their
supporting collaborators.
"""

from .retry_policy import RetryPolicy
from .orchestrator import Orchestrator, OrchestratorState
from .panel import PanelController
from .enrichment import SummaryService, EnrichmentResult
from .state_manager import StateManager

__all__ = [
    'RetryPolicy',
    'Orchestrator',
    'OrchestratorState',
    'PanelController',
    'SummaryService',
    'EnrichmentResult',
    'StateManager',
]
