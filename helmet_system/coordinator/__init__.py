"""
Helmet Guard Escalation Coordinator
Accident event lifecycle with a cancellable confirmation countdown
"""

from .clock import CentralClock
from .config import EscalationConfig
from .coordinator import EscalationCoordinator

__all__ = [
    'CentralClock',
    'EscalationConfig',
    'EscalationCoordinator',
]

__version__ = '1.0.0'
