"""
Hand-built desired state for every component of an instance
"""

# Local
from .builder import DesiredState, DesiredStateBuilder
