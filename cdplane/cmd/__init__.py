"""
This module holds all of the command classes for cdplane's main entrypoint
"""

# Local
from .base import CmdBase
from .run_operator_cmd import RunOperatorCmd
