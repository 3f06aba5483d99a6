"""Blockflow - block-based workflow execution engine.

Runs workflow graphs of blocks (agents, functions, branches, loops, parallels,
sub-workflows) and executes them on recurring schedules.
"""

__version__ = "0.1.0"
