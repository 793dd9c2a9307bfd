"""
TASKLOOP — Agent task-orchestration core.

Drives an autonomous coding assistant through repeated cycles of
model output → tool parsing → approval-gated execution → checkpointing.
"""

__version__ = "0.3.0"
__codename__ = "TASKLOOP"
__tagline__ = "Parse. Approve. Execute. Repeat."
