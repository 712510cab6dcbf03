"""
Phaseflow - durable, human-gated feature pipeline.

Carries a feature request through analysis, approach generation, judging,
implementation and pull-request creation, with LLM agents working inside an
isolated execution environment and a human approving every phase boundary.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
