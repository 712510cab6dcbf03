"""
Quality gate runner.

Runs typecheck, test, lint and build in that order against an execution
environment and stops at the first failure. A failing command is a failed
gate, never an exception; only a command that cannot be dispatched raises.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from phaseflow.config import GatesConfig
    from phaseflow.environment.base import ExecutionEnvironment
    from phaseflow.logger import PipelineLogger

MAX_OUTPUT_LENGTH = 8000

GATE_ORDER = ("typecheck", "test", "lint", "build")


def truncate_tail(raw: str, limit: int = MAX_OUTPUT_LENGTH) -> str:
    """Keep the last ``limit`` characters, where build errors usually are."""
    if len(raw) <= limit:
        return raw
    return f"[truncated]\n{raw[-limit:]}"


def run_gate(
    env: ExecutionEnvironment,
    gate: str,
    command: str,
    timeout: Optional[int] = None,
    logger: Optional[PipelineLogger] = None,
) -> dict[str, Any]:
    """
    Run a single gate.

    Returns:
        ``{"gate", "status", "output"}`` with output tail-truncated.

    Raises:
        ExecutionEnvironmentError: If the command cannot be dispatched.
    """
    if logger:
        logger.info("gate_started", {"gate": gate, "command": command})

    result = env.run_command(command, timeout=timeout)
    combined = result.combined_output
    status = "passed" if result.exit_code == 0 else "failed"

    if logger:
        logger.info("gate_complete", {
            "gate": gate,
            "status": status,
            "exit_code": result.exit_code,
            "output_length": len(combined),
        })
    return {"gate": gate, "status": status, "output": truncate_tail(combined)}


def run_all_gates(
    env: ExecutionEnvironment,
    config: GatesConfig,
    logger: Optional[PipelineLogger] = None,
) -> list[dict[str, Any]]:
    """
    Run the gate battery in order, stopping at the first failure.

    Returns:
        One result per gate run; fewer than four means an early stop.
    """
    results = []
    for gate, command in config.commands():
        result = run_gate(env, gate, command, timeout=config.timeout_seconds, logger=logger)
        results.append(result)
        if result["status"] == "failed":
            if logger:
                logger.warn("gate_failed_stopping", {"gate": gate})
            break
    return results


def all_passed(results: list[dict[str, Any]]) -> bool:
    """Check that every gate ran and passed."""
    ran = [r["gate"] for r in results]
    return ran == list(GATE_ORDER) and all(r["status"] == "passed" for r in results)
