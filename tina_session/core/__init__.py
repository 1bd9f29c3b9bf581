"""Naming, state machine, registry and the orchestrator commands."""

__all__ = ["errors", "naming", "orchestrator", "registry", "schema", "state_machine", "validation"]
