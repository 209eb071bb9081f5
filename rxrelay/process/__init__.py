"""Lifecycle management for the supervised rx process."""

from rxrelay.process.command import build_command
from rxrelay.process.supervisor import ProcessHandle, ProcessSupervisor, SupervisorStatus

__all__ = ["ProcessHandle", "ProcessSupervisor", "SupervisorStatus", "build_command"]
