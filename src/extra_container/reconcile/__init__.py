"""Reconciliation pipeline: locate, diff, install, activate, destroy.

Only the data models are re-exported here; the pipeline stages import the
providers and the link repository, which in turn depend on these models.
"""
from __future__ import annotations

from .models import (
    ActivationMode,
    ActivationPlan,
    ChangeClassification,
    ChangeKind,
    ContainerArtifacts,
    ContainerDescriptor,
    ContainerName,
    DesiredBundle,
    InconsistentStateError,
    InputError,
    StopOutcome,
    names_from,
)

__all__ = [
    "ActivationMode",
    "ActivationPlan",
    "ChangeClassification",
    "ChangeKind",
    "ContainerArtifacts",
    "ContainerDescriptor",
    "ContainerName",
    "DesiredBundle",
    "InconsistentStateError",
    "InputError",
    "StopOutcome",
    "names_from",
]
