"""Decide which containers to start or restart after installation, and do it."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from ..providers.systemd import SystemdError, SystemdProvider
from .models import (
    ActivationMode,
    ActivationPlan,
    ChangeClassification,
    ContainerName,
)

LOGGER = logging.getLogger(__name__)


def plan_activation(
    desired: Sequence[ContainerName],
    classification: ChangeClassification,
    systemd: SystemdProvider,
    mode: ActivationMode,
) -> ActivationPlan:
    """Build an :class:`ActivationPlan` for *mode*.

    ``START`` queries every desired container: inactive ones are started and
    active changed ones restarted. ``RESTART_CHANGED`` only queries changed
    containers and never starts anything that is not already running. When
    nothing changed, no query is made and the plan is empty.
    """
    changed = classification.changed
    if mode is ActivationMode.NONE or not changed:
        return ActivationPlan()

    if mode is ActivationMode.START:
        active = systemd.active(list(desired))
        to_start = tuple(name for name in desired if name not in active)
        to_restart = tuple(
            name for name in desired if name in active and classification.is_changed(name)
        )
        unchanged_running = tuple(
            name for name in desired if name in active and not classification.is_changed(name)
        )
        return ActivationPlan(
            to_start=to_start,
            to_restart=to_restart,
            unchanged_running=unchanged_running,
        )

    active = systemd.active(list(changed))
    return ActivationPlan(to_restart=tuple(name for name in changed if name in active))


@dataclass(slots=True)
class ActivationResult:
    """Calls issued while applying a plan."""

    started: list[ContainerName] = field(default_factory=list)
    restarted: list[ContainerName] = field(default_factory=list)
    stop_failed: bool = False


def apply_plan(
    plan: ActivationPlan,
    systemd: SystemdProvider,
    *,
    settle_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> ActivationResult:
    """Start ``to_start`` then stop, settle and start ``to_restart``.

    Stop failures during a restart are tolerated since the unit may already
    be down. Start failures raise :class:`SystemdError`.
    """
    result = ActivationResult()
    if plan.to_start:
        systemd.start(plan.to_start)
        result.started.extend(plan.to_start)

    if plan.to_restart:
        try:
            systemd.stop(plan.to_restart)
        except SystemdError as exc:
            LOGGER.warning("stop before restart failed: %s", exc)
            result.stop_failed = True
        # systemd may ignore a start issued right after the stop returns
        sleep(settle_seconds)
        systemd.start(plan.to_restart)
        result.restarted.extend(plan.to_restart)
    return result


__all__ = ["ActivationResult", "apply_plan", "plan_activation"]
