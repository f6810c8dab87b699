"""Error taxonomy for the upgrade pipeline.

Every error raised by the orchestrator derives from ``UpgradeError`` and can carry
the pipeline stage, pool, node and state-machine step it relates to, so the
message a human operator sees always says where the run stopped.
"""

from __future__ import annotations


class UpgradeError(Exception):
    """Base class for all upgrade failures."""

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        pool: str | None = None,
        node: str | None = None,
        step: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.pool = pool
        self.node = node
        self.step = step

    def __str__(self) -> str:
        context = []
        if self.stage:
            context.append(f"stage={self.stage}")
        if self.pool:
            context.append(f"pool={self.pool}")
        if self.node:
            context.append(f"node={self.node}")
        if self.step:
            context.append(f"step={self.step}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ConfigurationError(UpgradeError):
    """Missing or contradictory required inputs. Never retried."""


class ValidationError(UpgradeError):
    """The requested transition or model is not acceptable."""


class InvalidVersionFormat(ValidationError):
    """The target version is not a semantic version string."""


class UnsupportedUpgradePath(ValidationError):
    """The target version is not a supported upgrade from the current version."""


class LocationMismatch(ValidationError):
    """The requested location differs from the location recorded in the model."""


class TopologyError(UpgradeError):
    """Cluster topology could not be discovered."""


class TopologyIncomplete(TopologyError):
    """A control-plane resource could not be resolved to the control-plane pool."""


class StepTimeoutError(UpgradeError):
    """A bounded wait exceeded its deadline."""


class CloudAPIError(UpgradeError):
    """A create, delete or list call against the cloud failed."""


class IllegalTransitionError(UpgradeError):
    """A node state machine was asked to move backwards or out of a terminal state."""


class ImageNotAvailable(ValidationError):
    """An OS image the cluster boots from is not published in the target cloud."""
