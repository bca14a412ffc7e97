# preview_engine/deployment/strategy.py
"""Redeploy strategies of a deployable service."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


IMAGE_HASH_ANNOTATION = "imageHash"
DATE_ANNOTATION = "date"


class RedeployPolicy(Enum):
    ON_IMAGE_UPDATE = "on-image-update"
    NEVER = "never"
    ALWAYS = "always"


@dataclass(frozen=True)
class DeploymentStrategy:
    """
    Decides whether a redeploy must recreate the pods of a service.

    The orchestrator recreates pods when the pod template changes, so the
    strategy is expressed as pod-template annotations. See
    https://stackoverflow.com/a/55221174/5088458 for the `date` workaround.
    """
    policy: RedeployPolicy
    image_hash: Optional[str] = None

    def __post_init__(self):
        if self.policy == RedeployPolicy.ON_IMAGE_UPDATE and not self.image_hash:
            raise ValueError("Redeploying on image update requires an image hash")

    @classmethod
    def redeploy_on_image_update(cls, image_hash: str) -> "DeploymentStrategy":
        return cls(RedeployPolicy.ON_IMAGE_UPDATE, image_hash)

    @classmethod
    def redeploy_never(cls) -> "DeploymentStrategy":
        return cls(RedeployPolicy.NEVER)

    @classmethod
    def redeploy_always(cls) -> "DeploymentStrategy":
        return cls(RedeployPolicy.ALWAYS)

    def pod_annotations(self, now: Optional[datetime] = None) -> Dict[str, str]:
        """Annotations for the pod template, evaluated fresh on every call."""
        if self.policy == RedeployPolicy.ON_IMAGE_UPDATE:
            return {IMAGE_HASH_ANNOTATION: self.image_hash}

        if self.policy == RedeployPolicy.NEVER:
            return {}

        now = now or datetime.now(timezone.utc)
        return {DATE_ANNOTATION: now.isoformat()}
