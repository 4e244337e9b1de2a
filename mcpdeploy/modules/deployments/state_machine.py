"""
Deployment status transitions.

Forward along pending -> validating -> building -> deploying -> running
(steps may be skipped). failed, crashed and cancelled can be entered from any
in-progress or running state. removed is terminal and can be entered from
anywhere. Any other move (retry, restart, recovery after a healthy probe)
needs ``explicit=True``, and nothing leaves removed.
"""

from typing import Optional, Union

from mcpdeploy.core.errors import DeploymentError, ErrorCode
from mcpdeploy.modules.deployments.schemas import DeploymentStatus

_PROGRESS_RANK = {
    DeploymentStatus.PENDING: 0,
    DeploymentStatus.VALIDATING: 1,
    DeploymentStatus.BUILDING: 2,
    DeploymentStatus.DEPLOYING: 3,
    DeploymentStatus.RUNNING: 4,
}

_STOPPED = {DeploymentStatus.FAILED, DeploymentStatus.CRASHED, DeploymentStatus.CANCELLED}

ACTIVE_STATUSES = tuple(s.value for s in _PROGRESS_RANK)


def _coerce(status: Union[DeploymentStatus, str, None]) -> DeploymentStatus:
    if status is None:
        return DeploymentStatus.PENDING
    return DeploymentStatus(status)


def can_transition(
    current: Union[DeploymentStatus, str, None],
    target: Union[DeploymentStatus, str],
    explicit: bool = False,
) -> bool:
    current = _coerce(current)
    target = DeploymentStatus(target)

    if current == DeploymentStatus.REMOVED:
        return target == DeploymentStatus.REMOVED
    if current == target or target == DeploymentStatus.REMOVED:
        return True
    if target in _STOPPED:
        return current in _PROGRESS_RANK or explicit
    if current in _PROGRESS_RANK and _PROGRESS_RANK[target] > _PROGRESS_RANK[current]:
        return True
    return explicit


def ensure_transition(
    current: Union[DeploymentStatus, str, None],
    target: Union[DeploymentStatus, str],
    explicit: bool = False,
    deployment_id: Optional[str] = None,
):
    if not can_transition(current, target, explicit):
        current_value = _coerce(current).value
        raise DeploymentError(
            f"Invalid status transition {current_value} -> {DeploymentStatus(target).value}",
            ErrorCode.INVALID_STATUS_TRANSITION,
            409,
            {"deployment_id": deployment_id, "from": current_value, "to": DeploymentStatus(target).value},
        )


def is_regression(current: Union[DeploymentStatus, str, None], target: Union[DeploymentStatus, str]) -> bool:
    """True when ``target`` would move an in-progress deployment backwards."""
    current = _coerce(current)
    target = DeploymentStatus(target)
    if current in _PROGRESS_RANK and target in _PROGRESS_RANK:
        return _PROGRESS_RANK[target] < _PROGRESS_RANK[current]
    return False
