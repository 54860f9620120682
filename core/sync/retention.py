"""
Retention Policies.

A policy picks which versions of a slot survive after an append. Policies
are pure: they look only at the version list and the current time, so they
are trivially testable and swappable.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Sequence, Set

from ..errors import ConfigurationError
from ..models.versions import SaveVersion

if TYPE_CHECKING:
    from ..models.config import EngineSettings

logger = logging.getLogger(__name__)


class RetentionPolicy(ABC):
    """Selects the version ids to keep"""

    @abstractmethod
    def select_keep(self, versions: Sequence[SaveVersion], now: datetime) -> Set[int]:
        """
        Args:
            versions: All versions of one slot, ascending by id
            now: Current time

        Returns:
            Ids of versions to retain
        """

    def __repr__(self) -> str:
        params = ", ".join(f"{k}={v!r}" for k, v in vars(self).items())
        return f"{self.__class__.__name__}({params})"


class KeepLatestPolicy(RetentionPolicy):
    """Keep the newest `count` versions"""

    def __init__(self, count: int = 5):
        if count < 1:
            raise ConfigurationError(f"Retention count must be at least 1, got {count}")
        self.count = count

    def select_keep(self, versions: Sequence[SaveVersion], now: datetime) -> Set[int]:
        ordered = sorted(v.version_id for v in versions)
        return set(ordered[-self.count:])


class KeepFirstAndLatestPolicy(KeepLatestPolicy):
    """
    Keep the very first version plus the newest `count - 1`.

    The first capture is usually the pristine save before any play session.
    """

    def select_keep(self, versions: Sequence[SaveVersion], now: datetime) -> Set[int]:
        ordered = sorted(v.version_id for v in versions)
        if not ordered:
            return set()
        if self.count == 1:
            return {ordered[-1]}
        return {ordered[0]} | set(ordered[-(self.count - 1):])


class MaxAgePolicy(RetentionPolicy):
    """Keep versions younger than `max_age`, and never fewer than `min_keep`"""

    def __init__(self, max_age: timedelta, min_keep: int = 1):
        if max_age <= timedelta(0):
            raise ConfigurationError(f"Max age must be positive, got {max_age}")
        if min_keep < 1:
            raise ConfigurationError(f"min_keep must be at least 1, got {min_keep}")
        self.max_age = max_age
        self.min_keep = min_keep

    def select_keep(self, versions: Sequence[SaveVersion], now: datetime) -> Set[int]:
        ordered = sorted(versions, key=lambda v: v.version_id)
        keep = {v.version_id for v in ordered if now - v.created_at <= self.max_age}
        keep.update(v.version_id for v in ordered[-self.min_keep:])
        return keep


def build_retention_policy(settings: 'EngineSettings') -> RetentionPolicy:
    """Create the policy named by `settings.retention_policy`"""
    if settings.retention_policy == 'latest':
        policy = KeepLatestPolicy(settings.retention_count)
    elif settings.retention_policy == 'keep_first':
        policy = KeepFirstAndLatestPolicy(settings.retention_count)
    elif settings.retention_policy == 'max_age':
        if settings.retention_max_age_hours is None:
            raise ConfigurationError("retention_max_age_hours is required for the max_age policy")
        policy = MaxAgePolicy(
            timedelta(hours=settings.retention_max_age_hours),
            min_keep=settings.retention_count,
        )
    else:
        raise ConfigurationError(f"Unknown retention policy: {settings.retention_policy}")

    logger.debug(f"Using retention policy {policy!r}")
    return policy
