"""Conflict resolution for plrsync.

A conflict is a pair of divergent versions of the same record, one held
locally and one held by the cloud. Resolution is whole-record: exactly one
side wins, fields are never merged.

Policies:
- Last-write-wins (default): the strictly newer ``updatedAt`` wins.
  Identical timestamps resolve to the cloud copy, which keeps the
  authority canonical.
- Decision hook: an injected callable (for example a UI dialog) that is
  asked instead and answers "local" or "cloud".

Resolution has no side effects; persisting the winner is the caller's job.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional, Union

from .models import FileRecord
from .timestamp_utils import parse_timestamp

logger = logging.getLogger(__name__)


class ResolutionChoice(Enum):
    """Which side of a conflict wins."""

    LOCAL = "local"
    CLOUD = "cloud"


DecisionHook = Callable[[FileRecord, FileRecord], Union[ResolutionChoice, str]]


def last_write_wins(local: FileRecord, cloud: FileRecord) -> ResolutionChoice:
    """Pick the side with the strictly newer version timestamp.

    Args:
        local: Local version
        cloud: Cloud version

    Returns:
        LOCAL only if local is strictly newer, otherwise CLOUD
    """
    local_updated = parse_timestamp(local.updated_at)
    cloud_updated = parse_timestamp(cloud.updated_at)
    if local_updated > cloud_updated:
        return ResolutionChoice.LOCAL
    return ResolutionChoice.CLOUD


def _coerce_choice(value: Union[ResolutionChoice, str]) -> ResolutionChoice:
    if isinstance(value, ResolutionChoice):
        return value
    if isinstance(value, str):
        try:
            return ResolutionChoice(value.lower())
        except ValueError:
            pass
    raise ValueError(
        f"Conflict decision must be 'local' or 'cloud', got {value!r}"
    )


class ConflictResolver:
    """Picks a single winner for each conflicting record."""

    def __init__(self, decision_hook: Optional[DecisionHook] = None) -> None:
        """Initialize conflict resolver.

        Args:
            decision_hook: Called with (local, cloud) in place of
                last-write-wins when set
        """
        self.decision_hook = decision_hook

    def resolve_choice(
        self, local: FileRecord, cloud: FileRecord
    ) -> ResolutionChoice:
        """Decide which side of a conflict wins.

        Raises:
            ValueError: If the records have different ids or the hook
                returns something other than local/cloud
        """
        if local.id != cloud.id:
            raise ValueError(
                f"Cannot resolve records with different ids: {local.id} != {cloud.id}"
            )

        if self.decision_hook is None:
            choice = last_write_wins(local, cloud)
        else:
            choice = _coerce_choice(self.decision_hook(local, cloud))

        logger.debug(
            f"Conflict on {local.id}: local={local.updated_at} "
            f"cloud={cloud.updated_at} -> {choice.value}"
        )
        return choice

    def resolve(self, local: FileRecord, cloud: FileRecord) -> FileRecord:
        """Get the winning record of a conflict."""
        choice = self.resolve_choice(local, cloud)
        return local if choice is ResolutionChoice.LOCAL else cloud
