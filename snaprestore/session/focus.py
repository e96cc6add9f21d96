"""
Focus model - exactly one navigable field is current at any time.

Fields are partitioned into groups. ``advance`` moves within the current group
and wraps; only ``cycle_group`` crosses groups
(Source -> Backend -> Catalog -> Source). The backend group's membership
depends on the selected restore target, so switching target re-checks focus.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from snaprestore.models import CONFIG_TYPES, ObjectStoreConfig
from snaprestore.types import Direction, FieldGroup, FocusField, RestoreTarget

__all__ = ['FocusModel', 'GROUP_CYCLE', 'fields_for', 'group_of']

logger = logging.getLogger(__name__)

# cycle_group order; the target selector rejoins the cycle at the backend group
GROUP_CYCLE: Mapping[FieldGroup, FieldGroup] = {
    FieldGroup.SOURCE: FieldGroup.BACKEND,
    FieldGroup.TARGET_SELECTOR: FieldGroup.BACKEND,
    FieldGroup.BACKEND: FieldGroup.CATALOG,
    FieldGroup.CATALOG: FieldGroup.SOURCE,
}

_FIXED_GROUPS: Mapping[FieldGroup, tuple[FocusField, ...]] = {
    FieldGroup.SOURCE: ObjectStoreConfig.FIELDS,
    FieldGroup.TARGET_SELECTOR: (FocusField.RESTORE_TARGET,),
    FieldGroup.CATALOG: (FocusField.SNAPSHOT_LIST,),
}


def fields_for(target: RestoreTarget) -> tuple[FocusField, ...]:
    """Ordered backend-group fields of a target; the first is its designated first field."""
    return CONFIG_TYPES[target].FIELDS


def group_of(field: FocusField) -> FieldGroup:
    for group, fields in _FIXED_GROUPS.items():
        if field in fields:
            return group
    return FieldGroup.BACKEND


class FocusModel:
    """Current focus and the transitions between fields."""

    def __init__(self, target: RestoreTarget, current: FocusField = FocusField.SNAPSHOT_LIST) -> None:
        if group_of(current) == FieldGroup.BACKEND and current not in fields_for(target):
            raise ValueError(f'{current.label} is not a field of {target.label}')
        self.target = target
        self.current = current

    @property
    def group(self) -> FieldGroup:
        return group_of(self.current)

    def group_fields(self, group: FieldGroup) -> tuple[FocusField, ...]:
        if group == FieldGroup.BACKEND:
            return fields_for(self.target)
        return _FIXED_GROUPS[group]

    def advance(self, direction: Direction) -> FocusField:
        """Move to the next/previous field of the current group, wrapping at the ends."""
        fields = self.group_fields(self.group)
        index = fields.index(self.current)
        self.current = fields[(index + direction.value) % len(fields)]
        return self.current

    def jump_to_group(self, group: FieldGroup) -> FocusField:
        """Focus the designated first field of a group."""
        self.current = self.group_fields(group)[0]
        logger.debug('Focus jumped to %s (%s)', self.current.label, group)
        return self.current

    def cycle_group(self) -> FocusField:
        return self.jump_to_group(GROUP_CYCLE[self.group])

    def select_target(self, target: RestoreTarget) -> bool:
        """
        Switch the backend group to another target.

        Focus moves to the new target's first field only when the current
        field is a backend field that the new target does not have.

        Returns:
            True if focus was relocated
        """
        self.target = target
        if self.group == FieldGroup.BACKEND and self.current not in fields_for(target):
            self.jump_to_group(FieldGroup.BACKEND)
            return True
        return False
