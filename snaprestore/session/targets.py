"""
Target configuration set - the object store source plus one slot per restore
target.

A target's slot is created from the initial settings the first time the target
is selected and kept for the rest of the session, so switching back and forth
preserves edits. Each slot carries its own inline error message.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

import attrs

from snaprestore.exceptions import ConfigInvalidError
from snaprestore.models import CONFIG_TYPES, BackendConfig, EditableConfig, ObjectStoreConfig
from snaprestore.types import FocusField, RestoreTarget

__all__ = ['TargetConfigurationSet', 'TargetSlot']

logger = logging.getLogger(__name__)


@attrs.define
class TargetSlot:
    """Configuration owned by one restore target."""

    target: RestoreTarget
    config: BackendConfig
    error_message: str = ''


class TargetConfigurationSet:
    """Source configuration and lazily instantiated target slots."""

    def __init__(
        self,
        source: ObjectStoreConfig,
        initial: Mapping[RestoreTarget, BackendConfig],
        active: RestoreTarget,
    ) -> None:
        """
        Args:
            source: Object store configuration
            initial: Starting configuration per target; missing targets start from defaults
            active: Target selected at startup (its slot is instantiated immediately)
        """
        self.source = source
        self.source_error = ''
        self._initial = dict(initial)
        self._slots: dict[RestoreTarget, TargetSlot] = {}
        self.active = active
        self.slot(active)

    @property
    def instantiated(self) -> frozenset[RestoreTarget]:
        return frozenset(self._slots)

    @property
    def active_slot(self) -> TargetSlot:
        return self.slot(self.active)

    def slot(self, target: RestoreTarget) -> TargetSlot:
        if target not in self._slots:
            config = self._initial.pop(target, None) or CONFIG_TYPES[target]()
            self._slots[target] = TargetSlot(target=target, config=config)
            logger.debug('Instantiated configuration for %s', target.label)
        return self._slots[target]

    def select(self, target: RestoreTarget) -> TargetSlot:
        self.active = target
        return self.slot(target)

    def config_for(self, field: FocusField) -> EditableConfig:
        """The configuration that owns an editable field (source or active target)."""
        if ObjectStoreConfig.owns(field):
            return self.source
        config = self.active_slot.config
        if not config.owns(field):
            raise ValueError(f'{field.label} is not editable for {self.active.label}')
        return config

    def commit(self, field: FocusField, text: str) -> None:
        """
        Store an edited value; the previous value is kept when parsing fails.

        Raises:
            ConfigInvalidError: If the text cannot be parsed for the field
        """
        try:
            if ObjectStoreConfig.owns(field):
                self.source = self.source.with_field_value(field, text)
                self.source_error = ''
            else:
                slot = self.active_slot
                slot.config = self.config_for(field).with_field_value(field, text)
                slot.error_message = ''
        except ConfigInvalidError as e:
            self.set_error(e)
            raise

    def set_error(self, error: ConfigInvalidError) -> None:
        """Show a field-scoped error inline next to the group that owns the field."""
        if ObjectStoreConfig.owns(error.field):
            self.source_error = str(error)
        else:
            self.active_slot.error_message = str(error)

    def clear_error(self, field: FocusField) -> None:
        if ObjectStoreConfig.owns(field):
            self.source_error = ''
        else:
            self.active_slot.error_message = ''
