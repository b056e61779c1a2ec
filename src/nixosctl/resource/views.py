"""Read-only and mutable views over resource attributes.

The resolver and the engine never look at raw mappings directly. They talk
to a :class:`FieldSource`, which answers three questions about an attribute:
its current value, whether the user set it explicitly, and whether it changed
since the recorded state. :class:`PlanView` answers them for the planning
phase without allowing mutation; :class:`ApplyView` answers them for apply
and read, and accumulates the record that will be persisted.
"""
from __future__ import annotations

from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from .schema import COMPUTED_FIELD, CONFIG_FIELDS, default_for, field_spec


@dataclass(frozen=True)
class ResourceRecord:
    """Persisted identity and attributes of a managed host."""

    id: str
    attributes: Mapping[str, object] = field(default_factory=dict)

    @property
    def nixos_system(self) -> str:
        """Return the recorded active system, or an empty string."""
        return str(self.attributes.get(COMPUTED_FIELD) or "")


@runtime_checkable
class FieldSource(Protocol):
    """Capability shared by every phase context."""

    def get(self, name: str) -> object:
        """Return the current value of *name*, defaults applied."""

    def has_value(self, name: str) -> bool:
        """Return ``True`` when *name* was explicitly set to a non-empty value."""

    def has_change(self, name: str) -> bool:
        """Return ``True`` when *name* differs from the recorded state."""


def _is_set(values: Mapping[str, object], name: str) -> bool:
    value = values.get(name)
    return value is not None and value != ""


def _effective(values: Mapping[str, object], name: str) -> object:
    field_spec(name)
    value = values.get(name)
    return default_for(name) if value is None else value


class PlanView:
    """Desired attributes layered over the recorded record; never mutated."""

    def __init__(
        self,
        desired: Mapping[str, object],
        recorded: ResourceRecord | None = None,
    ) -> None:
        """Capture the desired attributes and the recorded record, if any."""
        self._desired = dict(desired)
        self._recorded = recorded
        self._prior: Mapping[str, object] = dict(recorded.attributes) if recorded else {}

    @property
    def recorded(self) -> ResourceRecord | None:
        """Return the recorded record this plan compares against."""
        return self._recorded

    @property
    def creating(self) -> bool:
        """Return ``True`` when no record exists yet."""
        return self._recorded is None

    def get(self, name: str) -> object:
        """Return the desired value, or the recorded one for the computed attribute."""
        if field_spec(name).computed:
            return _effective(self._prior, name)
        return _effective(self._desired, name)

    def has_value(self, name: str) -> bool:
        """Return ``True`` when *name* is explicitly set."""
        source = self._prior if field_spec(name).computed else self._desired
        return _is_set(source, name)

    def has_change(self, name: str) -> bool:
        """Return ``True`` when the desired value differs from the recorded one.

        The computed attribute is never reported here; whether it changes is
        what :class:`~nixosctl.resource.engine.PlanDiffer` decides.
        """
        if field_spec(name).computed:
            return False
        if self.creating:
            return True
        return _effective(self._desired, name) != _effective(self._prior, name)

    def changed_fields(self) -> tuple[str, ...]:
        """Return the configuration attributes whose values would change."""
        if self.creating:
            return tuple(name for name in CONFIG_FIELDS if _is_set(self._desired, name))
        return tuple(name for name in CONFIG_FIELDS if self.has_change(name))


class ApplyView:
    """Mutable context for apply and read phases."""

    def __init__(
        self,
        planned: Mapping[str, object],
        prior: ResourceRecord | None = None,
        *,
        pending: Collection[str] = (),
    ) -> None:
        """Store the planned attributes, the prior record and pending names."""
        self._planned: dict[str, object] = dict(planned)
        self._prior_attributes: Mapping[str, object] = dict(prior.attributes) if prior else {}
        self._pending = frozenset(pending)
        self._id = prior.id if prior else ""

    @classmethod
    def for_record(cls, record: ResourceRecord) -> ApplyView:
        """Return a view whose planned and prior attributes are *record*'s."""
        return cls(record.attributes, record)

    @property
    def id(self) -> str:
        """Return the identity token, or an empty string before assignment."""
        return self._id

    def assign_id(self, factory: Callable[[], str]) -> bool:
        """Assign an identity from *factory* unless one already exists."""
        if self._id:
            return False
        token = factory()
        if not token:
            raise ValueError("Identity factory returned an empty token.")
        self._id = token
        return True

    def get(self, name: str) -> object:
        """Return the planned value of *name*, defaults applied."""
        return _effective(self._planned, name)

    def has_value(self, name: str) -> bool:
        """Return ``True`` when *name* is explicitly set in the planned values."""
        field_spec(name)
        return _is_set(self._planned, name)

    def has_change(self, name: str) -> bool:
        """Return ``True`` when *name* is pending or differs from the prior record."""
        field_spec(name)
        if name in self._pending:
            return True
        return _effective(self._planned, name) != _effective(self._prior_attributes, name)

    def set(self, name: str, value: object) -> None:
        """Record a new value for *name*."""
        field_spec(name)
        self._planned[name] = value

    def to_record(self) -> ResourceRecord:
        """Return the record that should be persisted."""
        if not self._id:
            raise ValueError("Cannot export a record before an identity is assigned.")
        return ResourceRecord(id=self._id, attributes=dict(self._planned))


__all__ = ["ApplyView", "FieldSource", "PlanView", "ResourceRecord"]
