"""
Status conditions: timestamped summaries of one aspect of the object's health.

The conditions are kept as an ordered sequence with at most one entry per type.
They are never mutated in place: every change produces a new sequence,
so that the old and the new status can be compared to skip no-op writes.

The transition time of a condition changes only when its status changes.
A pass that re-asserts the same status (even with a new reason or message)
keeps the original transition time, so the converged objects are not churned.
"""
import dataclasses
import datetime
import enum
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import iso8601

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%SZ'

# The condition types maintained on the custom resources, in their rendering order.
AVAILABLE = 'Available'
READY = 'Ready'
DEGRADED = 'Degraded'
TRACKED_TYPES = (AVAILABLE, READY, DEGRADED)


class ConditionStatus(str, enum.Enum):
    TRUE = 'True'
    FALSE = 'False'
    UNKNOWN = 'Unknown'


@dataclasses.dataclass(frozen=True)
class Condition:
    type: str
    status: ConditionStatus
    reason: str = ''
    message: str = ''
    last_transition_time: datetime.datetime | None = None


Conditions = tuple[Condition, ...]


def utcnow() -> datetime.datetime:
    """ The current time as stored in the conditions: UTC, with no sub-seconds. """
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


def format_timestamp(value: datetime.datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str | None) -> datetime.datetime | None:
    if not value:
        return None
    try:
        return iso8601.parse_date(value)
    except iso8601.ParseError:
        return None


def parse_condition(raw: Mapping[str, Any]) -> Condition:
    try:
        status = ConditionStatus(raw.get('status'))
    except ValueError:
        status = ConditionStatus.UNKNOWN
    return Condition(
        type=str(raw.get('type', '')),
        status=status,
        reason=str(raw.get('reason') or ''),
        message=str(raw.get('message') or ''),
        last_transition_time=parse_timestamp(raw.get('lastTransitionTime')),
    )


def parse_conditions(raw: Iterable[Mapping[str, Any]] | None) -> Conditions:
    """
    Parse the conditions as stored in the object's status.

    Malformed entries (with no type) are dropped. If the same type is listed
    more than once, only the first entry is taken, the rest are dropped.
    """
    result: list[Condition] = []
    seen: set[str] = set()
    for item in raw or []:
        if not isinstance(item, Mapping) or not item.get('type'):
            continue
        condition = parse_condition(item)
        if condition.type not in seen:
            seen.add(condition.type)
            result.append(condition)
    return tuple(result)


def render(conditions: Iterable[Condition]) -> list[dict[str, str]]:
    """ Serialize the conditions to be stored in the object's status. """
    result: list[dict[str, str]] = []
    for condition in conditions:
        item = {
            'type': condition.type,
            'status': condition.status.value,
            'reason': condition.reason,
            'message': condition.message,
        }
        if condition.last_transition_time is not None:
            item['lastTransitionTime'] = format_timestamp(condition.last_transition_time)
        result.append(item)
    return result


def find(conditions: Iterable[Condition], type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == type:
            return condition
    return None


def upsert(
        conditions: Sequence[Condition],
        type: str,
        status: ConditionStatus,
        reason: str,
        message: str,
        now: datetime.datetime,
) -> Conditions:
    """
    Set the condition of the specified type, either replacing or appending it.

    The order of other conditions is preserved. The existing condition
    of the same type is replaced in its place. New conditions go to the end.

    The transition time is set to ``now`` only if the status has changed
    (or if the condition is new). Otherwise, it is kept as it was.
    """
    existing = find(conditions, type)
    if existing is not None and existing.status == status:
        transition_time = existing.last_transition_time or now
    else:
        transition_time = now

    updated = Condition(
        type=type,
        status=status,
        reason=reason,
        message=message,
        last_transition_time=transition_time,
    )

    if existing is None:
        return tuple(conditions) + (updated,)
    return tuple(updated if condition.type == type else condition for condition in conditions)
