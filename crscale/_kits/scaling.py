"""
The scale subresource contract of the custom resource.

External actors (``kubectl scale``, horizontal pod autoscalers) know nothing
about the resource's own schema. Instead, they see a generic triple
of the desired replicas, the observed replicas, and the label selector
of the pods -- as mapped by the paths declared in the CRD.
"""
import copy
import dataclasses
from collections.abc import Mapping
from typing import Any, cast

from crscale._cogs.structs import bodies

SCALE_PATHS: Mapping[str, str] = {
    'specReplicasPath': '.spec.replicas',
    'statusReplicasPath': '.status.replicas',
    'labelSelectorPath': '.status.selector',
}


@dataclasses.dataclass(frozen=True)
class Scale:
    spec_replicas: int | None
    status_replicas: int | None
    label_selector: str | None


def _resolve(body: Mapping[str, Any], path: str) -> Any:
    value: Any = body
    for part in path.strip('.').split('.'):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def read_scale(body: bodies.RawBody) -> Scale:
    """ What an autoscaler sees when it reads the scale of the resource. """
    spec_replicas = _resolve(body, SCALE_PATHS['specReplicasPath'])
    status_replicas = _resolve(body, SCALE_PATHS['statusReplicasPath'])
    label_selector = _resolve(body, SCALE_PATHS['labelSelectorPath'])
    return Scale(
        spec_replicas=spec_replicas if isinstance(spec_replicas, int) else None,
        status_replicas=status_replicas if isinstance(status_replicas, int) else None,
        label_selector=label_selector if isinstance(label_selector, str) else None,
    )


def with_spec_replicas(body: bodies.RawBody, replicas: int) -> bodies.RawBody:
    """
    What a scale write does to the resource: only the desired replicas change.
    """
    if isinstance(replicas, bool) or not isinstance(replicas, int) or replicas < 0:
        raise ValueError(f"Replicas must be a non-negative integer, got {replicas!r}.")
    result = cast(dict[str, Any], copy.deepcopy(dict(body)))
    result.setdefault('spec', {})['replicas'] = replicas
    return cast(bodies.RawBody, result)


def as_autoscaling_scale(body: bodies.RawBody) -> dict[str, Any]:
    """
    Render the resource as the ``autoscaling/v1 Scale`` object.
    """
    scale = read_scale(body)
    meta = body.get('metadata', {})
    result: dict[str, Any] = {
        'apiVersion': 'autoscaling/v1',
        'kind': 'Scale',
        'metadata': {key: meta[key] for key in ['name', 'namespace', 'uid', 'resourceVersion']
                     if key in meta},
        'spec': {},
        'status': {'replicas': scale.status_replicas or 0},
    }
    if scale.spec_replicas is not None:
        result['spec']['replicas'] = scale.spec_replicas
    if scale.label_selector is not None:
        result['status']['selector'] = scale.label_selector
    return result


def _is_word(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def format_selector(selector: Mapping[str, Any] | None) -> str:
    """
    Serialize a label selector into its string form, as used in ``?labelSelector=``.

    E.g.: ``app=web,tier in (a,b),!legacy``. The labels go first (sorted),
    the expressions go after them (in their original order).

    Empty selectors select everything, which is never what a workload means:
    so as the malformed ones, they are reported as `ValueError`.
    """
    if not isinstance(selector, Mapping):
        raise ValueError(f"The selector is not a mapping: {selector!r}")

    terms: list[str] = []
    match_labels = selector.get('matchLabels') or {}
    if not isinstance(match_labels, Mapping):
        raise ValueError(f"The selector's matchLabels is not a mapping: {match_labels!r}")
    for key, value in match_labels.items():
        if not _is_word(key) or not isinstance(value, str):
            raise ValueError(f"The selector's label is malformed: {key!r}={value!r}")
    for key, value in sorted(match_labels.items()):
        terms.append(f'{key}={value}')

    for expression in selector.get('matchExpressions') or []:
        if not isinstance(expression, Mapping) or not _is_word(expression.get('key')):
            raise ValueError(f"The selector's expression is malformed: {expression!r}")
        key = expression['key']
        operator = expression.get('operator')
        values = expression.get('values') or []
        if not isinstance(values, list) or not all(isinstance(value, str) for value in values):
            raise ValueError(f"The selector's expression is malformed: {expression!r}")
        match operator:
            case 'In' | 'NotIn' if values:
                word = 'in' if operator == 'In' else 'notin'
                terms.append(f"{key} {word} ({','.join(sorted(values))})")
            case 'Exists' if not values:
                terms.append(key)
            case 'DoesNotExist' if not values:
                terms.append(f'!{key}')
            case _:
                raise ValueError(f"The selector's expression is malformed: {expression!r}")

    if not terms:
        raise ValueError("The selector is empty.")
    return ','.join(terms)
