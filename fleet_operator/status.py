import asyncio
import datetime as dt
import logging

from .apply import decode_manifest, resource_name_for
from .config import settings
from .errors import ConflictError
from .models.v1 import (
    ConditionStatus,
    GenerationStatus,
    RelatedResourceMeta,
)

logger = logging.getLogger(__name__)


def _transition_time(supplied=None):
    # Condition timestamps have a resolution of one second
    return (supplied or dt.datetime.now(dt.timezone.utc)).replace(microsecond=0)


def _dump(status):
    return status.model_dump(mode="json", by_alias=True, exclude_none=True)


def find_status_condition(conditions, condition_type):
    """
    Returns the condition with the given type, or None if there is no such condition.
    """
    return next((c for c in conditions if c.type == condition_type), None)


def is_status_condition_true(conditions, condition_type):
    """
    Returns true if the condition with the given type exists and is true.
    """
    condition = find_status_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def set_status_condition(conditions, condition):
    """
    Merges the given condition into the list of conditions in place.

    A condition of a new type is appended. For an existing type, the transition
    time only changes when the status changes. Otherwise the stored transition
    time is kept, even if the given condition has a different one.
    """
    existing = find_status_condition(conditions, condition.type)
    if existing is None:
        new_condition = condition.model_copy(deep=True)
        new_condition.last_transition_time = _transition_time(new_condition.last_transition_time)
        conditions.append(new_condition)
        return
    if existing.status != condition.status:
        existing.status = condition.status
        existing.last_transition_time = _transition_time(condition.last_transition_time)
    existing.reason = condition.reason
    existing.message = condition.message
    existing.observed_generation = condition.observed_generation


def set_generation_status(generations, generation):
    """
    Merges the given generation into the list of generations in place.

    A generation for a resource that is already present replaces the last
    generation in place, otherwise the generation is appended.
    """
    existing = next((g for g in generations if g.key == generation.key), None)
    if existing is not None:
        existing.last_generation = generation.last_generation
    else:
        generations.append(generation.model_copy())


def update_condition_fn(*conditions):
    """
    Returns a status update function that merges the given conditions.
    """
    def update(status):
        for condition in conditions:
            set_status_condition(status.conditions, condition)
    return update


def update_generations_fn(*generations):
    """
    Returns a status update function that merges the given generations.
    """
    def update(status):
        for generation in generations:
            set_generation_status(status.generations, generation)
    return update


def update_related_resources_fn(*related_resources):
    """
    Returns a status update function that replaces the related resources.
    """
    def update(status):
        # The same resources in a different order are not a change
        current = sorted(r.key for r in status.related_resources)
        if current == sorted(r.key for r in related_resources):
            return
        status.related_resources = [r.model_copy() for r in related_resources]
    return update


async def update_status(store, resource, status_model, name, *update_fns, namespace = None):
    """
    Applies the update functions to the status of the named object and saves it.

    The update functions are applied to a copy of the current status. If the
    result is the same as the current status, nothing is written. When the write
    fails with a conflict, the object is fetched again and the update functions
    are re-applied, up to the configured number of retries.

    Returns a tuple of (status, changed).
    """
    retries = 0
    delay = settings.status.backoff_seconds
    while True:
        obj = await store.get(resource, name, namespace = namespace)
        current = status_model.model_validate(obj.get("status") or {})
        status = current.model_copy(deep = True)
        for update_fn in update_fns:
            update_fn(status)
        if _dump(status) == _dump(current):
            return current, False
        try:
            updated = await store.update_status(
                resource,
                { "metadata": obj["metadata"], "status": _dump(status) }
            )
        except ConflictError:
            if retries >= settings.status.retries:
                raise
            retries += 1
            logger.info(
                "conflict updating status for %s %s - retrying (%d/%d)",
                resource.kind,
                name,
                retries,
                settings.status.retries
            )
            await asyncio.sleep(delay)
            delay = delay * settings.status.backoff_factor
        else:
            return status_model.model_validate(updated.get("status") or {}), True


def new_generation_status(resource, obj):
    """
    Returns the generation status for the given object of the given resource.
    """
    group, _, version = resource.api_version.rpartition("/")
    metadata = obj["metadata"]
    return GenerationStatus(
        group = group,
        version = version,
        resource = resource.name,
        namespace = metadata.get("namespace") or "",
        name = metadata["name"],
        last_generation = metadata.get("generation", 0)
    )


def generation_status_for(generations, group, version, resource, namespace, name):
    """
    Returns the generation status for the specified resource, or None if there is none.
    """
    key = (group, version, resource, namespace, name)
    return next((g for g in generations if g.key == key), None)


def generate_related_resource(data):
    """
    Returns the related resource entry for the object described by the given manifest.
    """
    manifest = decode_manifest(data)
    return RelatedResourceMeta(
        group = manifest.group,
        version = manifest.version,
        resource = resource_name_for(manifest),
        namespace = manifest.namespace or "",
        name = manifest.name
    )
