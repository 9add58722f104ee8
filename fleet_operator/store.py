import functools
import logging

import httpx

from easykube import ApiError

from .errors import ConflictError, NotFoundError, StoreError, TransientStoreError


logger = logging.getLogger(__name__)


def translate_errors(func):
    """
    Decorator that converts easykube and transport errors into store errors.
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except ApiError as exc:
            if exc.status_code == 404:
                raise NotFoundError(str(exc)) from exc
            elif exc.status_code == 409:
                raise ConflictError(str(exc)) from exc
            elif exc.status_code >= 500:
                raise TransientStoreError(str(exc), exc.status_code) from exc
            else:
                raise StoreError(str(exc), exc.status_code) from exc
        except httpx.TransportError as exc:
            raise TransientStoreError(str(exc)) from exc
    return wrapper


class ResourceStore:
    """
    Typed get, create, update and delete against a Kubernetes API using an
    easykube async client.

    Every operation takes an easykube ResourceSpec for the target resource.
    """
    def __init__(self, client):
        self._client = client

    async def _resource(self, spec, subresource = None):
        name = spec.name if not subresource else f"{spec.name}/{subresource}"
        return await self._client.api(spec.api_version).resource(name)

    @translate_errors
    async def get(self, spec, name, namespace = None):
        """
        Returns the named object, raising NotFoundError if it does not exist.
        """
        ekresource = await self._resource(spec)
        return await ekresource.fetch(name, namespace = namespace)

    @translate_errors
    async def create(self, spec, obj):
        """
        Creates the given object and returns the result.
        """
        ekresource = await self._resource(spec)
        return await ekresource.create(obj, namespace = obj["metadata"].get("namespace"))

    @translate_errors
    async def update(self, spec, obj):
        """
        Replaces the given object, which must carry the resource version it was
        read at. Raises ConflictError if the object changed in the meantime.
        """
        metadata = obj["metadata"]
        ekresource = await self._resource(spec)
        return await ekresource.replace(
            metadata["name"],
            obj,
            namespace = metadata.get("namespace")
        )

    @translate_errors
    async def update_status(self, spec, obj):
        """
        Replaces the status subresource of the given object.
        """
        metadata = obj["metadata"]
        ekresource = await self._resource(spec, "status")
        return await ekresource.replace(
            metadata["name"],
            {
                # Include the resource version for optimistic concurrency
                "metadata": { "resourceVersion": metadata["resourceVersion"] },
                "status": obj["status"],
            },
            namespace = metadata.get("namespace")
        )

    async def delete(self, spec, name, namespace = None):
        """
        Deletes the named object.

        Returns True if the object was deleted and False if it did not exist.
        """
        try:
            await self._delete(spec, name, namespace)
        except NotFoundError:
            return False
        else:
            return True

    @translate_errors
    async def _delete(self, spec, name, namespace):
        ekresource = await self._resource(spec)
        await ekresource.delete(name, namespace = namespace)

    @translate_errors
    async def list(self, spec, namespace = None, labels = None):
        """
        Returns a list of the objects matching the given labels.
        """
        ekresource = await self._resource(spec)
        params = {}
        if labels:
            params["labels"] = labels
        if namespace:
            params["namespace"] = namespace
        else:
            params["all_namespaces"] = spec.namespaced
        return [obj async for obj in ekresource.list(**params)]

    async def aclose(self):
        """
        Closes the underlying client.
        """
        await self._client.aclose()
