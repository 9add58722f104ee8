import json

from .apply import APPLIERS, decode_manifest
from .models.v1 import InstallMode


#: The namespace that the klusterlet agents are deployed into by default
KLUSTERLET_DEFAULT_NAMESPACE = "open-cluster-management-agent"


def klusterlet_namespace(mode, klusterlet_name, spec_namespace):
    """
    Returns the namespace that the agents of a klusterlet are deployed into.

    In detached and hosted mode the agents run outside the managed cluster, in a
    namespace named after the klusterlet.
    """
    if mode in (InstallMode.DETACHED, InstallMode.HOSTED):
        return klusterlet_name
    return spec_namespace or KLUSTERLET_DEFAULT_NAMESPACE


def namespaced_source(manifest_source, namespace):
    """
    Returns a manifest source that places namespaced objects from the given source
    into the given namespace.
    """
    def source(identifier):
        data = manifest_source(identifier)
        manifest = decode_manifest(data)
        applier = APPLIERS.get((manifest.group, manifest.kind))
        if applier is None or not applier.namespaced:
            return data
        obj = dict(manifest.object)
        obj["metadata"] = { **obj["metadata"], "namespace": namespace }
        return json.dumps(obj).encode()
    return source
