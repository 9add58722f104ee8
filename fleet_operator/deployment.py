import copy
import dataclasses
import logging

from . import resources
from .apply import applier_for, load_manifest
from .config import settings
from .errors import ManifestError, NotFoundError, StoreError
from .status import generation_status_for, new_generation_status

logger = logging.getLogger(__name__)


#: Labels that mark a node as a control plane node
CONTROL_PLANE_NODE_LABELS = {
    "node-role.kubernetes.io/master",
    "node-role.kubernetes.io/control-plane",
}


async def determine_replica_by_nodes(store):
    """
    Returns the number of replicas to use for hub deployments.

    A single control plane node gets the single replica count, multiple control
    plane nodes get the default replica count.
    """
    try:
        nodes = await store.list(resources.Node)
    except StoreError as exc:
        logger.warning("unable to list nodes - using default replica count: %s", exc)
        return settings.replicas.default
    control_plane_nodes = [
        node
        for node in nodes
        if CONTROL_PLANE_NODE_LABELS & set((node["metadata"].get("labels") or {}).keys())
    ]
    if len(control_plane_nodes) > 1:
        return settings.replicas.default
    else:
        return settings.replicas.single


def with_node_placement(obj, node_placement, replicas = None):
    """
    Returns a copy of the deployment with the node placement and replicas applied.
    """
    obj = copy.deepcopy(obj)
    spec = obj.setdefault("spec", {})
    pod_spec = spec.setdefault("template", {}).setdefault("spec", {})
    if node_placement.node_selector:
        pod_spec["nodeSelector"] = dict(node_placement.node_selector)
    if node_placement.tolerations:
        pod_spec["tolerations"] = copy.deepcopy(node_placement.tolerations)
    if replicas is not None:
        spec["replicas"] = replicas
    return obj


async def apply_deployment(
    store,
    generations,
    node_placement,
    manifest_source,
    recorder,
    identifier,
    replicas = None
):
    """
    Applies the deployment with the given identifier and returns its generation status.

    If the deployment was modified since the generation recorded in generations,
    it is updated even if the spec appears unchanged.
    """
    manifest = load_manifest(manifest_source, identifier)
    if manifest.kind != "Deployment":
        raise ManifestError(f"{identifier} is a {manifest.kind}, not a Deployment")
    manifest = dataclasses.replace(
        manifest,
        object = with_node_placement(manifest.object, node_placement, replicas)
    )
    applier = applier_for(manifest)
    spec = applier.resource_spec(manifest)
    recorded = generation_status_for(
        generations,
        manifest.group,
        manifest.version,
        spec.name,
        manifest.namespace or "",
        manifest.name
    )
    force = False
    if recorded is not None:
        try:
            existing = await store.get(spec, manifest.name, namespace = manifest.namespace)
        except NotFoundError:
            pass
        else:
            force = existing["metadata"].get("generation", 0) != recorded.last_generation
    deployment, _ = await applier.apply(store, manifest, recorder, force = force)
    return new_generation_status(spec, deployment)
