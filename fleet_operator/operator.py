import asyncio
import functools
import logging
import sys

import kopf
from pydantic.json import pydantic_encoder

from easykube import Configuration, ApiError
from kube_custom_resource import CustomResourceRegistry

from . import models, resources
from .apply import apply_directly, cleanup_static_objects
from .config import settings
from .deployment import apply_deployment, determine_replica_by_nodes
from .errors import AggregateError, ConflictError, UnsupportedKindError
from .events import KopfEventRecorder, LoggingEventRecorder
from .klusterlet import klusterlet_namespace, namespaced_source
from .lease import LeaseUpdater, ManagedClusterLeaseController
from .models import v1 as api
from .secrets import client_configuration_from_secret
from .status import (
    generate_related_resource,
    update_condition_fn,
    update_generations_fn,
    update_related_resources_fn,
    update_status,
)
from .store import ResourceStore
from .utils import directory_source

logger = logging.getLogger(__name__)


#: The condition that reports whether the static manifests were applied
APPLIED_CONDITION = "Applied"
#: The reason used when a manifest has a kind that cannot be applied
UNSUPPORTED_CONFIGURATION_REASON = "UnsupportedConfiguration"


# Create an easykube client from the environment
ekclient = (
    Configuration
        .from_environment(json_encoder = pydantic_encoder)
        .async_client(default_field_manager = settings.easykube_field_manager)
)
store = ResourceStore(ekclient)


# Create a registry of custom resources and populate it from the models module
registry = CustomResourceRegistry(settings.api_group, settings.crd_categories)
registry.discover_models(models)


# The hub store and lease controller are only created for agents
hub_store = None
lease_updater = None
lease_controller = None


async def create_hub_store():
    """
    Returns the store for the hub, using the hub kubeconfig secret if configured.
    """
    if not settings.agent.hub_kubeconfig_secret_name:
        return store
    secret = await store.get(
        resources.Secret,
        settings.agent.hub_kubeconfig_secret_name,
        namespace = settings.agent.hub_kubeconfig_secret_namespace
    )
    hub_client = (
        client_configuration_from_secret(secret)
            .async_client(default_field_manager = settings.easykube_field_manager)
    )
    return ResourceStore(hub_client)


@kopf.on.startup()
async def apply_settings(**kwargs):
    """
    Apply kopf settings.
    """
    global hub_store, lease_updater, lease_controller
    settings.logging.apply()
    kopf_settings = kwargs["settings"]
    kopf_settings.persistence.finalizer = f"{settings.annotation_prefix}/finalizer"
    kopf_settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix = settings.annotation_prefix
    )
    kopf_settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix = settings.annotation_prefix,
        key = "last-handled-configuration",
    )
    kopf_settings.watching.client_timeout = settings.watch_timeout
    # Apply the CRDs
    for crd in registry:
        try:
            await ekclient.apply_object(crd.kubernetes_resource(), force = True)
        except Exception:
            logger.exception("error applying CRD %s.%s - exiting", crd.plural_name, crd.api_group)
            sys.exit(1)
    # Give Kubernetes a chance to create the APIs for the CRDs
    await asyncio.sleep(0.5)
    # Agents report their liveness to the hub using a lease
    if settings.agent.cluster_name:
        hub_store = await create_hub_store()
        lease_updater = LeaseUpdater(
            hub_store,
            settings.agent.cluster_name,
            settings.lease.name,
            recorder = LoggingEventRecorder(logger)
        )
        lease_controller = ManagedClusterLeaseController(
            hub_store,
            settings.agent.cluster_name,
            lease_updater
        )


@kopf.on.cleanup()
async def on_cleanup(**kwargs):
    """
    Runs on operator shutdown.
    """
    if lease_updater:
        lease_updater.stop()
    if hub_store and hub_store is not store:
        await hub_store.aclose()
    await store.aclose()


def model_handler(model, register_fn, /, **kwargs):
    """
    Decorator that registers a handler with kopf for the specified model.
    """
    api_version = f"{settings.api_group}/{model._meta.version}"
    def decorator(func):
        @functools.wraps(func)
        async def handler(**handler_kwargs):
            if "instance" not in handler_kwargs:
                handler_kwargs["instance"] = model.model_validate(handler_kwargs["body"])
            try:
                return await func(**handler_kwargs)
            except ConflictError as exc:
                # When a handler fails with a conflict, we want to retry quickly
                raise kopf.TemporaryError(str(exc), delay = 5)
            except ApiError as exc:
                if exc.status_code == 409:
                    raise kopf.TemporaryError(str(exc), delay = 5)
                else:
                    raise
        return register_fn(api_version, model._meta.plural_name, **kwargs)(handler)
    return decorator


def is_agent_cluster(name, **kwargs):
    """
    Filter for events on the managed cluster that this agent reports for.
    """
    return bool(settings.agent.cluster_name) and name == settings.agent.cluster_name


@kopf.on.event(
    resources.ManagedCluster.api_version,
    resources.ManagedCluster.name,
    when = is_agent_cluster
)
@kopf.timer(
    resources.ManagedCluster.api_version,
    resources.ManagedCluster.name,
    interval = settings.timer_interval,
    when = is_agent_cluster
)
async def reconcile_managed_cluster_lease(**kwargs):
    """
    Starts or stops the lease updates when the managed cluster changes, and
    periodically in case an event was missed.
    """
    if lease_controller:
        await lease_controller.reconcile()


async def apply_static_resources(
    instance,
    meta,
    resource,
    status_model,
    recorder,
    manifest_source,
    manifests,
    deployments,
    replicas = None
):
    """
    Applies the static manifests and deployments for an instance and records the
    outcome in the status of the instance.
    """
    results = await apply_directly(store, recorder, manifest_source, *manifests)
    failures = [(result.identifier, result.error) for result in results if result.error]
    related_resources = []
    for identifier in [*manifests, *deployments]:
        try:
            related_resources.append(generate_related_resource(manifest_source(identifier)))
        except Exception:
            # Manifests that cannot be loaded are reported by the apply
            logger.debug("unable to generate related resource for %s", identifier)
    generations = []
    for identifier in deployments:
        try:
            generation = await apply_deployment(
                store,
                instance.status.generations,
                instance.spec.node_placement,
                manifest_source,
                recorder,
                identifier,
                replicas
            )
        except Exception as exc:
            recorder.warning("DeploymentApplyFailed", f"Failed to apply {identifier}: {exc}")
            failures.append((identifier, exc))
        else:
            generations.append(generation)
    error = AggregateError.from_failures(failures)
    if error is None:
        condition = api.Condition(
            type = APPLIED_CONDITION,
            status = api.ConditionStatus.TRUE,
            reason = "ManifestsApplied",
            message = "All manifests have been applied"
        )
    elif any(isinstance(exc, UnsupportedKindError) for exc in error.errors):
        condition = api.Condition(
            type = APPLIED_CONDITION,
            status = api.ConditionStatus.FALSE,
            reason = UNSUPPORTED_CONFIGURATION_REASON,
            message = str(error)
        )
    else:
        condition = api.Condition(
            type = APPLIED_CONDITION,
            status = api.ConditionStatus.FALSE,
            reason = "ManifestApplyFailed",
            message = str(error)
        )
    condition.observed_generation = meta.get("generation")
    def update_observed_generation(status):
        status.observed_generation = meta.get("generation") or 0
    await update_status(
        store,
        resource,
        status_model,
        instance.metadata.name,
        update_related_resources_fn(*related_resources),
        update_generations_fn(*generations),
        update_condition_fn(condition),
        update_observed_generation
    )
    if error is not None:
        raise kopf.TemporaryError(str(error), delay = 30)


@model_handler(api.ClusterManager, kopf.on.create)
@model_handler(api.ClusterManager, kopf.on.update, field = "spec")
@model_handler(api.ClusterManager, kopf.on.resume)
async def reconcile_cluster_manager(instance, body, meta, logger, **kwargs):
    """
    Applies the hub components for a cluster manager.
    """
    await apply_static_resources(
        instance,
        meta,
        resources.ClusterManager,
        api.ClusterManagerStatus,
        KopfEventRecorder(body, logger),
        directory_source(settings.manifests.directory),
        settings.manifests.cluster_manager,
        settings.manifests.cluster_manager_deployments,
        # Hub deployments are scaled by the number of control plane nodes
        await determine_replica_by_nodes(store)
    )


@model_handler(api.ClusterManager, kopf.on.delete)
async def delete_cluster_manager(instance, body, logger, **kwargs):
    """
    Removes the hub components for a cluster manager.
    """
    await cleanup_static_objects(
        store,
        KopfEventRecorder(body, logger),
        directory_source(settings.manifests.directory),
        *reversed([
            *settings.manifests.cluster_manager,
            *settings.manifests.cluster_manager_deployments,
        ])
    )


def klusterlet_source(instance):
    """
    Returns the manifest source for the agents of the given klusterlet.
    """
    return namespaced_source(
        directory_source(settings.manifests.directory),
        klusterlet_namespace(
            instance.spec.deploy_option.mode,
            instance.metadata.name,
            instance.spec.namespace
        )
    )


@model_handler(api.Klusterlet, kopf.on.create)
@model_handler(api.Klusterlet, kopf.on.update, field = "spec")
@model_handler(api.Klusterlet, kopf.on.resume)
async def reconcile_klusterlet(instance, body, meta, logger, **kwargs):
    """
    Applies the agents for a klusterlet.
    """
    await apply_static_resources(
        instance,
        meta,
        resources.Klusterlet,
        api.KlusterletStatus,
        KopfEventRecorder(body, logger),
        klusterlet_source(instance),
        settings.manifests.klusterlet,
        settings.manifests.klusterlet_deployments
    )


@model_handler(api.Klusterlet, kopf.on.delete)
async def delete_klusterlet(instance, body, logger, **kwargs):
    """
    Removes the agents for a klusterlet.
    """
    await cleanup_static_objects(
        store,
        KopfEventRecorder(body, logger),
        klusterlet_source(instance),
        *reversed([
            *settings.manifests.klusterlet,
            *settings.manifests.klusterlet_deployments,
        ])
    )
