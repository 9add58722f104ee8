import base64
import copy
import dataclasses
import logging
import typing as t

import yaml

from easykube import ResourceSpec

from .errors import AggregateError, ManifestError, NotFoundError, UnsupportedKindError


logger = logging.getLogger(__name__)


#: Metadata fields that are managed by the server and never compared or copied
SERVER_MANAGED_METADATA = {
    "creationTimestamp",
    "deletionGracePeriodSeconds",
    "deletionTimestamp",
    "generation",
    "managedFields",
    "resourceVersion",
    "selfLink",
    "uid",
}


@dataclasses.dataclass(frozen = True)
class Manifest:
    """
    A decoded manifest describing one desired resource.
    """
    api_version: str
    kind: str
    name: str
    namespace: t.Optional[str]
    object: dict

    @property
    def group(self):
        return self.api_version.rpartition("/")[0]

    @property
    def version(self):
        return self.api_version.rpartition("/")[2]

    def __str__(self):
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        else:
            return f"{self.kind} {self.name}"


@dataclasses.dataclass
class ApplyResult:
    """
    The outcome of applying a single manifest.
    """
    identifier: str
    result: t.Optional[dict] = None
    changed: bool = False
    error: t.Optional[Exception] = None


def decode_manifest(data):
    """
    Decodes the given YAML or JSON data into a manifest.
    """
    try:
        obj = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise ManifestError(f"unable to decode manifest: {exc}") from exc
    if not isinstance(obj, dict):
        raise ManifestError("manifest must be an object")
    metadata = obj.get("metadata") or {}
    for path, value in [
        ("apiVersion", obj.get("apiVersion")),
        ("kind", obj.get("kind")),
        ("metadata.name", metadata.get("name")),
    ]:
        if not value:
            raise ManifestError(f"manifest is missing required field {path}")
    return Manifest(
        obj["apiVersion"],
        obj["kind"],
        metadata["name"],
        metadata.get("namespace") or None,
        obj
    )


def load_manifest(manifest_source, identifier):
    """
    Loads and decodes the manifest with the given identifier from the source.
    """
    return decode_manifest(manifest_source(identifier))


def guess_plural(kind):
    """
    Returns a best guess at the plural resource name for a kind.
    """
    singular = kind.lower()
    if not singular:
        return singular
    if singular.endswith("s"):
        return f"{singular}es"
    if singular.endswith("y") and singular[-2:-1] not in {"a", "e", "i", "o", "u"}:
        return f"{singular[:-1]}ies"
    return f"{singular}s"


def is_subset(desired, existing):
    """
    Returns True if everything specified in desired is present and equal in existing.

    Mappings may have extra keys in existing, e.g. fields defaulted by the server.
    Lists must have the same length and match element-wise.
    """
    if isinstance(desired, dict):
        if not isinstance(existing, dict):
            return False
        for key, value in desired.items():
            if value is None:
                if existing.get(key) is not None:
                    return False
            elif key not in existing or not is_subset(value, existing[key]):
                return False
        return True
    elif isinstance(desired, list):
        return (
            isinstance(existing, list) and
            len(desired) == len(existing) and
            all(is_subset(d, e) for d, e in zip(desired, existing))
        )
    else:
        return desired == existing


def merge_owner_references(existing, desired):
    """
    Returns the existing owner references with any missing desired references added.
    """
    merged = list(existing)
    for ref in desired:
        if not any(e.get("uid") == ref.get("uid") for e in merged):
            merged.append(ref)
    return merged


class Applier:
    """
    Create-or-update and delete-if-exists strategy for one kind of resource.
    """
    def __init__(self, plural, namespaced, fields = ()):
        self.plural = plural
        self.namespaced = namespaced
        #: The top-level fields that are owned by the applier
        self.fields = tuple(fields)

    def resource_spec(self, manifest):
        """
        Returns the easykube resource spec for the given manifest.
        """
        return ResourceSpec(manifest.api_version, self.plural, manifest.kind, self.namespaced)

    def normalize(self, desired):
        """
        Returns the desired object in the form that the server stores it.
        """
        obj = copy.deepcopy(desired)
        metadata = obj.setdefault("metadata", {})
        for key in SERVER_MANAGED_METADATA:
            metadata.pop(key, None)
        obj.pop("status", None)
        return obj

    def is_equal(self, desired, existing):
        """
        Returns True if the existing object already matches the desired object,
        ignoring fields that are managed by the server.
        """
        desired_meta = desired.get("metadata", {})
        existing_meta = existing.get("metadata", {})
        for key in ("labels", "annotations"):
            if not is_subset(desired_meta.get(key) or {}, existing_meta.get(key) or {}):
                return False
        existing_uids = {ref.get("uid") for ref in existing_meta.get("ownerReferences", [])}
        if any(
            ref.get("uid") not in existing_uids
            for ref in desired_meta.get("ownerReferences", [])
        ):
            return False
        return all(
            is_subset(desired[field], existing.get(field))
            for field in self.fields
            if field in desired
        )

    def needs_recreate(self, desired, existing):
        """
        Returns True if the difference can only be resolved by deleting and
        recreating the object, e.g. because an immutable field changed.
        """
        return False

    def merge(self, desired, existing):
        """
        Returns the object to write in order to update existing to match desired.

        The result carries the resource version of the existing object.
        """
        merged = copy.deepcopy(existing)
        merged.pop("status", None)
        metadata = merged.setdefault("metadata", {})
        desired_meta = desired.get("metadata", {})
        for key in ("labels", "annotations"):
            if desired_meta.get(key):
                metadata[key] = {**(metadata.get(key) or {}), **desired_meta[key]}
        if desired_meta.get("ownerReferences"):
            metadata["ownerReferences"] = merge_owner_references(
                metadata.get("ownerReferences", []),
                desired_meta["ownerReferences"]
            )
        for field in self.fields:
            if field in desired:
                merged[field] = copy.deepcopy(desired[field])
        return merged

    async def apply(self, store, manifest, recorder, force = False):
        """
        Creates or updates the object described by the manifest.

        Returns a tuple of (object, changed).
        """
        spec = self.resource_spec(manifest)
        desired = self.normalize(manifest.object)
        try:
            existing = await store.get(spec, manifest.name, namespace = manifest.namespace)
        except NotFoundError:
            created = await store.create(spec, desired)
            recorder.event(
                f"{manifest.kind}Created",
                f"Created {manifest} because it was missing"
            )
            return created, True
        if self.needs_recreate(desired, existing):
            await store.delete(spec, manifest.name, namespace = manifest.namespace)
            created = await store.create(spec, desired)
            recorder.event(
                f"{manifest.kind}Created",
                f"Recreated {manifest} because an immutable field changed"
            )
            return created, True
        if not force and self.is_equal(desired, existing):
            return existing, False
        updated = await store.update(spec, self.merge(desired, existing))
        recorder.event(f"{manifest.kind}Updated", f"Updated {manifest} because it changed")
        return updated, True

    async def remove(self, store, manifest, recorder):
        """
        Deletes the object described by the manifest, if it exists.

        Returns True if an object was deleted.
        """
        deleted = await store.delete(
            self.resource_spec(manifest),
            manifest.name,
            namespace = manifest.namespace
        )
        if deleted:
            recorder.event(f"{manifest.kind}Deleted", f"Deleted {manifest}")
        return deleted


class SecretApplier(Applier):
    """
    Applier for secrets.

    String data is folded into the base64-encoded data, which is what the server
    stores, and a change of type requires the secret to be recreated.
    """
    def normalize(self, desired):
        obj = super().normalize(desired)
        string_data = obj.pop("stringData", None)
        if string_data:
            data = obj.setdefault("data", {})
            for key, value in string_data.items():
                data[key] = base64.b64encode(value.encode()).decode()
        obj.setdefault("type", "Opaque")
        return obj

    def is_equal(self, desired, existing):
        # Keys that were removed from the desired data must be removed from the secret
        return (
            super().is_equal(desired, existing) and
            (desired.get("data") or {}) == (existing.get("data") or {})
        )

    def needs_recreate(self, desired, existing):
        return desired.get("type", "Opaque") != existing.get("type", "Opaque")


class ServiceApplier(Applier):
    """
    Applier for services that preserves the cluster IPs allocated by the server.
    """
    def merge(self, desired, existing):
        merged = super().merge(desired, existing)
        existing_spec = existing.get("spec", {})
        merged_spec = merged.setdefault("spec", {})
        for key in ("clusterIP", "clusterIPs"):
            if key in existing_spec and key not in merged_spec:
                merged_spec[key] = existing_spec[key]
        return merged


class RoleBindingApplier(Applier):
    """
    Applier for role bindings, where the role reference is immutable.
    """
    def needs_recreate(self, desired, existing):
        return (
            "roleRef" in desired and
            not is_subset(desired["roleRef"], existing.get("roleRef"))
        )


#: The appliers for the supported kinds, indexed by (API group, kind)
APPLIERS = {
    ("admissionregistration.k8s.io", "ValidatingWebhookConfiguration"): Applier(
        "validatingwebhookconfigurations",
        False,
        ["webhooks"]
    ),
    ("admissionregistration.k8s.io", "MutatingWebhookConfiguration"): Applier(
        "mutatingwebhookconfigurations",
        False,
        ["webhooks"]
    ),
    ("apiregistration.k8s.io", "APIService"): Applier("apiservices", False, ["spec"]),
    ("apiextensions.k8s.io", "CustomResourceDefinition"): Applier(
        "customresourcedefinitions",
        False,
        ["spec"]
    ),
    ("", "Namespace"): Applier("namespaces", False),
    ("", "ServiceAccount"): Applier("serviceaccounts", True),
    ("", "Secret"): SecretApplier("secrets", True, ["type", "data"]),
    ("", "ConfigMap"): Applier("configmaps", True, ["data", "binaryData"]),
    ("", "Service"): ServiceApplier("services", True, ["spec"]),
    ("rbac.authorization.k8s.io", "ClusterRole"): Applier(
        "clusterroles",
        False,
        ["rules", "aggregationRule"]
    ),
    ("rbac.authorization.k8s.io", "Role"): Applier("roles", True, ["rules"]),
    ("rbac.authorization.k8s.io", "ClusterRoleBinding"): RoleBindingApplier(
        "clusterrolebindings",
        False,
        ["subjects", "roleRef"]
    ),
    ("rbac.authorization.k8s.io", "RoleBinding"): RoleBindingApplier(
        "rolebindings",
        True,
        ["subjects", "roleRef"]
    ),
    ("apps", "Deployment"): Applier("deployments", True, ["spec"]),
}


def applier_for(manifest):
    """
    Returns the applier for the given manifest.

    Raises UnsupportedKindError if the kind of the manifest is not supported.
    """
    try:
        return APPLIERS[(manifest.group, manifest.kind)]
    except KeyError:
        raise UnsupportedKindError(manifest.api_version, manifest.kind)


def resource_name_for(manifest):
    """
    Returns the plural resource name for the given manifest.
    """
    applier = APPLIERS.get((manifest.group, manifest.kind))
    return applier.plural if applier else guess_plural(manifest.kind)


async def apply_directly(store, recorder, manifest_source, *identifiers):
    """
    Applies the manifests with the given identifiers and returns a list of results,
    one for each identifier in the same order.

    A failure to apply one manifest is recorded in its result and does not stop
    the remaining manifests from being applied.
    """
    results = []
    for identifier in identifiers:
        result = ApplyResult(identifier)
        try:
            manifest = load_manifest(manifest_source, identifier)
            applier = applier_for(manifest)
            result.result, result.changed = await applier.apply(store, manifest, recorder)
        except Exception as exc:
            logger.warning("failed to apply %s: %s", identifier, exc)
            recorder.warning("ManifestApplyFailed", f"Failed to apply {identifier}: {exc}")
            result.error = exc
        results.append(result)
    return results


def aggregate_errors(results):
    """
    Returns an aggregate of the errors in the given results, or None if all succeeded.
    """
    return AggregateError.from_failures((result.identifier, result.error) for result in results)


async def cleanup_static_objects(store, recorder, manifest_source, *identifiers):
    """
    Deletes the objects described by the manifests with the given identifiers.

    Objects that do not exist are skipped. Every manifest is attempted and an
    AggregateError is raised at the end if any of them failed.
    """
    failures = []
    for identifier in identifiers:
        try:
            manifest = load_manifest(manifest_source, identifier)
            await applier_for(manifest).remove(store, manifest, recorder)
        except Exception as exc:
            logger.warning("failed to clean up %s: %s", identifier, exc)
            failures.append((identifier, exc))
    if failures:
        raise AggregateError(failures)
