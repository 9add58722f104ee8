import base64
import copy
import logging
import pathlib

import yaml
from pydantic.json import pydantic_encoder

from easykube import Configuration

from . import resources
from .apply import Manifest, applier_for
from .errors import ManifestError, NotFoundError

logger = logging.getLogger(__name__)


SERVICE_ACCOUNT_TOKEN_TYPE = "kubernetes.io/service-account-token"

#: Annotations that link a token secret to its service account
SERVICE_ACCOUNT_ANNOTATIONS = {
    "kubernetes.io/service-account.name",
    "kubernetes.io/service-account.uid",
}


async def sync_secret(
    source_store,
    target_store,
    recorder,
    source_namespace,
    source_name,
    target_namespace,
    target_name,
    owner_references = None
):
    """
    Copies a secret from the source to the target, which may be in another cluster.

    If the source secret does not exist, the target is deleted. Service account
    token secrets are copied as opaque secrets once they have a token.

    Returns a tuple of (secret, changed).
    """
    try:
        source = await source_store.get(
            resources.Secret,
            source_name,
            namespace = source_namespace
        )
    except NotFoundError:
        deleted = await target_store.delete(
            resources.Secret,
            target_name,
            namespace = target_namespace
        )
        if deleted:
            recorder.event(
                "TargetSecretDeleted",
                f"Deleted target secret {target_namespace}/{target_name} "
                f"because source secret {source_namespace}/{source_name} is missing"
            )
        return None, True
    source_metadata = source.get("metadata") or {}
    secret_type = source.get("type") or "Opaque"
    data = copy.deepcopy(source.get("data") or {})
    annotations = dict(source_metadata.get("annotations") or {})
    if secret_type == SERVICE_ACCOUNT_TOKEN_TYPE:
        # The token is populated asynchronously by the token controller
        if not data.get("token"):
            raise ManifestError(
                f"secret {source_namespace}/{source_name} doesn't have a token yet"
            )
        # The annotations would make the token controller manage the copy
        for key in SERVICE_ACCOUNT_ANNOTATIONS:
            annotations.pop(key, None)
        secret_type = "Opaque"
    metadata = { "name": target_name, "namespace": target_namespace }
    if source_metadata.get("labels"):
        metadata["labels"] = dict(source_metadata["labels"])
    if annotations:
        metadata["annotations"] = annotations
    if owner_references:
        metadata["ownerReferences"] = list(owner_references)
    manifest = Manifest(
        "v1",
        "Secret",
        target_name,
        target_namespace,
        {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": metadata,
            "type": secret_type,
            "data": data,
        }
    )
    return await applier_for(manifest).apply(target_store, manifest, recorder)


def kubeconfig_from_secret(secret):
    """
    Returns the kubeconfig stored in the given secret.

    Client certificates and keys that the kubeconfig references as files are
    inlined when the files are other keys of the same secret.
    """
    metadata = secret.get("metadata") or {}
    data = secret.get("data") or {}
    if not data.get("kubeconfig"):
        raise ManifestError(
            "unable to find kubeconfig in secret "
            f"\"{metadata.get('namespace')}\" \"{metadata.get('name')}\""
        )
    kubeconfig = yaml.safe_load(base64.b64decode(data["kubeconfig"]))
    for user in kubeconfig.get("users") or []:
        auth = user.get("user") or {}
        for file_key in ("client-certificate", "client-key"):
            path = auth.get(file_key)
            if not path:
                continue
            # Data in the secret is already base64-encoded, as the inline fields are
            key = pathlib.PurePosixPath(path).name
            if key in data:
                auth[f"{file_key}-data"] = data[key]
                del auth[file_key]
            else:
                logger.warning(
                    "kubeconfig in secret %s/%s references missing file %s",
                    metadata.get("namespace"),
                    metadata.get("name"),
                    path
                )
    return kubeconfig


def client_configuration_from_secret(secret):
    """
    Returns an easykube configuration for the kubeconfig stored in the given secret.
    """
    return Configuration.from_kubeconfig_data(
        yaml.safe_dump(kubeconfig_from_secret(secret)),
        json_encoder = pydantic_encoder
    )
