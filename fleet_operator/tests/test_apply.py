import base64
import unittest

from fleet_operator import apply
from fleet_operator.errors import AggregateError, ManifestError, UnsupportedKindError
from fleet_operator.utils import dict_source

from .fakes import FakeStore, InMemoryEventRecorder


CONFIGMAP = """
apiVersion: v1
kind: ConfigMap
metadata:
  name: config
  namespace: hub
data:
  key: value
"""

NAMESPACE = """
apiVersion: v1
kind: Namespace
metadata:
  name: hub
"""

BROKEN = """
apiVersion: v1
metadata:
  name: broken
  namespace: hub
"""

UNSUPPORTED = """
apiVersion: example.com/v1
kind: Widget
metadata:
  name: widget
"""

SECRET = """
apiVersion: v1
kind: Secret
metadata:
  name: creds
  namespace: hub
stringData:
  password: s3cret
"""

SERVICE = """
apiVersion: v1
kind: Service
metadata:
  name: webhook
  namespace: hub
spec:
  ports:
    - port: 443
"""

ROLEBINDING = """
apiVersion: rbac.authorization.k8s.io/v1
kind: RoleBinding
metadata:
  name: agent
  namespace: hub
roleRef:
  apiGroup: rbac.authorization.k8s.io
  kind: Role
  name: {role}
subjects:
  - kind: ServiceAccount
    name: agent
    namespace: hub
"""


def configmap_spec():
    return apply.applier_for(apply.decode_manifest(CONFIGMAP)).resource_spec(
        apply.decode_manifest(CONFIGMAP)
    )


class TestDecodeManifest(unittest.TestCase):
    def test_decode_manifest(self):
        manifest = apply.decode_manifest(CONFIGMAP)

        self.assertEqual(manifest.api_version, "v1")
        self.assertEqual(manifest.group, "")
        self.assertEqual(manifest.version, "v1")
        self.assertEqual(manifest.kind, "ConfigMap")
        self.assertEqual(manifest.name, "config")
        self.assertEqual(manifest.namespace, "hub")
        self.assertEqual(str(manifest), "ConfigMap hub/config")

    def test_decode_manifest_json(self):
        manifest = apply.decode_manifest(
            b'{"apiVersion": "apps/v1", "kind": "Deployment", "metadata": {"name": "a"}}'
        )

        self.assertEqual(manifest.group, "apps")
        self.assertIsNone(manifest.namespace)

    def test_decode_manifest_missing_name(self):
        with self.assertRaises(ManifestError):
            apply.decode_manifest("apiVersion: v1\nkind: ConfigMap\nmetadata: {}\n")

    def test_decode_manifest_not_an_object(self):
        with self.assertRaises(ManifestError):
            apply.decode_manifest("- a\n- b\n")

    def test_guess_plural(self):
        self.assertEqual(apply.guess_plural("Policy"), "policies")
        self.assertEqual(apply.guess_plural("Ingress"), "ingresses")
        self.assertEqual(apply.guess_plural("Gateway"), "gateways")
        self.assertEqual(apply.guess_plural("ConfigMap"), "configmaps")

    def test_resource_name_for(self):
        self.assertEqual(
            apply.resource_name_for(apply.decode_manifest(NAMESPACE)),
            "namespaces"
        )
        self.assertEqual(
            apply.resource_name_for(apply.decode_manifest(UNSUPPORTED)),
            "widgets"
        )

    def test_is_subset(self):
        self.assertTrue(apply.is_subset({"a": 1}, {"a": 1, "b": 2}))
        self.assertFalse(apply.is_subset({"a": 1, "b": 2}, {"a": 1}))
        self.assertFalse(apply.is_subset([{"a": 1}], [{"a": 1}, {"a": 2}]))
        self.assertTrue(apply.is_subset([{"a": 1}], [{"a": 1, "b": 2}]))

    def test_applier_for_unsupported(self):
        with self.assertRaises(UnsupportedKindError) as ctx:
            apply.applier_for(apply.decode_manifest(UNSUPPORTED))

        self.assertEqual(str(ctx.exception), "unhandled type Widget (example.com/v1)")


class TestApplyDirectly(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = FakeStore()
        self.recorder = InMemoryEventRecorder()

    async def test_creates_missing_objects(self):
        source = dict_source({"ns.yaml": NAMESPACE, "cm.yaml": CONFIGMAP})

        results = await apply.apply_directly(
            self.store,
            self.recorder,
            source,
            "ns.yaml",
            "cm.yaml"
        )

        self.assertEqual([r.identifier for r in results], ["ns.yaml", "cm.yaml"])
        self.assertTrue(all(r.changed and r.error is None for r in results))
        self.assertEqual(self.store.verbs(), ["get", "create", "get", "create"])
        self.assertEqual(self.recorder.reasons(), ["NamespaceCreated", "ConfigMapCreated"])
        configmap = self.store.find(configmap_spec(), "config", "hub")
        self.assertEqual(configmap["data"], {"key": "value"})
        self.assertIsNone(apply.aggregate_errors(results))

    async def test_apply_is_idempotent(self):
        source = dict_source({"cm.yaml": CONFIGMAP})
        await apply.apply_directly(self.store, self.recorder, source, "cm.yaml")
        self.store.actions.clear()

        results = await apply.apply_directly(self.store, self.recorder, source, "cm.yaml")

        self.assertFalse(results[0].changed)
        self.assertEqual(self.store.verbs(), ["get"])

    async def test_ignores_server_managed_fields(self):
        self.store.add(
            configmap_spec(),
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {
                    "name": "config",
                    "namespace": "hub",
                    "creationTimestamp": "2024-01-01T00:00:00Z",
                    "labels": {"added-by": "someone-else"},
                },
                "data": {"key": "value"},
            }
        )

        results = await apply.apply_directly(
            self.store,
            self.recorder,
            dict_source({"cm.yaml": CONFIGMAP}),
            "cm.yaml"
        )

        self.assertFalse(results[0].changed)
        self.assertNotIn("update", self.store.verbs())

    async def test_updates_changed_objects(self):
        self.store.add(
            configmap_spec(),
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {"name": "config", "namespace": "hub"},
                "data": {"key": "old"},
            }
        )

        results = await apply.apply_directly(
            self.store,
            self.recorder,
            dict_source({"cm.yaml": CONFIGMAP}),
            "cm.yaml"
        )

        self.assertTrue(results[0].changed)
        self.assertEqual(self.store.verbs(), ["get", "update"])
        self.assertEqual(self.recorder.reasons(), ["ConfigMapUpdated"])
        configmap = self.store.find(configmap_spec(), "config", "hub")
        self.assertEqual(configmap["data"], {"key": "value"})
        self.assertEqual(configmap["metadata"]["uid"], "uid-config")

    async def test_unsupported_kind_does_not_stop_other_manifests(self):
        source = dict_source({
            "ns.yaml": NAMESPACE,
            "widget.yaml": UNSUPPORTED,
            "cm.yaml": CONFIGMAP,
        })

        results = await apply.apply_directly(
            self.store,
            self.recorder,
            source,
            "ns.yaml",
            "widget.yaml",
            "cm.yaml"
        )

        self.assertIsNone(results[0].error)
        self.assertIsInstance(results[1].error, UnsupportedKindError)
        self.assertIsNone(results[2].error)
        self.assertTrue(results[2].changed)
        self.assertIn("ManifestApplyFailed", self.recorder.reasons())
        error = apply.aggregate_errors(results)
        self.assertIsInstance(error, AggregateError)
        self.assertEqual(str(error), "widget.yaml: unhandled type Widget (example.com/v1)")
        self.assertIsInstance(error.errors[0], UnsupportedKindError)

    async def test_missing_manifest_is_reported(self):
        results = await apply.apply_directly(
            self.store,
            self.recorder,
            dict_source({}),
            "missing.yaml"
        )

        self.assertIsInstance(results[0].error, FileNotFoundError)
        self.assertEqual(self.store.actions, [])

    async def test_aggregate_names_failed_manifests(self):
        source = dict_source({"hub/broken.yaml": BROKEN, "cm.yaml": CONFIGMAP})

        results = await apply.apply_directly(
            self.store,
            self.recorder,
            source,
            "hub/broken.yaml",
            "cm.yaml",
            "missing.yaml"
        )

        error = apply.aggregate_errors(results)
        lines = str(error).splitlines()
        self.assertEqual(len(lines), 2)
        self.assertEqual(lines[0], "hub/broken.yaml: manifest is missing required field kind")
        self.assertTrue(lines[1].startswith("missing.yaml: "))
        self.assertIsInstance(error.errors[0], ManifestError)
        self.assertIsInstance(error.errors[1], FileNotFoundError)

    async def test_secret_string_data_is_encoded(self):
        source = dict_source({"secret.yaml": SECRET})

        await apply.apply_directly(self.store, self.recorder, source, "secret.yaml")
        self.store.actions.clear()
        results = await apply.apply_directly(self.store, self.recorder, source, "secret.yaml")

        self.assertFalse(results[0].changed)
        secret = self.store.find(
            apply.APPLIERS[("", "Secret")].resource_spec(apply.decode_manifest(SECRET)),
            "creds",
            "hub"
        )
        self.assertNotIn("stringData", secret)
        self.assertEqual(secret["type"], "Opaque")
        self.assertEqual(base64.b64decode(secret["data"]["password"]), b"s3cret")

    async def test_secret_removed_key_is_an_update(self):
        manifest = apply.decode_manifest(SECRET)
        spec = apply.APPLIERS[("", "Secret")].resource_spec(manifest)
        self.store.add(
            spec,
            {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": {"name": "creds", "namespace": "hub"},
                "type": "Opaque",
                "data": {
                    "password": base64.b64encode(b"s3cret").decode(),
                    "stale": base64.b64encode(b"old").decode(),
                },
            }
        )

        results = await apply.apply_directly(
            self.store,
            self.recorder,
            dict_source({"secret.yaml": SECRET}),
            "secret.yaml"
        )

        self.assertTrue(results[0].changed)
        self.assertNotIn("stale", self.store.find(spec, "creds", "hub")["data"])

    async def test_secret_type_change_recreates(self):
        manifest = apply.decode_manifest(SECRET)
        spec = apply.APPLIERS[("", "Secret")].resource_spec(manifest)
        self.store.add(
            spec,
            {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": {"name": "creds", "namespace": "hub"},
                "type": "kubernetes.io/basic-auth",
                "data": {"password": base64.b64encode(b"s3cret").decode()},
            }
        )

        results = await apply.apply_directly(
            self.store,
            self.recorder,
            dict_source({"secret.yaml": SECRET}),
            "secret.yaml"
        )

        self.assertTrue(results[0].changed)
        self.assertEqual(self.store.verbs(), ["get", "delete", "create"])
        self.assertEqual(self.store.find(spec, "creds", "hub")["type"], "Opaque")

    async def test_service_keeps_cluster_ip(self):
        manifest = apply.decode_manifest(SERVICE)
        spec = apply.applier_for(manifest).resource_spec(manifest)
        self.store.add(
            spec,
            {
                "apiVersion": "v1",
                "kind": "Service",
                "metadata": {"name": "webhook", "namespace": "hub"},
                "spec": {"clusterIP": "10.0.0.10", "ports": [{"port": 8443}]},
            }
        )

        await apply.apply_directly(
            self.store,
            self.recorder,
            dict_source({"svc.yaml": SERVICE}),
            "svc.yaml"
        )

        service = self.store.find(spec, "webhook", "hub")
        self.assertEqual(service["spec"]["clusterIP"], "10.0.0.10")
        self.assertEqual(service["spec"]["ports"], [{"port": 443}])

    async def test_role_binding_role_change_recreates(self):
        source = dict_source({
            "old.yaml": ROLEBINDING.format(role = "old"),
            "new.yaml": ROLEBINDING.format(role = "new"),
        })
        await apply.apply_directly(self.store, self.recorder, source, "old.yaml")
        self.store.actions.clear()

        await apply.apply_directly(self.store, self.recorder, source, "new.yaml")

        self.assertEqual(self.store.verbs(), ["get", "delete", "create"])


class TestCleanupStaticObjects(unittest.IsolatedAsyncioTestCase):
    async def test_cleanup(self):
        store = FakeStore()
        recorder = InMemoryEventRecorder()
        source = dict_source({
            "ns.yaml": NAMESPACE,
            "cm.yaml": CONFIGMAP,
            "widget.yaml": UNSUPPORTED,
        })
        await apply.apply_directly(store, recorder, source, "cm.yaml")
        recorder.events.clear()

        with self.assertRaises(AggregateError) as ctx:
            await apply.cleanup_static_objects(
                store,
                recorder,
                source,
                "widget.yaml",
                "cm.yaml",
                "ns.yaml"
            )

        # The unsupported kind is reported but the other manifests are still removed
        self.assertEqual(len(ctx.exception.errors), 1)
        self.assertIsInstance(ctx.exception.errors[0], UnsupportedKindError)
        self.assertEqual(
            str(ctx.exception),
            "widget.yaml: unhandled type Widget (example.com/v1)"
        )
        self.assertEqual(store.objects, {})
        # The namespace did not exist, so there is only an event for the configmap
        self.assertEqual(recorder.reasons(), ["ConfigMapDeleted"])

    async def test_cleanup_missing_objects(self):
        store = FakeStore()
        recorder = InMemoryEventRecorder()

        await apply.cleanup_static_objects(
            store,
            recorder,
            dict_source({"cm.yaml": CONFIGMAP}),
            "cm.yaml"
        )

        self.assertEqual(store.verbs(), ["delete"])
        self.assertEqual(recorder.events, [])

    async def test_cleanup_names_failed_manifests(self):
        store = FakeStore()
        recorder = InMemoryEventRecorder()
        source = dict_source({"hub/broken.yaml": BROKEN, "cm.yaml": CONFIGMAP})

        with self.assertRaises(AggregateError) as ctx:
            await apply.cleanup_static_objects(
                store,
                recorder,
                source,
                "hub/broken.yaml",
                "cm.yaml"
            )

        self.assertEqual(
            str(ctx.exception),
            "hub/broken.yaml: manifest is missing required field kind"
        )
        self.assertEqual(ctx.exception.failures[0][0], "hub/broken.yaml")
        # The remaining manifest is still attempted
        self.assertEqual(store.verbs(), ["delete"])
