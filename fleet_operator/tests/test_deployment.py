import unittest
from unittest import mock

from fleet_operator import deployment, resources
from fleet_operator.config import settings
from fleet_operator.errors import ManifestError, TransientStoreError
from fleet_operator.models import v1 as api
from fleet_operator.utils import dict_source

from .fakes import FakeStore, InMemoryEventRecorder


DEPLOYMENT = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: registration
  namespace: hub
spec:
  selector:
    matchLabels:
      app: registration
  template:
    metadata:
      labels:
        app: registration
    spec:
      containers:
        - name: registration
          image: registration:latest
"""

CONFIGMAP = """
apiVersion: v1
kind: ConfigMap
metadata:
  name: config
  namespace: hub
"""


def node(name, *roles):
    return {
        "apiVersion": "v1",
        "kind": "Node",
        "metadata": {
            "name": name,
            "labels": {f"node-role.kubernetes.io/{role}": "" for role in roles},
        },
    }


class TestNodePlacement(unittest.TestCase):
    def test_with_node_placement(self):
        obj = {"spec": {"template": {"spec": {"containers": []}}}}
        placement = api.NodePlacement(
            node_selector={"node-role.kubernetes.io/infra": ""},
            tolerations=[{"key": "infra", "operator": "Exists", "effect": "NoSchedule"}],
        )

        result = deployment.with_node_placement(obj, placement, replicas=3)

        pod_spec = result["spec"]["template"]["spec"]
        self.assertEqual(pod_spec["nodeSelector"], {"node-role.kubernetes.io/infra": ""})
        self.assertEqual(pod_spec["tolerations"][0]["key"], "infra")
        self.assertEqual(result["spec"]["replicas"], 3)
        # The original object is not modified
        self.assertNotIn("nodeSelector", obj["spec"]["template"]["spec"])

    def test_empty_node_placement(self):
        result = deployment.with_node_placement({}, api.NodePlacement())

        self.assertEqual(result, {"spec": {"template": {"spec": {}}}})


class TestDetermineReplicaByNodes(unittest.IsolatedAsyncioTestCase):
    async def replicas(self, *nodes):
        store = FakeStore(*[(resources.Node, n) for n in nodes])
        return await deployment.determine_replica_by_nodes(store)

    async def test_no_nodes(self):
        self.assertEqual(await self.replicas(), 1)

    async def test_single_control_plane_node(self):
        self.assertEqual(
            await self.replicas(node("cp1", "control-plane"), node("worker1")),
            1
        )

    async def test_multiple_control_plane_nodes(self):
        self.assertEqual(
            await self.replicas(
                node("cp1", "control-plane"),
                node("cp2", "master"),
                node("cp3", "control-plane", "master")
            ),
            3
        )

    async def test_configured_replicas(self):
        with mock.patch.object(settings.replicas, "default", 5):
            self.assertEqual(
                await self.replicas(node("cp1", "master"), node("cp2", "master")),
                5
            )

    async def test_list_error_uses_default(self):
        store = FakeStore()
        store.fail_next("list", TransientStoreError("unavailable"))

        self.assertEqual(await deployment.determine_replica_by_nodes(store), 3)


class TestApplyDeployment(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = FakeStore()
        self.recorder = InMemoryEventRecorder()
        self.source = dict_source({"deployment.yaml": DEPLOYMENT, "cm.yaml": CONFIGMAP})
        self.placement = api.NodePlacement(node_selector={"zone": "a"})

    async def apply(self, generations, identifier="deployment.yaml"):
        return await deployment.apply_deployment(
            self.store,
            generations,
            self.placement,
            self.source,
            self.recorder,
            identifier,
            replicas=1
        )

    def stored(self):
        return self.store.find(resources.Deployment, "registration", "hub")

    async def test_creates_deployment(self):
        generation = await self.apply([])

        self.assertEqual(
            generation.key,
            ("apps", "v1", "deployments", "hub", "registration")
        )
        self.assertEqual(generation.last_generation, 1)
        stored = self.stored()
        self.assertEqual(stored["spec"]["replicas"], 1)
        self.assertEqual(stored["spec"]["template"]["spec"]["nodeSelector"], {"zone": "a"})

    async def test_unchanged_deployment_is_not_updated(self):
        generation = await self.apply([])
        self.store.actions.clear()

        again = await self.apply([generation])

        self.assertNotIn("update", self.store.verbs())
        self.assertEqual(again.last_generation, generation.last_generation)

    async def test_modified_deployment_is_updated(self):
        generation = await self.apply([])
        # Something else adds a field that the manifest does not set
        modified = self.stored()
        modified["spec"]["paused"] = True
        modified["metadata"]["generation"] = 2
        self.store.add(resources.Deployment, modified)
        self.store.actions.clear()

        again = await self.apply([generation])

        self.assertIn("update", self.store.verbs())
        self.assertNotIn("paused", self.stored()["spec"])
        self.assertEqual(again.last_generation, 3)

    async def test_modified_deployment_without_recorded_generation(self):
        await self.apply([])
        modified = self.stored()
        modified["spec"]["paused"] = True
        self.store.add(resources.Deployment, modified)
        self.store.actions.clear()

        await self.apply([])

        self.assertNotIn("update", self.store.verbs())

    async def test_not_a_deployment(self):
        with self.assertRaises(ManifestError):
            await self.apply([], "cm.yaml")
